"""Install the Nginx site that proxies to n8n and optionally add TLS.

The site is rendered from ``nginx/n8n.conf.template`` by plain placeholder
substitution, activated through ``sites-enabled``, validated with
``nginx -t`` and only then reloaded.  Certificate issuance is best effort:
a certbot failure leaves the site serving plain HTTP.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path

from scripts.provision.env_schema import SetupConfig
from scripts.provision.host_commands import HostTools
from scripts.provision.host_paths import HostPaths


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOG_PREFIX = "[NGINX-SITE]"

TEMPLATE_RELATIVE_PATH = Path("nginx") / "n8n.conf.template"

DOMAIN_PLACEHOLDER = "{{DOMAIN}}"
PORT_PLACEHOLDER = "{{N8N_PORT}}"

# Nginx's catch-all server name.
CATCH_ALL_SERVER_NAME = "_"

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*[A-Za-z0-9_]+\s*\}\}")


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def render_site_template(template_text: str, *, domain: str, port: int | str) -> str:
    rendered = template_text.replace(DOMAIN_PLACEHOLDER, domain or CATCH_ALL_SERVER_NAME)
    rendered = rendered.replace(PORT_PLACEHOLDER, str(port))

    leftover = sorted(set(_PLACEHOLDER_PATTERN.findall(rendered)))
    if leftover:
        raise SystemExit(f"Unresolved placeholders in Nginx template: {', '.join(leftover)}")
    return rendered


def _replace_symlink(link: Path, target: Path) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


def _restore_site(previous_text: str | None, paths: HostPaths) -> None:
    if previous_text is None:
        for path in (paths.site_enabled, paths.site_available):
            if path.is_symlink() or path.exists():
                path.unlink()
        logger.warning("%s Removed rejected site %s", LOG_PREFIX, paths.site_available)
        return
    paths.site_available.write_text(previous_text, encoding="utf-8")
    logger.warning("%s Restored previous site %s", LOG_PREFIX, paths.site_available)


def install_site(site_text: str, paths: HostPaths) -> Path:
    """Write the site artifact, enable it, and drop the stock default site."""
    paths.nginx_available_dir.mkdir(parents=True, exist_ok=True)
    paths.nginx_enabled_dir.mkdir(parents=True, exist_ok=True)

    paths.site_available.write_text(site_text, encoding="utf-8")
    _replace_symlink(paths.site_enabled, paths.site_available)

    default_site = paths.default_site_enabled
    if default_site.is_symlink() or default_site.exists():
        default_site.unlink()
        logger.info("%s Removed default site %s", LOG_PREFIX, default_site)
    return paths.site_available


def request_certificate(config: SetupConfig, tools: HostTools) -> bool:
    """Run certbot for the configured domain; True when TLS is now active."""
    logger.info("%s Requesting Let's Encrypt certificate for %s...", LOG_PREFIX, config.domain)
    result = tools.certbot.issue(domain=config.domain, email=config.nginx_email)
    if result.returncode != 0:
        detail = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        logger.warning("%s Certbot failed; keeping HTTP only. %s", LOG_PREFIX, detail)
        return False
    return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_nginx(config: SetupConfig, tools: HostTools, paths: HostPaths, *, repo_root: Path) -> bool:
    """Render, activate, validate and reload the n8n site.

    Returns True if a certificate was issued.  Raises ``SystemExit`` when the
    template is missing or ``nginx -t`` rejects the configuration; in the
    latter case the previous site (or none) is put back first.
    """
    template_path = repo_root / TEMPLATE_RELATIVE_PATH
    if not template_path.is_file():
        raise SystemExit(f"Missing Nginx template: {template_path}")

    logger.info("%s Installing Nginx site config...", LOG_PREFIX)
    site_text = render_site_template(
        template_path.read_text(encoding="utf-8"),
        domain=config.domain,
        port=config.n8n_port,
    )
    previous_text = paths.site_available.read_text(encoding="utf-8") if paths.site_available.is_file() else None
    install_site(site_text, paths)

    try:
        tools.nginx.validate()
    except SystemExit:
        _restore_site(previous_text, paths)
        raise
    tools.nginx.reload()

    if not config.use_letsencrypt:
        return False
    return request_certificate(config, tools)
