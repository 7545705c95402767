"""Bring the host's packages and services to the state the stack needs.

Each ``ensure_*`` helper checks for a prior installation first, so running
the setup again only refreshes the package index and skips the rest.
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import requests
from dotenv import dotenv_values

from scripts.provision.env_schema import SetupConfig
from scripts.provision.host_commands import NGINX_FULL_RULE, HostTools, build_gpg_dearmor_cmd
from scripts.provision.host_paths import HostPaths


logger = logging.getLogger(__name__)

LOG_PREFIX = "[HOST]"

TESTED_OS_ID = "ubuntu"
TESTED_OS_VERSION = "24.04"

BASE_PACKAGES = ["ca-certificates", "curl", "gnupg", "lsb-release", "ufw"]
DOCKER_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]
NGINX_PACKAGES = ["nginx"]
CERTBOT_PACKAGES = ["certbot", "python3-certbot-nginx"]

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_APT_URL = "https://download.docker.com/linux/ubuntu"


def read_os_release(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    return {str(k): str(v or "") for k, v in dotenv_values(path).items()}


def detect_os(path: Path) -> dict[str, str]:
    info = read_os_release(path)
    if info.get("ID") != TESTED_OS_ID or info.get("VERSION_ID") != TESTED_OS_VERSION:
        logger.warning(
            "%s Script is tested on Ubuntu %s (found %s %s). Continuing anyway...",
            LOG_PREFIX,
            TESTED_OS_VERSION,
            info.get("ID") or "unknown",
            info.get("VERSION_ID") or "",
        )
    return info


def docker_apt_source_line(*, arch: str, codename: str, keyring: Path) -> str:
    return f"deb [arch={arch} signed-by={keyring}] {DOCKER_APT_URL} {codename} stable\n"


def fetch_docker_gpg_key(*, url: str = DOCKER_GPG_URL, timeout_seconds: int = 30) -> str:
    try:
        response = requests.get(url, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise SystemExit(f"Failed to download Docker GPG key from {url}: {exc}")
    if response.status_code < 200 or response.status_code >= 300:
        raise SystemExit(f"Failed to download Docker GPG key from {url}: HTTP {response.status_code}")
    return response.text


def add_docker_apt_repository(tools: HostTools, paths: HostPaths, os_info: dict[str, str]) -> None:
    codename = str(os_info.get("VERSION_CODENAME") or "").strip()
    if not codename:
        raise SystemExit(f"VERSION_CODENAME missing from {paths.os_release}; cannot configure the Docker apt repository")

    paths.apt_keyrings_dir.mkdir(parents=True, exist_ok=True)
    paths.apt_keyrings_dir.chmod(0o755)

    key_text = fetch_docker_gpg_key()
    tools.runner.run_checked(
        build_gpg_dearmor_cmd(output=paths.docker_keyring),
        action="Failed to dearmor the Docker GPG key",
        input_text=key_text,
    )
    paths.docker_keyring.chmod(0o644)

    arch = tools.apt.architecture()
    paths.apt_sources_dir.mkdir(parents=True, exist_ok=True)
    paths.docker_sources_list.write_text(
        docker_apt_source_line(arch=arch, codename=codename, keyring=paths.docker_keyring),
        encoding="utf-8",
    )


def ensure_docker(tools: HostTools, paths: HostPaths, os_info: dict[str, str]) -> bool:
    """Install Docker CE with the compose plugin unless ``docker`` is present.

    Either way the service ends up enabled and running.
    """
    if tools.runner.which("docker"):
        logger.info("%s Docker already installed.", LOG_PREFIX)
        tools.systemd.enable_now("docker")
        return False

    logger.info("%s Installing Docker CE + Compose plugin...", LOG_PREFIX)
    add_docker_apt_repository(tools, paths, os_info)
    tools.apt.update()
    tools.apt.install(DOCKER_PACKAGES)
    tools.systemd.enable_now("docker")
    return True


def ensure_nginx(tools: HostTools) -> bool:
    if tools.runner.which("nginx"):
        logger.info("%s Nginx already installed.", LOG_PREFIX)
        tools.systemd.enable_now("nginx")
        return False

    logger.info("%s Installing Nginx...", LOG_PREFIX)
    tools.apt.install(NGINX_PACKAGES)
    tools.systemd.enable_now("nginx")
    return True


def resolve_tls(config: SetupConfig) -> SetupConfig:
    """Disable TLS when it was requested without a domain or contact email."""
    if not config.use_letsencrypt:
        return config
    if config.domain and config.nginx_email:
        return config
    logger.warning("%s USE_LETSENCRYPT=true but DOMAIN/NGINX_EMAIL not set. Skipping TLS.", LOG_PREFIX)
    return dataclasses.replace(config, use_letsencrypt=False)


def prepare_host(config: SetupConfig, tools: HostTools, paths: HostPaths, os_info: dict[str, str]) -> SetupConfig:
    """Install base packages, Docker, Nginx and (optionally) certbot.

    Returns the config with TLS possibly downgraded; callers must use the
    returned value for every later step.
    """
    logger.info("%s Updating apt and installing prerequisites...", LOG_PREFIX)
    tools.apt.update()
    tools.apt.install(BASE_PACKAGES)

    ensure_docker(tools, paths, os_info)
    ensure_nginx(tools)

    config = resolve_tls(config)
    if config.use_letsencrypt:
        logger.info("%s Installing certbot with the Nginx plugin...", LOG_PREFIX)
        tools.apt.install(CERTBOT_PACKAGES)
    return config


def configure_firewall(tools: HostTools) -> bool:
    """Open HTTP/HTTPS on an already active ufw; never enable a dormant one.

    Returns True when the allow rule was added.
    """
    if not tools.firewall.is_present():
        logger.info("%s ufw not installed; leaving firewall untouched.", LOG_PREFIX)
        return False
    if not tools.firewall.is_active():
        logger.info("%s ufw inactive; leaving firewall untouched.", LOG_PREFIX)
        return False

    logger.info("%s Opening UFW for Nginx (HTTP/HTTPS)...", LOG_PREFIX)
    result = tools.firewall.allow(NGINX_FULL_RULE)
    if result.returncode != 0:
        detail = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        logger.warning("%s Failed to add ufw rule '%s': %s", LOG_PREFIX, NGINX_FULL_RULE, detail)
        return False
    return True
