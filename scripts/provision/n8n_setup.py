#!/usr/bin/env python3
"""One-shot setup of n8n (+ Redis) behind Nginx on a single Ubuntu host.

Run on the target host as root:

    sudo python3 -m scripts.provision.n8n_setup [path/to/.env]

If no env file is given, ``.env`` in the repository root is used, falling
back to ``.env.example``.  The compose definition and the merged env file
are copied to ``/opt/n8n`` and the stack is run from there.  Every step is
safe to repeat; a failed run is repaired by fixing the cause and running
the setup again.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
from pathlib import Path

from scripts.provision import boot_unit, compose_stack, host_prepare, nginx_site
from scripts.provision.env_schema import (
    EnvValidationError,
    compose_declares_service,
    insecure_redis_password,
    load_setup_config,
    resolve_env_source,
)
from scripts.provision.host_commands import HostCommandRunner, HostTools
from scripts.provision.host_paths import HostPaths


ENV_LOG_LEVEL = "N8N_SETUP_LOG_LEVEL"

REDIS_SERVICE_NAME = "redis"

TLS_ACTIVE = "active"
TLS_SKIPPED = "skipped"
TLS_FAILED = "failed"


def require_root() -> None:
    if os.geteuid() != 0:
        raise SystemExit("Please run as root: sudo python3 -m scripts.provision.n8n_setup [path/to/.env]")


def tls_status(*, requested: bool, enabled: bool, issued: bool) -> str:
    if issued:
        return TLS_ACTIVE
    if requested and enabled:
        return TLS_FAILED
    return TLS_SKIPPED


def summary_url(*, domain: str, tls_active: bool) -> str:
    scheme = "https" if tls_active else "http"
    return f"{scheme}://{domain or '<server-ip>'}/"


def _configure_logging() -> None:
    level_name = str(os.getenv(ENV_LOG_LEVEL, "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(levelname)s %(message)s")


def main(
    argv: list[str] | None = None,
    repo_root_override: Path | None = None,
    paths_override: HostPaths | None = None,
    tools_override: HostTools | None = None,
) -> None:
    parser = argparse.ArgumentParser(description="Set up n8n (+ Redis) behind Nginx on this Ubuntu host")
    parser.add_argument(
        "env_file",
        nargs="?",
        default=None,
        help="Env file to deploy. Resolution: argument -> ./.env -> ./.env.example",
    )
    parser.add_argument(
        "--app-dir",
        default=None,
        help="Deployment directory for compose file, .env and data volumes (default /opt/n8n)",
    )
    parser.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Do not wait for n8n's /healthz endpoint after starting the stack",
    )
    args = parser.parse_args(argv)

    _configure_logging()

    step_number = 0
    step_color = "\033[95m"
    color_reset = "\033[0m"

    def log_step(message: str, *, icon: str = "🚀") -> None:
        nonlocal step_number
        step_number += 1
        print(f"{step_color}[n8n-setup] {icon} Step {step_number}: {message}{color_reset}")

    def log_info(message: str, *, icon: str = "ℹ️") -> None:
        print(f"[n8n-setup] {icon} {message}")

    repo_root = repo_root_override or Path(__file__).resolve().parents[2]
    paths = paths_override or HostPaths()
    if args.app_dir:
        paths = dataclasses.replace(paths, app_dir=Path(args.app_dir))
    tools = tools_override or HostTools.from_runner(HostCommandRunner())

    require_root()
    os_info = host_prepare.detect_os(paths.os_release)

    log_step("Resolving environment", icon="🧭")
    try:
        env_source = resolve_env_source(args.env_file, search_dir=repo_root)
        log_info(f"Using env from: {env_source}")
        config = load_setup_config(
            env_source,
            environ=os.environ,
            with_redis=compose_declares_service(repo_root / compose_stack.COMPOSE_FILE_NAME, REDIS_SERVICE_NAME),
        )
    except EnvValidationError as exc:
        raise SystemExit(str(exc))
    tls_requested = config.use_letsencrypt

    log_step("Installing prerequisites (Docker, Nginx, certbot)", icon="📦")
    config = host_prepare.prepare_host(config, tools, paths, os_info)

    log_step("Checking firewall", icon="🛡️")
    if host_prepare.configure_firewall(tools):
        log_info("ufw now allows 'Nginx Full'.")

    log_step(f"Staging compose stack in {paths.app_dir}", icon="📁")
    compose_stack.stage_compose_stack(config, paths, repo_root=repo_root)

    log_step("Starting n8n via Docker Compose", icon="🐳")
    compose_stack.deploy_compose(tools, paths)
    if not args.skip_health_check:
        if not compose_stack.wait_for_upstream(config.n8n_port):
            log_info("n8n is not answering yet; check the logs below once setup completes.", icon="⚠️")

    log_step("Configuring Nginx reverse proxy", icon="🌐")
    tls_issued = nginx_site.configure_nginx(config, tools, paths, repo_root=repo_root)

    log_step("Installing boot-time systemd unit", icon="🔁")
    if not boot_unit.install_boot_unit(tools, paths, with_redis=config.with_redis):
        log_info("Boot unit enabled but not started now; it will run on next boot.", icon="⚠️")

    status = tls_status(requested=tls_requested, enabled=config.use_letsencrypt, issued=tls_issued)

    print()
    print("[n8n-setup] ✅ Setup complete!")
    log_info(f"n8n URL:     {summary_url(domain=config.domain, tls_active=tls_issued)}")
    log_info(f"Compose dir: {paths.app_dir}")
    log_info(f"View logs:   cd {paths.app_dir} && docker compose logs -f")
    log_info(f"TLS:         {status}")
    if insecure_redis_password(config):
        log_info("REDIS_PASSWORD is still the insecure placeholder; change it and re-run.", icon="⚠️")


if __name__ == "__main__":
    main()
