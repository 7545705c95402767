"""systemd unit that brings the Compose stack back after a reboot."""
from __future__ import annotations

import logging
from pathlib import Path

from scripts.provision.host_commands import HostTools
from scripts.provision.host_paths import BOOT_UNIT_NAME, HostPaths


logger = logging.getLogger(__name__)

LOG_PREFIX = "[BOOT-UNIT]"

DEFAULT_DOCKER_BIN = "/usr/bin/docker"

UNIT_TEMPLATE = """\
[Unit]
Description={description}
Requires=docker.service
After=docker.service network-online.target
Wants=network-online.target

[Service]
Type=oneshot
WorkingDirectory={app_dir}
ExecStart={docker_bin} compose up -d
ExecStop={docker_bin} compose down
RemainAfterExit=yes
TimeoutStartSec=0

[Install]
WantedBy=multi-user.target
"""


def render_unit(*, app_dir: Path, docker_bin: str = DEFAULT_DOCKER_BIN, with_redis: bool = True) -> str:
    description = "n8n + Redis via Docker Compose" if with_redis else "n8n via Docker Compose"
    return UNIT_TEMPLATE.format(description=description, app_dir=app_dir, docker_bin=docker_bin)


def install_boot_unit(tools: HostTools, paths: HostPaths, *, with_redis: bool = True) -> bool:
    """Write, enable and start the unit.

    Enabling is mandatory; an immediate start failure is only logged because
    the stack is already running from the deploy step.  Returns whether the
    immediate start succeeded.
    """
    docker_bin = tools.runner.which("docker") or DEFAULT_DOCKER_BIN
    unit_text = render_unit(app_dir=paths.app_dir, docker_bin=docker_bin, with_redis=with_redis)

    logger.info("%s Creating systemd unit to ensure stack starts on boot...", LOG_PREFIX)
    paths.systemd_unit_dir.mkdir(parents=True, exist_ok=True)
    paths.boot_unit.write_text(unit_text, encoding="utf-8")

    tools.systemd.daemon_reload()
    tools.systemd.enable(BOOT_UNIT_NAME)

    result = tools.systemd.start(BOOT_UNIT_NAME)
    if result.returncode != 0:
        detail = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        logger.warning("%s Could not start %s now (stack already running): %s", LOG_PREFIX, BOOT_UNIT_NAME, detail)
        return False
    return True
