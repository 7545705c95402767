from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


DEFAULT_APP_DIR = Path("/opt/n8n")
SITE_NAME = "n8n.conf"
BOOT_UNIT_NAME = "n8n-compose.service"


@dataclass(frozen=True)
class HostPaths:
    """Host locations mutated by the setup; tests point these at ``tmp_path``."""

    app_dir: Path = DEFAULT_APP_DIR
    nginx_available_dir: Path = Path("/etc/nginx/sites-available")
    nginx_enabled_dir: Path = Path("/etc/nginx/sites-enabled")
    systemd_unit_dir: Path = Path("/etc/systemd/system")
    apt_keyrings_dir: Path = Path("/etc/apt/keyrings")
    apt_sources_dir: Path = Path("/etc/apt/sources.list.d")
    os_release: Path = Path("/etc/os-release")

    @property
    def site_available(self) -> Path:
        return self.nginx_available_dir / SITE_NAME

    @property
    def site_enabled(self) -> Path:
        return self.nginx_enabled_dir / SITE_NAME

    @property
    def default_site_enabled(self) -> Path:
        return self.nginx_enabled_dir / "default"

    @property
    def boot_unit(self) -> Path:
        return self.systemd_unit_dir / BOOT_UNIT_NAME

    @property
    def docker_keyring(self) -> Path:
        return self.apt_keyrings_dir / "docker.gpg"

    @property
    def docker_sources_list(self) -> Path:
        return self.apt_sources_dir / "docker.list"

    @property
    def stack_env(self) -> Path:
        return self.app_dir / ".env"

    @property
    def stack_compose(self) -> Path:
        return self.app_dir / "docker-compose.yml"
