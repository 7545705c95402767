from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from scripts.provision.host_commands import HostCommandRunner, HostTools
from scripts.provision.host_paths import HostPaths


class FakeRunner(HostCommandRunner):
    """Records commands instead of running them.

    ``results`` maps a command prefix (tuple of leading argv items) to the
    ``(returncode, stdout, stderr)`` returned for matching commands; anything
    unmatched succeeds with empty output.
    """

    def __init__(self, *, which: dict[str, str] | None = None):
        self.calls: list[list[str]] = []
        self.inputs: dict[str, str] = {}
        self.cwds: list[Path | None] = []
        self.results: dict[tuple[str, ...], tuple[int, str, str]] = {}
        self.which_map: dict[str, str] = dict(which or {})

    def run(self, cmd, *, cwd=None, env=None, input_text=None, capture=True):
        self.calls.append(list(cmd))
        self.cwds.append(cwd)
        if input_text is not None:
            self.inputs[" ".join(cmd)] = input_text
        for prefix, (code, stdout, stderr) in self.results.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(args=cmd, returncode=code, stdout=stdout, stderr=stderr)
        return subprocess.CompletedProcess(args=cmd, returncode=0, stdout="", stderr="")

    def which(self, name: str) -> str | None:
        return self.which_map.get(name)

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner(which={"docker": "/usr/bin/docker", "nginx": "/usr/sbin/nginx", "ufw": "/usr/sbin/ufw"})


@pytest.fixture
def tools(fake_runner: FakeRunner) -> HostTools:
    return HostTools.from_runner(fake_runner)


@pytest.fixture
def host_paths(tmp_path: Path) -> HostPaths:
    root = tmp_path / "host"
    return HostPaths(
        app_dir=root / "opt" / "n8n",
        nginx_available_dir=root / "etc" / "nginx" / "sites-available",
        nginx_enabled_dir=root / "etc" / "nginx" / "sites-enabled",
        systemd_unit_dir=root / "etc" / "systemd" / "system",
        apt_keyrings_dir=root / "etc" / "apt" / "keyrings",
        apt_sources_dir=root / "etc" / "apt" / "sources.list.d",
        os_release=root / "etc" / "os-release",
    )
