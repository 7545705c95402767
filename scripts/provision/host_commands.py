"""Command builders and thin collaborator wrappers for host tools.

Every external tool the setup touches (apt, systemd, docker compose, nginx,
certbot, ufw) is reached through :class:`HostCommandRunner`, so tests can
swap in a recording fake and never invoke real system services.
"""
from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


NGINX_FULL_RULE = "Nginx Full"


def _subprocess_error_text(result: subprocess.CompletedProcess) -> str:
    stderr = str(result.stderr or "").strip()
    stdout = str(result.stdout or "").strip()
    return stderr or stdout


class HostCommandRunner:
    """Run host commands with ``subprocess``; never raises on non-zero exit."""

    def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        capture: bool = True,
    ) -> subprocess.CompletedProcess:
        full_env = None
        if env:
            full_env = {**os.environ, **env}
        try:
            return subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                input=input_text,
                capture_output=capture,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(args=cmd, returncode=127, stdout="", stderr=str(exc))

    def run_checked(
        self,
        cmd: list[str],
        *,
        action: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        capture: bool = True,
    ) -> subprocess.CompletedProcess:
        result = self.run(cmd, cwd=cwd, env=env, input_text=input_text, capture=capture)
        if result.returncode != 0:
            action_text = action or f"Command failed: {' '.join(cmd)}"
            message = f"{action_text} (exit code {result.returncode})."
            detail = _subprocess_error_text(result)
            if detail:
                message = f"{message} {detail}"
            raise SystemExit(message)
        return result

    def which(self, name: str) -> str | None:
        return shutil.which(name)


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def build_apt_update_cmd() -> list[str]:
    return ["apt-get", "update", "-y"]


def build_apt_install_cmd(*, packages: list[str]) -> list[str]:
    return ["apt-get", "install", "-y", *packages]


def build_systemctl_cmd(action: str, unit: str | None = None, *, now: bool = False) -> list[str]:
    cmd = ["systemctl", action]
    if now:
        cmd.append("--now")
    if unit:
        cmd.append(unit)
    return cmd


def build_compose_cmd(*args: str, docker_bin: str = "docker") -> list[str]:
    return [docker_bin, "compose", *args]


def build_nginx_test_cmd() -> list[str]:
    return ["nginx", "-t"]


def build_certbot_cmd(*, domain: str, email: str) -> list[str]:
    return [
        "certbot",
        "--nginx",
        "-d",
        domain,
        "--non-interactive",
        "--agree-tos",
        "-m",
        email,
        "--redirect",
    ]


def build_ufw_status_cmd() -> list[str]:
    return ["ufw", "status"]


def build_ufw_allow_cmd(*, rule: str = NGINX_FULL_RULE) -> list[str]:
    return ["ufw", "allow", rule]


def build_gpg_dearmor_cmd(*, output: Path) -> list[str]:
    return ["gpg", "--batch", "--yes", "--dearmor", "-o", str(output)]


def build_dpkg_arch_cmd() -> list[str]:
    return ["dpkg", "--print-architecture"]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class AptPackageManager:
    def __init__(self, runner: HostCommandRunner):
        self._runner = runner

    def update(self) -> None:
        self._runner.run_checked(
            build_apt_update_cmd(),
            action="Failed to refresh the apt package index",
            env=NONINTERACTIVE_ENV,
            capture=False,
        )

    def install(self, packages: list[str]) -> None:
        self._runner.run_checked(
            build_apt_install_cmd(packages=packages),
            action=f"Failed to install packages: {' '.join(packages)}",
            env=NONINTERACTIVE_ENV,
            capture=False,
        )

    def architecture(self) -> str:
        result = self._runner.run_checked(build_dpkg_arch_cmd(), action="Failed to detect the dpkg architecture")
        return str(result.stdout or "").strip()


class SystemdManager:
    def __init__(self, runner: HostCommandRunner):
        self._runner = runner

    def enable_now(self, unit: str) -> None:
        self._runner.run_checked(
            build_systemctl_cmd("enable", unit, now=True),
            action=f"Failed to enable and start {unit}",
        )

    def daemon_reload(self) -> None:
        self._runner.run_checked(build_systemctl_cmd("daemon-reload"), action="systemctl daemon-reload failed")

    def enable(self, unit: str) -> None:
        self._runner.run_checked(build_systemctl_cmd("enable", unit), action=f"Failed to enable {unit}")

    def reload(self, unit: str) -> None:
        self._runner.run_checked(build_systemctl_cmd("reload", unit), action=f"Failed to reload {unit}")

    def start(self, unit: str) -> subprocess.CompletedProcess:
        return self._runner.run(build_systemctl_cmd("start", unit))


class DockerCompose:
    def __init__(self, runner: HostCommandRunner, *, docker_bin: str = "docker"):
        self._runner = runner
        self.docker_bin = docker_bin

    def pull(self, project_dir: Path) -> None:
        self._runner.run_checked(
            build_compose_cmd("pull", docker_bin=self.docker_bin),
            action="docker compose pull failed",
            cwd=project_dir,
            capture=False,
        )

    def up(self, project_dir: Path) -> None:
        self._runner.run_checked(
            build_compose_cmd("up", "-d", docker_bin=self.docker_bin),
            action="docker compose up -d failed",
            cwd=project_dir,
            capture=False,
        )


class NginxController:
    def __init__(self, runner: HostCommandRunner, systemd: SystemdManager):
        self._runner = runner
        self._systemd = systemd

    def validate(self) -> None:
        self._runner.run_checked(
            build_nginx_test_cmd(),
            action="Nginx configuration test failed; refusing to reload",
        )

    def reload(self) -> None:
        self._systemd.reload("nginx")


class CertbotIssuer:
    def __init__(self, runner: HostCommandRunner):
        self._runner = runner

    def issue(self, *, domain: str, email: str) -> subprocess.CompletedProcess:
        return self._runner.run(build_certbot_cmd(domain=domain, email=email))


class UfwFirewall:
    def __init__(self, runner: HostCommandRunner):
        self._runner = runner

    def is_present(self) -> bool:
        return self._runner.which("ufw") is not None

    def is_active(self) -> bool:
        result = self._runner.run(build_ufw_status_cmd())
        if result.returncode != 0:
            return False
        return "Status: active" in str(result.stdout or "")

    def allow(self, rule: str = NGINX_FULL_RULE) -> subprocess.CompletedProcess:
        return self._runner.run(build_ufw_allow_cmd(rule=rule))


@dataclass
class HostTools:
    runner: HostCommandRunner
    apt: AptPackageManager
    systemd: SystemdManager
    compose: DockerCompose
    nginx: NginxController
    certbot: CertbotIssuer
    firewall: UfwFirewall

    @classmethod
    def from_runner(cls, runner: HostCommandRunner) -> "HostTools":
        systemd = SystemdManager(runner)
        return cls(
            runner=runner,
            apt=AptPackageManager(runner),
            systemd=systemd,
            compose=DockerCompose(runner),
            nginx=NginxController(runner, systemd),
            certbot=CertbotIssuer(runner),
            firewall=UfwFirewall(runner),
        )
