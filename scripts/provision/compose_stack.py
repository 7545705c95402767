"""Stage and start the n8n Compose stack under the deployment directory."""
from __future__ import annotations

import io
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Callable, Mapping

import requests
from dotenv import dotenv_values

from scripts.provision.env_schema import SetupConfig
from scripts.provision.host_commands import HostTools
from scripts.provision.host_paths import HostPaths


logger = logging.getLogger(__name__)

LOG_PREFIX = "[STACK]"

COMPOSE_FILE_NAME = "docker-compose.yml"
N8N_DATA_DIR = "n8n_data"
REDIS_DATA_DIR = "redis_data"

_ASSIGNMENT_PATTERN = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=")


def _assignment_key(line: str) -> str | None:
    match = _ASSIGNMENT_PATTERN.match(line)
    return match.group(1) if match else None


def merge_env_text(text: str, required: Mapping[str, str]) -> str:
    """Return *text* with exactly one definition per key and every required key set.

    Duplicate definitions collapse to the last one, which is the value a shell
    or Compose would have used.  A required key that is missing, or defined
    with an empty value, gets ``KEY=value`` appended.  Comments and blank
    lines are kept in place.
    """
    lines = text.splitlines()
    parsed = dotenv_values(stream=io.StringIO(text))

    last_index: dict[str, int] = {}
    for index, line in enumerate(lines):
        key = _assignment_key(line)
        if key:
            last_index[key] = index

    empty_required = {
        key for key in required if key in last_index and not str(parsed.get(key) or "").strip()
    }

    kept: list[str] = []
    for index, line in enumerate(lines):
        key = _assignment_key(line)
        if key and (last_index[key] != index or key in empty_required):
            continue
        kept.append(line)

    for key, value in required.items():
        if key not in last_index or key in empty_required:
            kept.append(f"{key}={value}")

    if not kept:
        return ""
    return "\n".join(kept) + "\n"


def data_dirs(config: SetupConfig) -> list[str]:
    dirs = [N8N_DATA_DIR]
    if config.with_redis:
        dirs.append(REDIS_DATA_DIR)
    return dirs


def _same_file(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False


def stage_compose_stack(config: SetupConfig, paths: HostPaths, *, repo_root: Path) -> Path:
    """Materialize compose file, merged .env and data directories in the app dir."""
    compose_src = repo_root / COMPOSE_FILE_NAME
    if not compose_src.is_file():
        raise SystemExit(f"Missing compose definition: {compose_src}")

    paths.app_dir.mkdir(parents=True, exist_ok=True)
    logger.info("%s Copying compose + env into %s", LOG_PREFIX, paths.app_dir)
    shutil.copyfile(compose_src, paths.stack_compose)

    if not _same_file(config.env_source, paths.stack_env):
        shutil.copyfile(config.env_source, paths.stack_env)

    for name in data_dirs(config):
        (paths.app_dir / name).mkdir(exist_ok=True)

    current = paths.stack_env.read_text(encoding="utf-8")
    merged = merge_env_text(current, config.stack_values())
    if merged != current:
        paths.stack_env.write_text(merged, encoding="utf-8")
    paths.stack_env.chmod(0o600)
    return paths.stack_env


def deploy_compose(tools: HostTools, paths: HostPaths) -> None:
    logger.info("%s Starting the stack via Docker Compose in %s", LOG_PREFIX, paths.app_dir)
    tools.compose.pull(paths.app_dir)
    tools.compose.up(paths.app_dir)


def upstream_health_url(port: int) -> str:
    return f"http://127.0.0.1:{port}/healthz"


def wait_for_upstream(
    port: int,
    *,
    attempts: int = 20,
    interval_seconds: float = 3.0,
    timeout_seconds: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll n8n's health endpoint; True once it answers with HTTP 2xx."""
    url = upstream_health_url(port)
    for attempt in range(1, attempts + 1):
        try:
            response = requests.get(url, timeout=timeout_seconds)
            if 200 <= response.status_code < 300:
                logger.info("%s n8n is healthy at %s", LOG_PREFIX, url)
                return True
            logger.debug("%s Attempt %s: HTTP %s from %s", LOG_PREFIX, attempt, response.status_code, url)
        except requests.RequestException as exc:
            logger.debug("%s Attempt %s: %s", LOG_PREFIX, attempt, exc)
        if attempt < attempts:
            sleep(interval_seconds)

    logger.warning("%s n8n did not report healthy at %s after %s attempts", LOG_PREFIX, url, attempts)
    return False
