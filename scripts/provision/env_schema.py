"""Environment schema and resolution for the n8n host setup.

The setup reads a single dotenv-style file (``KEY=value`` per line) and turns
it into an immutable :class:`SetupConfig` that every later step receives as a
parameter.  Nothing here writes to the filesystem.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

import yaml
from dotenv import dotenv_values


logger = logging.getLogger(__name__)

LOG_PREFIX = "[ENV]"

INSECURE_REDIS_PASSWORD = "change-me-strong"


class EnvValidationError(ValueError):
    """Raised when the environment source is missing or holds invalid values."""


class VarsEnum(str, Enum):
    N8N_PORT = "N8N_PORT"
    N8N_TAG = "N8N_TAG"
    DOMAIN = "DOMAIN"
    USE_LETSENCRYPT = "USE_LETSENCRYPT"
    NGINX_EMAIL = "NGINX_EMAIL"
    WEBHOOK_URL = "WEBHOOK_URL"
    REDIS_PASSWORD = "REDIS_PASSWORD"


@dataclass(frozen=True)
class EnvVarSpec:
    key: str
    default: str
    description: str
    # Written into the deployment .env when absent so Compose can substitute it.
    required_in_stack: bool = False
    redis_only: bool = False


SETUP_SCHEMA: list[EnvVarSpec] = [
    EnvVarSpec(VarsEnum.N8N_PORT.value, "5678", "Host port n8n listens on (loopback)", required_in_stack=True),
    EnvVarSpec(VarsEnum.N8N_TAG.value, "latest", "n8n image tag", required_in_stack=True),
    EnvVarSpec(VarsEnum.DOMAIN.value, "", "Public domain; empty serves any host name"),
    EnvVarSpec(VarsEnum.USE_LETSENCRYPT.value, "false", "Request a Let's Encrypt certificate"),
    EnvVarSpec(VarsEnum.NGINX_EMAIL.value, "", "Contact email for certificate issuance"),
    EnvVarSpec(VarsEnum.WEBHOOK_URL.value, "http://localhost/", "Public base URL for n8n webhooks", required_in_stack=True),
    EnvVarSpec(
        VarsEnum.REDIS_PASSWORD.value,
        INSECURE_REDIS_PASSWORD,
        "Redis password (placeholder default is insecure)",
        required_in_stack=True,
        redis_only=True,
    ),
]


@dataclass(frozen=True)
class SetupConfig:
    env_source: Path
    n8n_port: int
    n8n_tag: str
    domain: str
    use_letsencrypt: bool
    nginx_email: str
    webhook_url: str
    redis_password: str
    with_redis: bool

    def stack_values(self) -> dict[str, str]:
        """Values that must be defined in the deployment .env, in schema order."""
        current = {
            VarsEnum.N8N_PORT.value: str(self.n8n_port),
            VarsEnum.N8N_TAG.value: self.n8n_tag,
            VarsEnum.WEBHOOK_URL.value: self.webhook_url,
            VarsEnum.REDIS_PASSWORD.value: self.redis_password,
        }
        return {
            spec.key: current[spec.key]
            for spec in SETUP_SCHEMA
            if spec.required_in_stack and (self.with_redis or not spec.redis_only)
        }


def parse_boolish(value: str, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_dotenv_file(path: Path) -> dict[str, str]:
    raw = dotenv_values(path)
    return {str(k): str(v if v is not None else "") for k, v in raw.items()}


def resolve_env_source(explicit: str | Path | None, *, search_dir: Path) -> Path:
    """Pick the env file: explicit path, then ``.env``, then ``.env.example``."""
    candidates: list[Path] = []
    if explicit:
        explicit_path = Path(explicit)
        if explicit_path.is_file():
            return explicit_path
        logger.warning("%s Env file %s not found; falling back to .env / .env.example", LOG_PREFIX, explicit_path)
    candidates.append(search_dir / ".env")
    candidates.append(search_dir / ".env.example")

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise EnvValidationError("No .env or .env.example found. Please provide one.")


def unknown_keys(schema: Iterable[EnvVarSpec], kv: Mapping[str, str]) -> list[str]:
    known = {spec.key for spec in schema}
    return sorted(key for key in kv if key not in known)


def validate_port(raw: str) -> int:
    text = str(raw or "").strip()
    if not text.isdigit():
        raise EnvValidationError(f"{VarsEnum.N8N_PORT.value} must be numeric, got {raw!r}")
    port = int(text)
    if port < 1 or port > 65535:
        raise EnvValidationError(f"{VarsEnum.N8N_PORT.value} must be in range 1-65535, got {port}")
    return port


def compose_declares_service(compose_path: Path, service: str) -> bool:
    if not compose_path.is_file():
        return False
    payload = yaml.safe_load(compose_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        return False
    services = payload.get("services")
    if not isinstance(services, dict):
        return False
    return service in services


def _resolve_value(spec: EnvVarSpec, file_kv: Mapping[str, str], environ: Mapping[str, str]) -> str:
    # Sourcing the file overrides inherited variables, even with an empty
    # assignment; ``${VAR:=default}`` then fills in empty values.
    source = file_kv if spec.key in file_kv else environ
    value = str(source.get(spec.key) or "").strip()
    return value or spec.default


def load_setup_config(
    env_source: Path,
    *,
    environ: Mapping[str, str],
    with_redis: bool,
) -> SetupConfig:
    file_kv = parse_dotenv_file(env_source)

    extra = unknown_keys(SETUP_SCHEMA, file_kv)
    if extra:
        logger.debug("%s Passing through non-setup keys: %s", LOG_PREFIX, ", ".join(extra))

    resolved = {spec.key: _resolve_value(spec, file_kv, environ) for spec in SETUP_SCHEMA}

    config = SetupConfig(
        env_source=env_source,
        n8n_port=validate_port(resolved[VarsEnum.N8N_PORT.value]),
        n8n_tag=resolved[VarsEnum.N8N_TAG.value],
        domain=resolved[VarsEnum.DOMAIN.value],
        use_letsencrypt=parse_boolish(resolved[VarsEnum.USE_LETSENCRYPT.value], default=False),
        nginx_email=resolved[VarsEnum.NGINX_EMAIL.value],
        webhook_url=resolved[VarsEnum.WEBHOOK_URL.value],
        redis_password=resolved[VarsEnum.REDIS_PASSWORD.value],
        with_redis=with_redis,
    )

    if insecure_redis_password(config):
        logger.warning(
            "%s %s is still the placeholder '%s'. Set a strong value in %s.",
            LOG_PREFIX,
            VarsEnum.REDIS_PASSWORD.value,
            INSECURE_REDIS_PASSWORD,
            env_source,
        )
    return config


def insecure_redis_password(config: SetupConfig) -> bool:
    return config.with_redis and config.redis_password == INSECURE_REDIS_PASSWORD
