from __future__ import annotations

import logging
from pathlib import Path

import pytest

from scripts.provision.env_schema import (
    INSECURE_REDIS_PASSWORD,
    SETUP_SCHEMA,
    EnvValidationError,
    VarsEnum,
    compose_declares_service,
    insecure_redis_password,
    load_setup_config,
    parse_boolish,
    parse_dotenv_file,
    resolve_env_source,
    unknown_keys,
    validate_port,
)


def _write(p: Path, text: str) -> Path:
    p.write_text(text, encoding="utf-8")
    return p


def test_resolve_env_source_prefers_explicit_path(tmp_path: Path) -> None:
    explicit = _write(tmp_path / "custom.env", "N8N_PORT=1\n")
    _write(tmp_path / ".env", "N8N_PORT=2\n")
    assert resolve_env_source(str(explicit), search_dir=tmp_path) == explicit


def test_resolve_env_source_falls_back_to_dotenv_then_example(tmp_path: Path) -> None:
    example = _write(tmp_path / ".env.example", "")
    assert resolve_env_source(None, search_dir=tmp_path) == example

    dotenv = _write(tmp_path / ".env", "")
    assert resolve_env_source(None, search_dir=tmp_path) == dotenv


def test_resolve_env_source_warns_about_missing_explicit_path(tmp_path: Path, caplog) -> None:
    dotenv = _write(tmp_path / ".env", "")

    with caplog.at_level(logging.WARNING):
        assert resolve_env_source(str(tmp_path / "nope.env"), search_dir=tmp_path) == dotenv

    assert "nope.env not found" in caplog.text


def test_resolve_env_source_raises_when_nothing_exists(tmp_path: Path) -> None:
    with pytest.raises(EnvValidationError) as excinfo:
        resolve_env_source(None, search_dir=tmp_path)
    assert "No .env or .env.example found" in str(excinfo.value)


def test_load_setup_config_applies_defaults(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "# nothing set\n")
    config = load_setup_config(p, environ={}, with_redis=True)

    assert config.n8n_port == 5678
    assert config.n8n_tag == "latest"
    assert config.domain == ""
    assert config.use_letsencrypt is False
    assert config.nginx_email == ""
    assert config.webhook_url == "http://localhost/"
    assert config.redis_password == INSECURE_REDIS_PASSWORD
    assert config.env_source == p


def test_load_setup_config_file_wins_over_environ_and_empty_takes_default(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "N8N_PORT=8080\nN8N_TAG=\nDOMAIN=example.com\n")
    config = load_setup_config(
        p,
        environ={"N8N_PORT": "9999", "N8N_TAG": "1.80.0", "NGINX_EMAIL": "ops@example.com"},
        with_redis=False,
    )

    assert config.n8n_port == 8080
    assert config.n8n_tag == "latest"
    assert config.domain == "example.com"
    assert config.nginx_email == "ops@example.com"


def test_load_setup_config_empty_file_value_shadows_environ(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "DOMAIN=\nUSE_LETSENCRYPT=\n")
    config = load_setup_config(
        p,
        environ={"DOMAIN": "stale.example.com", "USE_LETSENCRYPT": "true"},
        with_redis=False,
    )

    assert config.domain == ""
    assert config.use_letsencrypt is False


def test_load_setup_config_rejects_bad_port(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "N8N_PORT=http\n")
    with pytest.raises(EnvValidationError):
        load_setup_config(p, environ={}, with_redis=False)


def test_validate_port_range() -> None:
    assert validate_port("443") == 443
    with pytest.raises(EnvValidationError):
        validate_port("0")
    with pytest.raises(EnvValidationError):
        validate_port("70000")


def test_parse_boolish_truthy_falsey_and_default() -> None:
    assert parse_boolish("true") is True
    assert parse_boolish("YES") is True
    assert parse_boolish("0") is False
    assert parse_boolish("", default=True) is True
    assert parse_boolish("maybe", default=False) is False


def test_stack_values_include_redis_password_only_with_backend(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "")
    with_redis = load_setup_config(p, environ={}, with_redis=True)
    without_redis = load_setup_config(p, environ={}, with_redis=False)

    assert VarsEnum.REDIS_PASSWORD.value in with_redis.stack_values()
    assert VarsEnum.REDIS_PASSWORD.value not in without_redis.stack_values()
    assert set(without_redis.stack_values()) == {"N8N_TAG", "N8N_PORT", "WEBHOOK_URL"}


def test_insecure_redis_password_flagged_only_with_backend(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "")
    assert insecure_redis_password(load_setup_config(p, environ={}, with_redis=True)) is True
    assert insecure_redis_password(load_setup_config(p, environ={}, with_redis=False)) is False

    strong = _write(tmp_path / "strong.env", "REDIS_PASSWORD=s3cr3t-value\n")
    assert insecure_redis_password(load_setup_config(strong, environ={}, with_redis=True)) is False


def test_unknown_keys_are_reported_not_rejected(tmp_path: Path) -> None:
    p = _write(tmp_path / ".env", "N8N_PORT=5678\nGENERIC_TIMEZONE=UTC\n")
    kv = parse_dotenv_file(p)
    assert unknown_keys(SETUP_SCHEMA, kv) == ["GENERIC_TIMEZONE"]
    load_setup_config(p, environ={}, with_redis=False)


def test_compose_declares_service(tmp_path: Path) -> None:
    compose = _write(tmp_path / "docker-compose.yml", "services:\n  n8n:\n    image: n8n\n  redis:\n    image: redis\n")
    assert compose_declares_service(compose, "redis") is True
    assert compose_declares_service(compose, "postgres") is False
    assert compose_declares_service(tmp_path / "missing.yml", "redis") is False
