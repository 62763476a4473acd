"""
billing_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way components obtain
    configuration.  It reads the YAML file (``defaults.yaml`` next to this
    module unless a path is given), applies environment overrides for
    secrets and the database URL, and returns a validated BillingConfig.

Environment overrides:
    STRIPE_API_KEY         -> processor.api_key
    STRIPE_WEBHOOK_SECRET  -> processor.webhook_secret
    BILLING_DATABASE_URL   -> database.url
    SMTP_HOST / SMTP_PORT / SMTP_USERNAME / SMTP_PASSWORD -> broadcast.smtp
    BILLING_CONFIG_PATH    -> path of the YAML file

Audit relevance:
    Every call logs ``billing_config_loaded`` with the config checksum
    (secrets excluded from the fingerprint).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from billing_config.loader import build_config, load_yaml_file
from billing_config.schema import (
    BillingConfig,
    DatabaseConfig,
    IdempotencyConfig,
    LoggingConfig,
    ProcessorConfig,
    QueueConfig,
)
from billing_kernel.logging_config import get_logger

__all__ = [
    "BillingConfig",
    "DatabaseConfig",
    "IdempotencyConfig",
    "LoggingConfig",
    "ProcessorConfig",
    "QueueConfig",
    "get_active_config",
]

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

_ENV_OVERRIDES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("STRIPE_API_KEY", ("processor", "api_key")),
    ("STRIPE_WEBHOOK_SECRET", ("processor", "webhook_secret")),
    ("BILLING_DATABASE_URL", ("database", "url")),
    ("SMTP_HOST", ("broadcast", "smtp", "host")),
    ("SMTP_PORT", ("broadcast", "smtp", "port")),
    ("SMTP_USERNAME", ("broadcast", "smtp", "username")),
    ("SMTP_PASSWORD", ("broadcast", "smtp", "password")),
)


def get_active_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> BillingConfig:
    """The ONLY public configuration entrypoint.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError / ConfigurationError: If a section fails validation.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get("BILLING_CONFIG_PATH") or DEFAULT_CONFIG_PATH)

    data = load_yaml_file(config_path)
    applied = _apply_env_overrides(data, env)
    config = build_config(data)

    logger.info(
        "billing_config_loaded",
        extra={
            "config_path": str(config_path),
            "checksum": config.checksum,
            "env_overrides": applied,
            "plan_count": len(config.plans.plans),
            "webhook_secret_configured": bool(config.processor.webhook_secret),
        },
    )
    return config


def _apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> list[str]:
    applied = []
    for var, path in _ENV_OVERRIDES:
        value = env.get(var)
        if not value:
            continue
        node = data
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        node[path[-1]] = int(value) if path[-1] == "port" else value
        applied.append(var)
    return applied
