"""
Configuration Loader (``mealbox_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the typed
``mealbox_config.schema`` dataclasses, then applies environment overrides
for secrets and the database URL.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown job type or bad sizing  -> ``ValueError``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from mealbox_config.schema import (
    DEFAULT_JOB_SETTINGS,
    EngineConfig,
    GatewaySettings,
    JobSettings,
)
from mealbox_kernel.logging_config import get_logger

logger = get_logger("config.loader")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

# Environment variable -> GatewaySettings field
_GATEWAY_ENV = {
    "RAZORPAY_KEY_ID": "key_id",
    "RAZORPAY_KEY_SECRET": "key_secret",
    "RAZORPAY_WEBHOOK_SECRET": "webhook_secret",
    "RAZORPAY_BASE_URL": "base_url",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


def parse_job_settings(data: Mapping[str, Any]) -> dict[str, JobSettings]:
    """Parse the ``jobs`` section."""
    jobs: dict[str, JobSettings] = {}
    for job_type, raw in (data or {}).items():
        if job_type not in DEFAULT_JOB_SETTINGS:
            raise ValueError(
                f"Unknown job type in config: {job_type!r}. "
                f"Known: {sorted(DEFAULT_JOB_SETTINGS)}"
            )
        jobs[job_type] = JobSettings(
            batch_size=int(raw["batch_size"]),
            max_duration_seconds=int(raw.get("max_duration_seconds", 300)),
            single_pass=bool(raw.get("single_pass", False)),
        )
    return jobs


def parse_gateway_settings(
    data: Mapping[str, Any], env: Mapping[str, str],
) -> GatewaySettings:
    """Parse the ``gateway`` section and overlay environment secrets."""
    values: dict[str, Any] = {
        "base_url": data.get("base_url", GatewaySettings.base_url),
        "timeout_seconds": float(data.get("timeout_seconds", 30.0)),
        "max_retries": int(data.get("max_retries", 3)),
        "backoff_factor": float(data.get("backoff_factor", 2.0)),
    }
    for env_name, field_name in _GATEWAY_ENV.items():
        if env.get(env_name):
            values[field_name] = env[env_name]
    return GatewaySettings(**values)


def parse_engine_config(
    data: Mapping[str, Any], env: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Build an EngineConfig from a parsed YAML document."""
    env = os.environ if env is None else env
    engine = data.get("engine") or {}

    jobs = dict(DEFAULT_JOB_SETTINGS)
    jobs.update(parse_job_settings(data.get("jobs") or {}))

    return EngineConfig(
        timezone=engine.get("timezone", "Asia/Kolkata"),
        currency=engine.get("currency", "INR"),
        receipt_prefix=engine.get("receipt_prefix", "MB"),
        lease_grace_seconds=int(engine.get("lease_grace_seconds", 60)),
        database_url=env.get("MEALBOX_DATABASE_URL") or engine.get("database_url"),
        jobs=jobs,
        gateway=parse_gateway_settings(data.get("gateway") or {}, env),
    )


def load_config(
    path: str | Path | None = None, env: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load configuration from ``path`` (or ``$MEALBOX_CONFIG``, or the defaults)."""
    env = os.environ if env is None else env
    config_path = Path(path or env.get("MEALBOX_CONFIG") or DEFAULT_CONFIG_PATH)
    config = parse_engine_config(load_yaml_file(config_path), env)
    logger.info(
        "config_loaded",
        extra={
            "path": str(config_path),
            "timezone": config.timezone,
            "currency": config.currency,
            "gateway_configured": config.gateway.is_configured,
        },
    )
    return config
