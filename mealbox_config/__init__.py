"""
mealbox_config -- single public entrypoint for engine configuration.

Responsibility:
    ``get_active_config()`` is the only way services and scripts obtain
    deploy-time configuration.  No other component reads the YAML file or
    the gateway/database environment variables directly.

Architecture position:
    Sits above ``mealbox_kernel`` and below modules, services and batch.
    The kernel MUST NEVER import from ``mealbox_config``.
"""

from __future__ import annotations

from pathlib import Path

from mealbox_config.loader import load_config
from mealbox_config.schema import EngineConfig, GatewaySettings, JobSettings

_active: EngineConfig | None = None


def get_active_config(path: str | Path | None = None, reload: bool = False) -> EngineConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _active
    if _active is None or reload or path is not None:
        _active = load_config(path)
    return _active


__all__ = [
    "EngineConfig",
    "GatewaySettings",
    "JobSettings",
    "get_active_config",
    "load_config",
]
