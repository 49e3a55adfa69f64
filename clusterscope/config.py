"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from clusterscope.models.config import (
    ACPSettings,
    APIConfig,
    ClusterScopeConfig,
    LogConfig,
    TopologyConfig,
)

_NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"CLUSTERSCOPE_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_list(key: str) -> list[str]:
    return [item.strip() for item in _env(key, "").split(",") if item.strip()]


def _validate_namespaces(values: list[str]) -> list[str]:
    for value in values:
        if not _NAMESPACE_RE.match(value) or len(value) > 63:
            raise ValueError(f"Invalid namespace name: {value}")
    return sorted(set(values))


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> ClusterScopeConfig:
    """Load configuration from CLUSTERSCOPE_* environment variables."""
    interval = _env_int("TOPOLOGY_INTERVAL", 30, min_val=5, max_val=3600)
    # Policies are refreshed after each pass and must finish before the next one.
    refresh_timeout = _env_int("ACP_REFRESH_TIMEOUT", 10, min_val=1, max_val=interval)
    return ClusterScopeConfig(
        cluster_id=_env("CLUSTER_ID", ""),
        topology=TopologyConfig(
            namespaces=_validate_namespaces(_env_list("TOPOLOGY_NAMESPACES")),
            api_management_enabled=_env_bool("API_MANAGEMENT_ENABLED", False),
            interval_seconds=interval,
            # A pass must finish before the next one is due.
            pass_timeout_seconds=_env_int("TOPOLOGY_PASS_TIMEOUT", 20, min_val=1, max_val=interval),
        ),
        acp=ACPSettings(
            default_secret_namespace=_env("ACP_DEFAULT_SECRET_NAMESPACE", "default"),
            refresh_timeout_seconds=refresh_timeout,
            secret_request_timeout_seconds=_env_int("ACP_SECRET_TIMEOUT", 5, min_val=1, max_val=refresh_timeout),
        ),
        api=APIConfig(
            enabled=_env_bool("API_ENABLED", True),
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
