"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TopologyConfig:
    """Aggregation pass configuration."""

    namespaces: list[str] = field(default_factory=list)  # empty means all namespaces
    api_management_enabled: bool = False
    interval_seconds: int = 30
    pass_timeout_seconds: int = 20


@dataclass
class ACPSettings:
    """Access control policy resolution configuration."""

    default_secret_namespace: str = "default"
    refresh_timeout_seconds: int = 10
    secret_request_timeout_seconds: int = 5


@dataclass
class APIConfig:
    """Status API configuration."""

    enabled: bool = True
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class ClusterScopeConfig:
    """Top-level ClusterScope configuration."""

    cluster_id: str = ""
    topology: TopologyConfig = field(default_factory=TopologyConfig)
    acp: ACPSettings = field(default_factory=ACPSettings)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
