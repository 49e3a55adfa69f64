"""Latest resolved access control policies."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from clusterscope.acp.config import ACPConfig
from clusterscope.acp.resolver import (
    DEFAULT_SECRET_NAMESPACE,
    ACPResolutionError,
    resolve_policies,
    usable_config,
)
from clusterscope.acp.secrets import SecretStore
from clusterscope.observability.logging import get_logger

_logger = get_logger("acp.registry")

DEFAULT_REFRESH_TIMEOUT = 10.0


class ACPRegistry:
    """Holds the most recent successfully resolved batch of policies.

    A batch is resolved, validated and swapped in whole.  When a refresh
    fails or exceeds its deadline, the previous batch stays in place until
    a later refresh succeeds.

    Args:
        store:             Secret lookup for OIDC secret references.
        default_namespace: Namespace of secret references that omit one.
        timeout:           Deadline in seconds for one refresh, secret
                           lookups included.
    """

    def __init__(
        self,
        store: SecretStore | None = None,
        default_namespace: str = DEFAULT_SECRET_NAMESPACE,
        timeout: float = DEFAULT_REFRESH_TIMEOUT,
    ) -> None:
        self._store = store
        self._default_namespace = default_namespace
        self._timeout = timeout
        self._configs: Mapping[str, ACPConfig] = MappingProxyType({})
        self._last_error: str | None = None

    @property
    def configs(self) -> Mapping[str, ACPConfig]:
        return self._configs

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def methods(self) -> dict[str, str]:
        """Policy key to method name; unsupported policies map to ``""``."""
        return {key: str(cfg.method or "") for key, cfg in sorted(self._configs.items())}

    async def refresh(self, policies: Iterable[Mapping[str, Any]]) -> bool:
        """Resolve *policies* and publish them.  Returns False on failure."""
        try:
            async with asyncio.timeout(self._timeout):
                resolved = await resolve_policies(policies, self._store, self._default_namespace)
            configs = {key: usable_config(key, cfg) for key, cfg in resolved.items()}
        except ACPResolutionError as exc:
            self._last_error = str(exc)
            _logger.error("acp_refresh_failed", policy=exc.policy, error=str(exc))
            return False
        except TimeoutError:
            self._last_error = f"access control policy refresh exceeded {self._timeout}s"
            _logger.error("acp_refresh_timed_out", timeout=self._timeout)
            return False
        self._configs = MappingProxyType(configs)
        self._last_error = None
        _logger.info("acp_refresh_completed", policies=len(configs))
        return True
