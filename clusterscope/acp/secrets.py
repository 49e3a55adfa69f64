"""Credential store lookups for access control policies."""

from __future__ import annotations

import base64
import binascii
from typing import Any, Protocol

from clusterscope.observability.logging import get_logger

_logger = get_logger("acp.secrets")


class SecretStoreError(Exception):
    """Raised when a secret lookup fails for any reason other than not found."""

    def __init__(self, namespace: str, name: str, cause: Exception) -> None:
        super().__init__(f"get secret {namespace}/{name}: {cause}")
        self.namespace = namespace
        self.name = name
        self.cause = cause


class SecretStore(Protocol):
    """Namespaced key/value credential lookup."""

    async def get(self, namespace: str, name: str) -> dict[str, str] | None:
        """Return the secret's fields, or None if the secret does not exist.

        Raises:
            SecretStoreError: the lookup failed.
        """
        ...


def decode_secret_data(secret: dict[str, Any]) -> dict[str, str]:
    """Return the decoded fields of a raw Secret object.

    ``data`` values are base64 encoded; ``stringData`` values are plain and
    take precedence, as on the API server.
    """
    fields: dict[str, str] = {}
    for key, value in (secret.get("data") or {}).items():
        try:
            fields[key] = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError(f"field {key!r} is not valid base64 encoded UTF-8") from exc
    for key, value in (secret.get("stringData") or {}).items():
        fields[key] = str(value)
    return fields


DEFAULT_REQUEST_TIMEOUT = 5.0


class KubeSecretStore:
    """SecretStore reading Kubernetes Secrets through kubernetes-asyncio.

    Every read carries a request timeout; a read that exceeds it fails with
    ``SecretStoreError``.
    """

    def __init__(self, api_client: Any | None = None, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

        self._api_client = api_client or k8s_client.ApiClient()
        self._core = k8s_client.CoreV1Api(self._api_client)
        self._request_timeout = request_timeout

    async def get(self, namespace: str, name: str) -> dict[str, str] | None:
        from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

        try:
            secret = await self._core.read_namespaced_secret(name, namespace, _request_timeout=self._request_timeout)
            raw = self._api_client.sanitize_for_serialization(secret)
            return decode_secret_data(raw)
        except ApiException as exc:
            if exc.status == 404:
                _logger.debug("secret_not_found", namespace=namespace, name=name)
                return None
            raise SecretStoreError(namespace, name, exc) from exc
        except TimeoutError as exc:
            _logger.warning("secret_read_timed_out", namespace=namespace, name=name, timeout=self._request_timeout)
            raise SecretStoreError(namespace, name, exc) from exc
        except ValueError as exc:
            raise SecretStoreError(namespace, name, exc) from exc
