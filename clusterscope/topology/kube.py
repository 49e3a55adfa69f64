"""Kubernetes-backed ResourceLister built on kubernetes-asyncio."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from clusterscope.observability.logging import get_logger
from clusterscope.topology.fetcher import ResourceKind

_logger = get_logger("topology.kube")

_HUB_GROUP = "hub.traefik.io"
_HUB_VERSION = "v1alpha1"

# kind -> (group, version, plural)
CUSTOM_RESOURCES: dict[ResourceKind, tuple[str, str, str]] = {
    ResourceKind.DNS_ENDPOINT: ("externaldns.k8s.io", "v1alpha1", "dnsendpoints"),
    ResourceKind.ACCESS_CONTROL_POLICY: (_HUB_GROUP, _HUB_VERSION, "accesscontrolpolicies"),
    ResourceKind.API: (_HUB_GROUP, _HUB_VERSION, "apis"),
    ResourceKind.API_COLLECTION: (_HUB_GROUP, _HUB_VERSION, "apicollections"),
    ResourceKind.API_ACCESS: (_HUB_GROUP, _HUB_VERSION, "apiaccesses"),
    ResourceKind.API_PORTAL: (_HUB_GROUP, _HUB_VERSION, "apiportals"),
    ResourceKind.API_GATEWAY: (_HUB_GROUP, _HUB_VERSION, "apigateways"),
}


class KubeResourceLister:
    """Lists resources cluster-wide and returns them as camelCase dicts.

    Custom resources whose CRD is not installed (HTTP 404) list as empty.
    Every other API failure propagates to the fetcher.
    """

    def __init__(self, api_client: Any | None = None) -> None:
        self._api_client = api_client or k8s_client.ApiClient()
        core = k8s_client.CoreV1Api(self._api_client)
        apps = k8s_client.AppsV1Api(self._api_client)
        networking = k8s_client.NetworkingV1Api(self._api_client)
        self._custom = k8s_client.CustomObjectsApi(self._api_client)
        self._builtin: dict[ResourceKind, Callable[[], Awaitable[Any]]] = {
            ResourceKind.NAMESPACE: core.list_namespace,
            ResourceKind.SERVICE: core.list_service_for_all_namespaces,
            ResourceKind.DEPLOYMENT: apps.list_deployment_for_all_namespaces,
            ResourceKind.STATEFUL_SET: apps.list_stateful_set_for_all_namespaces,
            ResourceKind.DAEMON_SET: apps.list_daemon_set_for_all_namespaces,
            ResourceKind.REPLICA_SET: apps.list_replica_set_for_all_namespaces,
            ResourceKind.INGRESS: networking.list_ingress_for_all_namespaces,
            ResourceKind.INGRESS_CLASS: networking.list_ingress_class,
        }

    async def list(self, kind: ResourceKind) -> list[dict[str, Any]]:
        if kind in self._builtin:
            response = await self._builtin[kind]()
            return [self._api_client.sanitize_for_serialization(item) for item in response.items]

        if kind not in CUSTOM_RESOURCES:
            raise ValueError(f"no listing registered for kind {kind}")
        group, version, plural = CUSTOM_RESOURCES[kind]
        try:
            response = await self._custom.list_cluster_custom_object(group, version, plural)
        except ApiException as exc:
            if exc.status == 404:
                _logger.debug("custom_resource_not_installed", kind=str(kind), group=group)
                return []
            raise
        return list(response.get("items") or ())

    async def close(self) -> None:
        await self._api_client.close()
