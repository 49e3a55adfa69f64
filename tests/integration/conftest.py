"""Shared fixtures for ClusterScope integration tests.

Provides an in-memory ResourceLister and raw-object factories so the
fetcher and watcher can be exercised end to end without a Kubernetes
cluster.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from clusterscope.topology.fetcher import ResourceKind

# ---------------------------------------------------------------------------
# Listers
# ---------------------------------------------------------------------------


class FakeLister:
    """ResourceLister serving fixed raw objects per kind."""

    def __init__(self, objects: dict[ResourceKind, list[dict[str, Any]]] | None = None) -> None:
        self.objects = objects or {}
        self.failures: dict[ResourceKind, Exception] = {}
        self.delay = 0.0
        self.calls: list[ResourceKind] = []

    async def list(self, kind: ResourceKind) -> list[dict[str, Any]]:
        self.calls.append(kind)
        if self.delay:
            await asyncio.sleep(self.delay)
        if kind in self.failures:
            raise self.failures[kind]
        return list(self.objects.get(kind, ()))


# ---------------------------------------------------------------------------
# Raw object factories
# ---------------------------------------------------------------------------


def make_namespace(name: str) -> dict[str, Any]:
    return {"metadata": {"name": name}}


def make_deployment(
    name: str,
    namespace: str = "default",
    pod_labels: dict[str, str] | None = None,
    images: list[str] | None = None,
    replicas: int | None = 1,
    ready: int = 1,
    pod_annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "template": {
            "metadata": {"labels": pod_labels or {}, "annotations": pod_annotations or {}},
            "spec": {"containers": [{"name": "main", "image": image} for image in images or ["busybox:1.36"]]},
        }
    }
    if replicas is not None:
        spec["replicas"] = replicas
    return {
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": name}},
        "spec": spec,
        "status": {"readyReplicas": ready},
    }


def make_service(
    name: str,
    namespace: str = "default",
    selector: dict[str, str] | None = None,
    service_type: str = "ClusterIP",
    lb_ips: list[str] | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"type": service_type, "selector": selector or {}, "ports": [{"port": 80}]},
    }
    if lb_ips:
        obj["status"] = {"loadBalancer": {"ingress": [{"ip": ip} for ip in lb_ips]}}
    return obj


def _backend(service: str, port: int = 80) -> dict[str, Any]:
    return {"service": {"name": service, "port": {"number": port}}}


def make_ingress(
    name: str,
    namespace: str = "default",
    default_backend: str | None = None,
    paths: list[str] | None = None,
    ingress_class: str | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    if default_backend:
        spec["defaultBackend"] = _backend(default_backend)
    if paths:
        spec["rules"] = [
            {
                "host": "shop.example.com",
                "http": {"paths": [{"path": f"/{svc}", "pathType": "Prefix", "backend": _backend(svc)} for svc in paths]},
            }
        ]
    if ingress_class:
        spec["ingressClassName"] = ingress_class
    return {"metadata": {"name": name, "namespace": namespace, "annotations": annotations or {}}, "spec": spec}


def make_ingress_class(name: str, controller: str, default: bool = False) -> dict[str, Any]:
    annotations = {"ingressclass.kubernetes.io/is-default-class": "true"} if default else {}
    return {"metadata": {"name": name, "annotations": annotations}, "spec": {"controller": controller}}


@pytest.fixture
def lister() -> FakeLister:
    return FakeLister()
