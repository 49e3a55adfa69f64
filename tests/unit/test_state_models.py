"""Unit tests for snapshot serialization and ingress controller detection."""

from __future__ import annotations

import pytest

from clusterscope.models.state import (
    ACPJWT,
    AccessControlPolicy,
    ACPBasicAuth,
    ACPDigestAuth,
    ACPMethod,
    App,
    Cluster,
    IngressController,
    Service,
)
from clusterscope.topology.controllers import (
    CONTROLLER_NGINX,
    CONTROLLER_TRAEFIK,
    CONTROLLER_TYPE_ANNOTATION,
    ImageSignatureDetector,
)


def _make_app(images: list[str] | None = None, annotations: dict[str, str] | None = None) -> App:
    return App(
        name="edge",
        kind="Deployment",
        namespace="kube-system",
        replicas=2,
        ready_replicas=1,
        images=images or [],
        labels={"team": "net"},
        pod_labels={"app": "edge"},
        pod_annotations=annotations or {},
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestToDict:
    def test_app_omits_correlation_fields(self) -> None:
        doc = _make_app(images=["traefik:v3.0"]).to_dict()
        assert doc == {
            "name": "edge",
            "kind": "Deployment",
            "namespace": "kube-system",
            "replicas": 2,
            "readyReplicas": 1,
            "images": ["traefik:v3.0"],
            "labels": {"team": "net"},
        }

    def test_service_omits_ports_and_ips(self) -> None:
        svc = Service(
            name="web",
            namespace="default",
            selector={"app": "web"},
            ports=[{"port": 80}],
            load_balancer_ips=["1.2.3.4"],
        )
        assert svc.to_dict() == {"name": "web", "namespace": "default", "type": "ClusterIP", "selector": {"app": "web"}}

    def test_ingress_controller_adds_type(self) -> None:
        controller = IngressController.from_app(_make_app(), CONTROLLER_TRAEFIK)
        controller.public_ips = ["1.2.3.4"]
        doc = controller.to_dict()
        assert doc["type"] == "traefik"
        assert doc["publicIPs"] == ["1.2.3.4"]
        assert "metricsURLs" not in doc

    def test_cluster_sorted_and_compact(self) -> None:
        cluster = Cluster(
            id="c1",
            namespaces=["default"],
            services={
                "b@default": Service(name="b", namespace="default"),
                "a@default": Service(name="a", namespace="default"),
            },
        )
        doc = cluster.to_dict()
        assert list(doc["services"]) == ["a@default", "b@default"]
        assert "apps" not in doc
        assert "apis" not in doc

    def test_entity_counts(self) -> None:
        cluster = Cluster(id="c1", apps={"edge@kube-system": _make_app()})
        counts = cluster.entity_counts()
        assert counts["apps"] == 1
        assert counts["services"] == 0


class TestAccessControlPolicyMethod:
    @pytest.mark.parametrize(
        ("payload", "method"),
        [
            (ACPJWT(signing_secret="s"), ACPMethod.JWT),
            (ACPBasicAuth(users="u:p"), ACPMethod.BASIC_AUTH),
            (ACPDigestAuth(users="u:r:h"), ACPMethod.DIGEST_AUTH),
        ],
    )
    def test_method_follows_payload(self, payload, method) -> None:
        policy = AccessControlPolicy(name="p", namespace="", cluster_id="c1", payload=payload)
        assert policy.method is method

    def test_to_dict_nests_payload_under_method(self) -> None:
        policy = AccessControlPolicy(name="p", namespace="", cluster_id="c1", payload=ACPDigestAuth(users="u", realm="r"))
        doc = policy.to_dict()
        assert doc["method"] == "digestAuth"
        assert doc["digestAuth"] == {"users": "u", "realm": "r"}
        assert "basicAuth" not in doc

    def test_unsupported_payload(self) -> None:
        policy = AccessControlPolicy(name="p", namespace="", cluster_id="c1", payload="oidc")  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            _ = policy.method


# ---------------------------------------------------------------------------
# Ingress controller detection
# ---------------------------------------------------------------------------


class TestImageSignatureDetector:
    def test_traefik_image(self) -> None:
        assert ImageSignatureDetector().detect(_make_app(images=["docker.io/library/traefik:v3.0"])) == CONTROLLER_TRAEFIK

    def test_nginx_image_with_digest(self) -> None:
        app = _make_app(images=["registry.k8s.io/ingress-nginx/controller:v1.10.0@sha256:abcd"])
        assert ImageSignatureDetector().detect(app) == CONTROLLER_NGINX

    def test_unrelated_image(self) -> None:
        assert ImageSignatureDetector().detect(_make_app(images=["nginx:1.27"])) is None

    def test_annotation_overrides_image(self) -> None:
        app = _make_app(images=["nginx:1.27"], annotations={CONTROLLER_TYPE_ANNOTATION: "custom"})
        assert ImageSignatureDetector().detect(app) == "custom"

    def test_annotation_opts_out(self) -> None:
        app = _make_app(images=["traefik:v3.0"], annotations={CONTROLLER_TYPE_ANNOTATION: "none"})
        assert ImageSignatureDetector().detect(app) is None
