"""Cluster snapshot data structures.

A ``Cluster`` is one point-in-time view of the resources ClusterScope
observes, with relationship fields (Service.apps, Ingress.services,
Ingress.controller) populated by the fetcher.  Every aggregation pass
builds a brand new object graph; nothing here is shared across snapshots.

``to_dict()`` on each entity returns the camelCase document handed to the
shipping layer.  Empty optional fields are omitted and internal-only
correlation fields (pod labels, load-balancer IPs) are never emitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


def _compact(doc: dict[str, Any], **optional: Any) -> dict[str, Any]:
    """Add *optional* entries to *doc*, skipping empty values."""
    for key, value in optional.items():
        if value is None or value == "" or value == [] or value == {} or value is False:
            continue
        doc[key] = value
    return doc


# ---------------------------------------------------------------------------
# Label selectors
# ---------------------------------------------------------------------------


class SelectorOperator(StrEnum):
    """Operators allowed in a label selector requirement."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True)
class LabelSelectorRequirement:
    """One ``matchExpressions`` entry.

    ``operator`` is kept as declared on the resource; it is normalised when
    the selector is evaluated.
    """

    key: str
    operator: str
    values: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return _compact({"key": self.key, "operator": self.operator}, values=list(self.values))


@dataclass(frozen=True)
class LabelSelector:
    """Kubernetes label selector (``matchLabels`` + ``matchExpressions``)."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: tuple[LabelSelectorRequirement, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LabelSelector | None:
        """Build a selector from its raw form; ``None`` stays ``None``."""
        if data is None:
            return None
        expressions = tuple(
            LabelSelectorRequirement(
                key=str(expr.get("key", "")),
                operator=str(expr.get("operator", "")),
                values=tuple(str(v) for v in expr.get("values") or ()),
            )
            for expr in data.get("matchExpressions") or ()
        )
        return cls(
            match_labels={str(k): str(v) for k, v in (data.get("matchLabels") or {}).items()},
            match_expressions=expressions,
        )

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {},
            matchLabels=dict(self.match_labels),
            matchExpressions=[expr.to_dict() for expr in self.match_expressions],
        )


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


@dataclass
class App:
    """Abstraction over Deployments, ReplicaSets, DaemonSets and StatefulSets."""

    name: str
    kind: str
    namespace: str
    replicas: int = 0
    ready_replicas: int = 0
    images: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    # Correlation only, never serialized.
    pod_labels: dict[str, str] = field(default_factory=dict, repr=False)
    pod_annotations: dict[str, str] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "kind": self.kind,
                "namespace": self.namespace,
                "replicas": self.replicas,
                "readyReplicas": self.ready_replicas,
            },
            images=list(self.images),
            labels=dict(self.labels),
        )


@dataclass
class IngressController(App):
    """An App acting as the cluster's ingress controller."""

    type: str = ""
    ingress_classes: list[str] = field(default_factory=list)
    metrics_urls: list[str] = field(default_factory=list)
    public_ips: list[str] = field(default_factory=list)

    @classmethod
    def from_app(cls, app: App, controller_type: str) -> IngressController:
        return cls(
            name=app.name,
            kind=app.kind,
            namespace=app.namespace,
            replicas=app.replicas,
            ready_replicas=app.ready_replicas,
            images=list(app.images),
            labels=dict(app.labels),
            pod_labels=dict(app.pod_labels),
            pod_annotations=dict(app.pod_annotations),
            type=controller_type,
        )

    def to_dict(self) -> dict[str, Any]:
        doc = super().to_dict()
        doc["type"] = self.type
        return _compact(
            doc,
            ingressClasses=list(self.ingress_classes),
            metricsURLs=list(self.metrics_urls),
            publicIPs=list(self.public_ips),
        )


# ---------------------------------------------------------------------------
# Networking
# ---------------------------------------------------------------------------


@dataclass
class Service:
    """A Kubernetes Service and the Apps its selector targets."""

    name: str
    namespace: str
    type: str = "ClusterIP"
    selector: dict[str, str] = field(default_factory=dict)
    apps: list[str] = field(default_factory=list)
    # Correlation only, never serialized.
    ports: list[dict[str, Any]] = field(default_factory=list, repr=False)
    load_balancer_ips: list[str] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "namespace": self.namespace,
                "type": self.type,
                "selector": dict(self.selector),
            },
            apps=list(self.apps),
        )


@dataclass
class Ingress:
    """An Ingress with its resolved controller and referenced Services.

    ``tls``, ``rules`` and ``default_service`` are passed through verbatim
    from the resource spec.
    """

    name: str
    namespace: str
    cluster_id: str
    controller: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    tls: list[dict[str, Any]] = field(default_factory=list)
    rules: list[dict[str, Any]] = field(default_factory=list)
    default_service: dict[str, Any] | None = None
    services: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name, "namespace": self.namespace, "clusterId": self.cluster_id},
            controller=self.controller,
            annotations=dict(self.annotations),
            tls=list(self.tls),
            rules=list(self.rules),
            defaultService=self.default_service,
            services=list(self.services),
        )


@dataclass
class ExternalDNS:
    """A DNS record published by external-dns."""

    dns_name: str
    targets: list[str] = field(default_factory=list)
    ttl: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"dnsName": self.dns_name, "targets": list(self.targets), "ttl": self.ttl}


# ---------------------------------------------------------------------------
# Access control policies
# ---------------------------------------------------------------------------


class ACPMethod(StrEnum):
    """Authentication method of an access control policy."""

    JWT = "jwt"
    BASIC_AUTH = "basicAuth"
    DIGEST_AUTH = "digestAuth"


@dataclass(frozen=True)
class ACPJWT:
    """JWT settings of an access control policy."""

    signing_secret: str = ""
    signing_secret_base64_encoded: bool = False
    public_key: str = ""
    jwks_file: str = ""
    jwks_url: str = ""
    strip_authorization_header: bool = False
    forward_headers: dict[str, str] = field(default_factory=dict)
    token_query_key: str = ""
    claims: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"signingSecretBase64Encoded": self.signing_secret_base64_encoded},
            signingSecret=self.signing_secret,
            publicKey=self.public_key,
            jwksFile=self.jwks_file,
            jwksUrl=self.jwks_url,
            stripAuthorizationHeader=self.strip_authorization_header,
            forwardHeaders=dict(self.forward_headers),
            tokenQueryKey=self.token_query_key,
            claims=self.claims,
        )


@dataclass(frozen=True)
class ACPBasicAuth:
    """HTTP basic authentication settings."""

    users: str = ""
    realm: str = ""
    strip_authorization_header: bool = False
    forward_username_header: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {},
            users=self.users,
            realm=self.realm,
            stripAuthorizationHeader=self.strip_authorization_header,
            forwardUsernameHeader=self.forward_username_header,
        )


@dataclass(frozen=True)
class ACPDigestAuth(ACPBasicAuth):
    """HTTP digest authentication settings (same shape as basic auth)."""


ACPPayload = ACPJWT | ACPDigestAuth | ACPBasicAuth


@dataclass(frozen=True)
class AccessControlPolicy:
    """An access control policy and exactly one method payload.

    The method is derived from the payload type, so a policy whose tag
    disagrees with its payload cannot be constructed.
    """

    name: str
    namespace: str
    cluster_id: str
    payload: ACPPayload

    @property
    def method(self) -> ACPMethod:
        # ACPDigestAuth subclasses ACPBasicAuth: check it first.
        match self.payload:
            case ACPJWT():
                return ACPMethod.JWT
            case ACPDigestAuth():
                return ACPMethod.DIGEST_AUTH
            case ACPBasicAuth():
                return ACPMethod.BASIC_AUTH
        raise TypeError(f"unsupported access control policy payload: {type(self.payload).__name__}")

    def to_dict(self) -> dict[str, Any]:
        method = self.method
        return {
            "name": self.name,
            "namespace": self.namespace,
            "clusterId": self.cluster_id,
            "method": method.value,
            method.value: self.payload.to_dict(),
        }


# ---------------------------------------------------------------------------
# API management
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class APIServiceBackendPort:
    name: str = ""
    number: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _compact({}, name=self.name, number=self.number)


@dataclass(frozen=True)
class OpenAPISpec:
    url: str = ""
    path: str = ""
    protocol: str = ""
    port: APIServiceBackendPort | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {},
            url=self.url,
            path=self.path,
            protocol=self.protocol,
            port=self.port.to_dict() if self.port else None,
        )


@dataclass(frozen=True)
class APIService:
    name: str = ""
    port: APIServiceBackendPort = field(default_factory=APIServiceBackendPort)
    openapi_spec: OpenAPISpec = field(default_factory=OpenAPISpec)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name, "port": self.port.to_dict()},
            openApiSpec=self.openapi_spec.to_dict(),
        )


@dataclass
class API:
    """An API exposed through the hub gateway."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    path_prefix: str = ""
    service: APIService = field(default_factory=APIService)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name, "namespace": self.namespace, "pathPrefix": self.path_prefix},
            labels=dict(self.labels),
            service=self.service.to_dict(),
        )


@dataclass
class APICollection:
    """A group of APIs selected by label."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    path_prefix: str = ""
    api_selector: LabelSelector = field(default_factory=LabelSelector)

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name, "apiSelector": self.api_selector.to_dict()},
            labels=dict(self.labels),
            pathPrefix=self.path_prefix,
        )


@dataclass
class APIAccess:
    """Grants user groups access to the APIs and collections it selects.

    Selectors are not resolved here; see
    ``clusterscope.topology.fetcher.resolve_api_access``.
    """

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    groups: list[str] = field(default_factory=list)
    api_selector: LabelSelector | None = None
    api_collection_selector: LabelSelector | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name},
            labels=dict(self.labels),
            groups=list(self.groups),
            apiSelector=self.api_selector.to_dict() if self.api_selector else None,
            apiCollectionSelector=(self.api_collection_selector.to_dict() if self.api_collection_selector else None),
        )


@dataclass
class APIPortal:
    name: str
    description: str = ""
    gateway: str = ""
    custom_domains: list[str] = field(default_factory=list)
    hub_domain: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name, "gateway": self.gateway},
            description=self.description,
            customDomains=list(self.custom_domains),
            hubDomain=self.hub_domain,
        )


@dataclass
class APIGateway:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    api_accesses: list[str] = field(default_factory=list)
    custom_domains: list[str] = field(default_factory=list)
    hub_domain: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"name": self.name},
            labels=dict(self.labels),
            apiAccesses=list(self.api_accesses),
            customDomains=list(self.custom_domains),
            hubDomain=self.hub_domain,
        )


# ---------------------------------------------------------------------------
# Snapshot root
# ---------------------------------------------------------------------------


@dataclass
class Cluster:
    """Root of a snapshot.  Built wholesale by each aggregation pass."""

    id: str
    namespaces: list[str] = field(default_factory=list)
    apps: dict[str, App] = field(default_factory=dict)
    ingresses: dict[str, Ingress] = field(default_factory=dict)
    services: dict[str, Service] = field(default_factory=dict)
    ingress_controllers: dict[str, IngressController] = field(default_factory=dict)
    external_dnses: dict[str, ExternalDNS] = field(default_factory=dict)
    access_control_policies: dict[str, AccessControlPolicy] = field(default_factory=dict)
    # Populated only when API management is enabled.
    apis: dict[str, API] = field(default_factory=dict)
    api_collections: dict[str, APICollection] = field(default_factory=dict)
    api_accesses: dict[str, APIAccess] = field(default_factory=dict)
    api_portals: dict[str, APIPortal] = field(default_factory=dict)
    api_gateways: dict[str, APIGateway] = field(default_factory=dict)
    # Raw AccessControlPolicy objects from the same pass, for policy
    # resolution.  Never serialized.
    policy_sources: list[dict[str, Any]] = field(default_factory=list, repr=False)

    def entity_counts(self) -> dict[str, int]:
        return {
            "apps": len(self.apps),
            "ingresses": len(self.ingresses),
            "services": len(self.services),
            "ingress_controllers": len(self.ingress_controllers),
            "external_dnses": len(self.external_dnses),
            "access_control_policies": len(self.access_control_policies),
            "apis": len(self.apis),
            "api_collections": len(self.api_collections),
            "api_accesses": len(self.api_accesses),
            "api_portals": len(self.api_portals),
            "api_gateways": len(self.api_gateways),
        }

    def to_dict(self) -> dict[str, Any]:
        def _dump(entities: dict[str, Any]) -> dict[str, Any]:
            return {key: entity.to_dict() for key, entity in sorted(entities.items())}

        return _compact(
            {"id": self.id},
            namespaces=list(self.namespaces),
            apps=_dump(self.apps),
            ingresses=_dump(self.ingresses),
            services=_dump(self.services),
            ingressControllers=_dump(self.ingress_controllers),
            externalDNSes=_dump(self.external_dnses),
            accessControlPolicies=_dump(self.access_control_policies),
            apis=_dump(self.apis),
            apiCollections=_dump(self.api_collections),
            apiAccesses=_dump(self.api_accesses),
            apiPortals=_dump(self.api_portals),
            apiGateways=_dump(self.api_gateways),
        )
