"""Resource fetch and correlation engine.

``Fetcher.fetch()`` lists every watched resource kind through a
``ResourceLister`` and joins the listings into a single ``Cluster``:

* Service -> App         selector superset match within a namespace
* Ingress -> Service     default backend, then rules, then paths
* App -> IngressController   through an ``IngressControllerDetector``
* Ingress -> IngressController   through the ingress class

A listing failure for any kind fails the whole pass with ``ListingError``;
no partially populated Cluster ever leaves this module.  Dangling
references (an Ingress naming a Service that is not listed yet) are kept
as-is and are not errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any, Protocol

from clusterscope.models.state import (
    API,
    ACPBasicAuth,
    ACPDigestAuth,
    ACPJWT,
    AccessControlPolicy,
    APIAccess,
    APICollection,
    APIGateway,
    APIPortal,
    APIService,
    APIServiceBackendPort,
    App,
    Cluster,
    ExternalDNS,
    Ingress,
    IngressController,
    LabelSelector,
    OpenAPISpec,
    Service,
)
from clusterscope.observability.logging import get_logger
from clusterscope.topology.controllers import (
    INGRESS_CLASS_CONTROLLERS,
    ImageSignatureDetector,
    IngressControllerDetector,
)
from clusterscope.topology.selectors import matches_label_selector, object_key, service_selects

_logger = get_logger("topology.fetcher")

_INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
_DEFAULT_CLASS_ANNOTATION = "ingressclass.kubernetes.io/is-default-class"
_METRICS_PORT_ANNOTATION = "prometheus.io/port"
_METRICS_PATH_ANNOTATION = "prometheus.io/path"
_METRICS_SCRAPE_ANNOTATION = "prometheus.io/scrape"


class ResourceKind(StrEnum):
    """Resource kinds read by an aggregation pass."""

    NAMESPACE = "Namespace"
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"
    REPLICA_SET = "ReplicaSet"
    SERVICE = "Service"
    INGRESS = "Ingress"
    INGRESS_CLASS = "IngressClass"
    DNS_ENDPOINT = "DNSEndpoint"
    ACCESS_CONTROL_POLICY = "AccessControlPolicy"
    API = "API"
    API_COLLECTION = "APICollection"
    API_ACCESS = "APIAccess"
    API_PORTAL = "APIPortal"
    API_GATEWAY = "APIGateway"


# Listing order of workload kinds is also their precedence on key collision.
WORKLOAD_KINDS = (
    ResourceKind.DEPLOYMENT,
    ResourceKind.STATEFUL_SET,
    ResourceKind.DAEMON_SET,
    ResourceKind.REPLICA_SET,
)

CORE_KINDS = (
    ResourceKind.NAMESPACE,
    *WORKLOAD_KINDS,
    ResourceKind.SERVICE,
    ResourceKind.INGRESS,
    ResourceKind.INGRESS_CLASS,
    ResourceKind.DNS_ENDPOINT,
    ResourceKind.ACCESS_CONTROL_POLICY,
)

API_MANAGEMENT_KINDS = (
    ResourceKind.API,
    ResourceKind.API_COLLECTION,
    ResourceKind.API_ACCESS,
    ResourceKind.API_PORTAL,
    ResourceKind.API_GATEWAY,
)


class ResourceLister(Protocol):
    """Lists the current objects of one kind as raw Kubernetes dicts.

    Each call must return a consistent point-in-time view of that kind.
    """

    async def list(self, kind: ResourceKind) -> list[dict[str, Any]]: ...


class ListingError(Exception):
    """Raised when a resource kind cannot be listed; fails the whole pass."""

    def __init__(self, kind: ResourceKind, cause: Exception) -> None:
        super().__init__(f"list {kind}: {cause}")
        self.kind = kind
        self.cause = cause


# ---------------------------------------------------------------------------
# Raw object helpers
# ---------------------------------------------------------------------------


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _spec(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("spec") or {}


def _status(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("status") or {}


def _str_map(value: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in (value or {}).items()}


def _str_list(value: Any) -> list[str]:
    return [str(v) for v in value or ()]


def _dedup(items: Iterable[str]) -> list[str]:
    """Deduplicate *items*, keeping the first occurrence of each."""
    return list(dict.fromkeys(items))


def _is_controlled(obj: Mapping[str, Any]) -> bool:
    return any(ref.get("controller") for ref in _metadata(obj).get("ownerReferences") or ())


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class Fetcher:
    """Builds Cluster snapshots from resource listings.

    Args:
        lister:          Source of raw objects per kind.
        cluster_id:      Identifier stamped on the snapshot and its entities.
        detector:        Ingress controller heuristic.
        api_management:  Also list and map the API management resources.
        namespaces:      Namespace allow-list; empty or None means all.
    """

    def __init__(
        self,
        lister: ResourceLister,
        cluster_id: str,
        detector: IngressControllerDetector | None = None,
        api_management: bool = False,
        namespaces: Iterable[str] | None = None,
    ) -> None:
        self._lister = lister
        self._cluster_id = cluster_id
        self._detector = detector or ImageSignatureDetector()
        self._api_management = api_management
        self._allowed_namespaces = frozenset(namespaces or ())

    async def fetch(self) -> Cluster:
        """Run one aggregation pass and return a complete Cluster."""
        kinds = list(CORE_KINDS)
        if self._api_management:
            kinds.extend(API_MANAGEMENT_KINDS)
        listings = await self._list_all(kinds)

        namespaces = self._namespaces(listings[ResourceKind.NAMESPACE])
        apps = self.get_apps({kind: listings[kind] for kind in WORKLOAD_KINDS})
        services = self.get_services(listings[ResourceKind.SERVICE], apps)
        ingress_classes = listings[ResourceKind.INGRESS_CLASS]
        controllers = self.get_ingress_controllers(apps, services, ingress_classes)

        cluster = Cluster(
            id=self._cluster_id,
            namespaces=namespaces,
            apps=apps,
            services=services,
            ingress_controllers=controllers,
            ingresses=self.get_ingresses(listings[ResourceKind.INGRESS], controllers, ingress_classes),
            external_dnses=self.get_external_dnses(listings[ResourceKind.DNS_ENDPOINT]),
            access_control_policies=self.get_access_control_policies(listings[ResourceKind.ACCESS_CONTROL_POLICY]),
            policy_sources=listings[ResourceKind.ACCESS_CONTROL_POLICY],
        )
        if self._api_management:
            cluster.apis = self.get_apis(listings[ResourceKind.API])
            cluster.api_collections = self.get_api_collections(listings[ResourceKind.API_COLLECTION])
            cluster.api_accesses = self.get_api_accesses(listings[ResourceKind.API_ACCESS])
            cluster.api_portals = self.get_api_portals(listings[ResourceKind.API_PORTAL])
            cluster.api_gateways = self.get_api_gateways(listings[ResourceKind.API_GATEWAY])

        _logger.debug("cluster_snapshot_built", cluster_id=self._cluster_id, **cluster.entity_counts())
        return cluster

    async def _list_all(self, kinds: Iterable[ResourceKind]) -> dict[ResourceKind, list[dict[str, Any]]]:
        """List every kind concurrently; the first failure cancels the rest."""
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = {kind: tg.create_task(self._list(kind), name=f"list-{kind}") for kind in kinds}
        except ExceptionGroup as group:
            failures = [exc for exc in group.exceptions if isinstance(exc, ListingError)]
            if failures:
                raise failures[0] from failures[0].cause
            raise
        return {kind: task.result() for kind, task in tasks.items()}

    async def _list(self, kind: ResourceKind) -> list[dict[str, Any]]:
        try:
            items = await self._lister.list(kind)
        except Exception as exc:
            _logger.warning("resource_listing_failed", kind=str(kind), error=str(exc))
            raise ListingError(kind, exc) from exc
        return [item for item in items if self._in_scope(item)]

    def _in_scope(self, obj: Mapping[str, Any]) -> bool:
        if not self._allowed_namespaces:
            return True
        namespace = _metadata(obj).get("namespace")
        # Cluster-scoped objects have no namespace and are always in scope.
        return not namespace or namespace in self._allowed_namespaces

    def _namespaces(self, raw_namespaces: list[dict[str, Any]]) -> list[str]:
        names = {str(_metadata(ns).get("name", "")) for ns in raw_namespaces} - {""}
        if self._allowed_namespaces:
            names &= self._allowed_namespaces
        return sorted(names)

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    def get_apps(self, workloads: Mapping[ResourceKind, list[dict[str, Any]]]) -> dict[str, App]:
        """Map workload objects to Apps, keyed by ``name@namespace``."""
        result: dict[str, App] = {}
        for kind in WORKLOAD_KINDS:
            for obj in workloads.get(kind, ()):
                # ReplicaSets managed by a Deployment are represented by it.
                if kind == ResourceKind.REPLICA_SET and _is_controlled(obj):
                    continue
                app = _app_from_workload(kind, obj)
                key = object_key(app.name, app.namespace)
                if key in result:
                    _logger.warning(
                        "app_key_collision",
                        key=key,
                        kept=result[key].kind,
                        dropped=app.kind,
                    )
                    continue
                result[key] = app
        return result

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def get_services(self, raw_services: list[dict[str, Any]], apps: Mapping[str, App]) -> dict[str, Service]:
        """Map Services and resolve the Apps their selectors target."""
        result: dict[str, Service] = {}
        for obj in raw_services:
            meta, spec = _metadata(obj), _spec(obj)
            lb_ingress = (_status(obj).get("loadBalancer") or {}).get("ingress") or ()
            service = Service(
                name=str(meta.get("name", "")),
                namespace=str(meta.get("namespace", "")),
                type=str(spec.get("type") or "ClusterIP"),
                selector=_str_map(spec.get("selector")),
                ports=list(spec.get("ports") or ()),
                load_balancer_ips=_dedup(
                    str(entry.get("ip") or entry.get("hostname"))
                    for entry in lb_ingress
                    if entry.get("ip") or entry.get("hostname")
                ),
            )
            service.apps = match_service_apps(service, apps)
            result[object_key(service.name, service.namespace)] = service
        return result

    # ------------------------------------------------------------------
    # Ingress controllers
    # ------------------------------------------------------------------

    def get_ingress_controllers(
        self,
        apps: Mapping[str, App],
        services: Mapping[str, Service],
        raw_ingress_classes: list[dict[str, Any]],
    ) -> dict[str, IngressController]:
        """Promote Apps recognised by the detector to IngressControllers."""
        result: dict[str, IngressController] = {}
        for key, app in apps.items():
            controller_type = self._detector.detect(app)
            if controller_type is None:
                continue

            controller = IngressController.from_app(app, controller_type)
            served = INGRESS_CLASS_CONTROLLERS.get(controller_type, ())
            controller.ingress_classes = sorted(
                str(_metadata(ic).get("name", ""))
                for ic in raw_ingress_classes
                if _spec(ic).get("controller") in served
            )

            selecting = [svc for _, svc in sorted(services.items()) if key in svc.apps]
            controller.public_ips = _dedup(
                ip for svc in selecting if svc.type == "LoadBalancer" for ip in svc.load_balancer_ips
            )
            controller.metrics_urls = _metrics_urls(controller, selecting)
            result[key] = controller
        return result

    # ------------------------------------------------------------------
    # Ingresses
    # ------------------------------------------------------------------

    def get_ingresses(
        self,
        raw_ingresses: list[dict[str, Any]],
        controllers: Mapping[str, IngressController],
        raw_ingress_classes: list[dict[str, Any]],
    ) -> dict[str, Ingress]:
        """Map Ingresses, resolving their controller and referenced Services."""
        default_class = _default_ingress_class(raw_ingress_classes)
        result: dict[str, Ingress] = {}
        for obj in raw_ingresses:
            meta, spec = _metadata(obj), _spec(obj)
            annotations = _str_map(meta.get("annotations"))
            namespace = str(meta.get("namespace", ""))
            ingress_class = spec.get("ingressClassName") or annotations.get(_INGRESS_CLASS_ANNOTATION) or default_class
            default_backend = spec.get("defaultBackend") or spec.get("backend")
            ingress = Ingress(
                name=str(meta.get("name", "")),
                namespace=namespace,
                cluster_id=self._cluster_id,
                controller=_controller_for_class(ingress_class, controllers),
                annotations=annotations,
                tls=list(spec.get("tls") or ()),
                rules=list(spec.get("rules") or ()),
                default_service=default_backend,
                services=[object_key(name, namespace) for name in ingress_service_names(spec)],
            )
            result[object_key(ingress.name, namespace)] = ingress
        return result

    # ------------------------------------------------------------------
    # External DNS
    # ------------------------------------------------------------------

    def get_external_dnses(self, raw_endpoints: list[dict[str, Any]]) -> dict[str, ExternalDNS]:
        """Flatten DNSEndpoint resources into records keyed by DNS name."""
        result: dict[str, ExternalDNS] = {}
        for obj in raw_endpoints:
            for endpoint in _spec(obj).get("endpoints") or ():
                dns_name = str(endpoint.get("dnsName", ""))
                if not dns_name:
                    continue
                result[dns_name] = ExternalDNS(
                    dns_name=dns_name,
                    targets=_str_list(endpoint.get("targets")),
                    ttl=int(endpoint.get("recordTTL") or 0),
                )
        return result

    # ------------------------------------------------------------------
    # Access control policies
    # ------------------------------------------------------------------

    def get_access_control_policies(self, raw_policies: list[dict[str, Any]]) -> dict[str, AccessControlPolicy]:
        """Map policies carrying a JWT, basic or digest auth payload."""
        result: dict[str, AccessControlPolicy] = {}
        for obj in raw_policies:
            meta, spec = _metadata(obj), _spec(obj)
            name, namespace = str(meta.get("name", "")), str(meta.get("namespace", ""))
            payload = _acp_payload(spec)
            if payload is None:
                _logger.debug("acp_method_not_tracked", policy=name, namespace=namespace)
                continue
            result[object_key(name, namespace)] = AccessControlPolicy(
                name=name,
                namespace=namespace,
                cluster_id=self._cluster_id,
                payload=payload,
            )
        return result

    # ------------------------------------------------------------------
    # API management
    # ------------------------------------------------------------------

    def get_apis(self, raw_apis: list[dict[str, Any]]) -> dict[str, API]:
        result: dict[str, API] = {}
        for obj in raw_apis:
            meta, spec = _metadata(obj), _spec(obj)
            svc = spec.get("service") or {}
            openapi = svc.get("openApiSpec") or {}
            api = API(
                name=str(meta.get("name", "")),
                namespace=str(meta.get("namespace", "")),
                labels=_str_map(meta.get("labels")),
                path_prefix=str(spec.get("pathPrefix", "")),
                service=APIService(
                    name=str(svc.get("name", "")),
                    port=_backend_port(svc.get("port")) or APIServiceBackendPort(),
                    openapi_spec=OpenAPISpec(
                        url=str(openapi.get("url", "")),
                        path=str(openapi.get("path", "")),
                        protocol=str(openapi.get("protocol", "")),
                        port=_backend_port(openapi.get("port")),
                    ),
                ),
            )
            result[object_key(api.name, api.namespace)] = api
        return result

    def get_api_collections(self, raw_collections: list[dict[str, Any]]) -> dict[str, APICollection]:
        result: dict[str, APICollection] = {}
        for obj in raw_collections:
            meta, spec = _metadata(obj), _spec(obj)
            collection = APICollection(
                name=str(meta.get("name", "")),
                labels=_str_map(meta.get("labels")),
                path_prefix=str(spec.get("pathPrefix", "")),
                api_selector=LabelSelector.from_dict(spec.get("apiSelector") or {}) or LabelSelector(),
            )
            result[collection.name] = collection
        return result

    def get_api_accesses(self, raw_accesses: list[dict[str, Any]]) -> dict[str, APIAccess]:
        result: dict[str, APIAccess] = {}
        for obj in raw_accesses:
            meta, spec = _metadata(obj), _spec(obj)
            access = APIAccess(
                name=str(meta.get("name", "")),
                labels=_str_map(meta.get("labels")),
                groups=_str_list(spec.get("groups")),
                api_selector=LabelSelector.from_dict(spec.get("apiSelector")),
                api_collection_selector=LabelSelector.from_dict(spec.get("apiCollectionSelector")),
            )
            result[access.name] = access
        return result

    def get_api_portals(self, raw_portals: list[dict[str, Any]]) -> dict[str, APIPortal]:
        result: dict[str, APIPortal] = {}
        for obj in raw_portals:
            meta, spec = _metadata(obj), _spec(obj)
            portal = APIPortal(
                name=str(meta.get("name", "")),
                description=str(spec.get("description", "")),
                gateway=str(spec.get("apiGateway", "")),
                custom_domains=_str_list(spec.get("customDomains")),
                hub_domain=str(_status(obj).get("hubDomain", "")),
            )
            result[portal.name] = portal
        return result

    def get_api_gateways(self, raw_gateways: list[dict[str, Any]]) -> dict[str, APIGateway]:
        result: dict[str, APIGateway] = {}
        for obj in raw_gateways:
            meta, spec = _metadata(obj), _spec(obj)
            gateway = APIGateway(
                name=str(meta.get("name", "")),
                labels=_str_map(meta.get("labels")),
                api_accesses=_str_list(spec.get("apiAccesses")),
                custom_domains=_str_list(spec.get("customDomains")),
                hub_domain=str(_status(obj).get("hubDomain", "")),
            )
            result[gateway.name] = gateway
        return result


# ---------------------------------------------------------------------------
# Correlation rules
# ---------------------------------------------------------------------------


def match_service_apps(service: Service, apps: Mapping[str, App]) -> list[str]:
    """Return the sorted keys of Apps in the Service's namespace it selects."""
    return sorted(
        key
        for key, app in apps.items()
        if app.namespace == service.namespace and service_selects(service.selector, app.pod_labels)
    )


def ingress_service_names(spec: Mapping[str, Any]) -> list[str]:
    """Return backend service names of an Ingress spec in first-reference order.

    The default backend comes first, then each rule's HTTP paths in
    declaration order.  Both ``networking.k8s.io/v1`` and the legacy
    ``serviceName`` backend layouts are understood.
    """
    names: list[str] = []
    default_backend = spec.get("defaultBackend") or spec.get("backend")
    if default_backend:
        names.append(_backend_service_name(default_backend))
    for rule in spec.get("rules") or ():
        for path in (rule.get("http") or {}).get("paths") or ():
            names.append(_backend_service_name(path.get("backend") or {}))
    return _dedup(name for name in names if name)


def resolve_api_collection(collection: APICollection, apis: Mapping[str, API]) -> list[str]:
    """Return the sorted keys of APIs selected by *collection*."""
    return sorted(key for key, api in apis.items() if matches_label_selector(collection.api_selector, api.labels))


def resolve_api_access(
    access: APIAccess,
    apis: Mapping[str, API],
    collections: Mapping[str, APICollection],
) -> tuple[list[str], list[str]]:
    """Evaluate an APIAccess's selectors.

    Returns the sorted keys of the matching APIs and API collections.  The
    two selectors are independent of each other.
    """
    api_keys = sorted(key for key, api in apis.items() if matches_label_selector(access.api_selector, api.labels))
    collection_keys = sorted(
        key
        for key, collection in collections.items()
        if matches_label_selector(access.api_collection_selector, collection.labels)
    )
    return api_keys, collection_keys


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------


def _app_from_workload(kind: ResourceKind, obj: Mapping[str, Any]) -> App:
    meta, spec, status = _metadata(obj), _spec(obj), _status(obj)
    template = spec.get("template") or {}
    template_meta = template.get("metadata") or {}
    containers = (template.get("spec") or {}).get("containers") or ()

    if kind == ResourceKind.DAEMON_SET:
        replicas = int(status.get("desiredNumberScheduled") or 0)
        ready = int(status.get("numberReady") or 0)
    else:
        # Kubernetes defaults an unset replica count to 1.
        replicas_value = spec.get("replicas")
        replicas = 1 if replicas_value is None else int(replicas_value)
        ready = int(status.get("readyReplicas") or 0)

    return App(
        name=str(meta.get("name", "")),
        kind=str(kind),
        namespace=str(meta.get("namespace", "")),
        replicas=replicas,
        ready_replicas=ready,
        images=_dedup(str(c["image"]) for c in containers if c.get("image")),
        labels=_str_map(meta.get("labels")),
        pod_labels=_str_map(template_meta.get("labels")),
        pod_annotations=_str_map(template_meta.get("annotations")),
    )


def _backend_service_name(backend: Mapping[str, Any]) -> str:
    service = backend.get("service")
    if service:
        return str(service.get("name", ""))
    return str(backend.get("serviceName", ""))


def _backend_port(raw: Mapping[str, Any] | None) -> APIServiceBackendPort | None:
    if not raw:
        return None
    return APIServiceBackendPort(name=str(raw.get("name", "")), number=int(raw.get("number") or 0))


def _default_ingress_class(raw_ingress_classes: list[dict[str, Any]]) -> str:
    for ic in sorted(raw_ingress_classes, key=lambda o: str(_metadata(o).get("name", ""))):
        annotations = _metadata(ic).get("annotations") or {}
        if str(annotations.get(_DEFAULT_CLASS_ANNOTATION, "")).lower() == "true":
            return str(_metadata(ic).get("name", ""))
    return ""


def _controller_for_class(ingress_class: str, controllers: Mapping[str, IngressController]) -> str:
    if not ingress_class:
        return ""
    for key, controller in sorted(controllers.items()):
        if ingress_class in controller.ingress_classes:
            return key
    return ""


def _metrics_urls(controller: IngressController, services: list[Service]) -> list[str]:
    annotations = controller.pod_annotations
    port = annotations.get(_METRICS_PORT_ANNOTATION)
    if not port or annotations.get(_METRICS_SCRAPE_ANNOTATION, "true").lower() == "false":
        return []
    path = annotations.get(_METRICS_PATH_ANNOTATION) or "/metrics"
    if not path.startswith("/"):
        path = "/" + path
    return [f"http://{svc.name}.{svc.namespace}.svc.cluster.local:{port}{path}" for svc in services]


def _acp_payload(spec: Mapping[str, Any]) -> ACPJWT | ACPBasicAuth | ACPDigestAuth | None:
    if (jwt := spec.get("jwt")) is not None:
        return ACPJWT(
            signing_secret=str(jwt.get("signingSecret", "")),
            signing_secret_base64_encoded=bool(jwt.get("signingSecretBase64Encoded", False)),
            public_key=str(jwt.get("publicKey", "")),
            jwks_file=str(jwt.get("jwksFile", "")),
            jwks_url=str(jwt.get("jwksUrl", "")),
            strip_authorization_header=bool(jwt.get("stripAuthorizationHeader", False)),
            forward_headers=_str_map(jwt.get("forwardHeaders")),
            token_query_key=str(jwt.get("tokenQueryKey", "")),
            claims=str(jwt.get("claims", "")),
        )
    if (basic := spec.get("basicAuth")) is not None:
        return ACPBasicAuth(**_user_auth_fields(basic))
    if (digest := spec.get("digestAuth")) is not None:
        return ACPDigestAuth(**_user_auth_fields(digest))
    return None


def _user_auth_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    users = raw.get("users", "")
    if isinstance(users, list):
        users = ",".join(str(u) for u in users)
    return {
        "users": str(users),
        "realm": str(raw.get("realm", "")),
        "strip_authorization_header": bool(raw.get("stripAuthorizationHeader", False)),
        "forward_username_header": str(raw.get("forwardUsernameHeader", "")),
    }
