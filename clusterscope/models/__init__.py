"""Core data structures for ClusterScope."""

from clusterscope.models.config import ClusterScopeConfig
from clusterscope.models.state import (
    API,
    ACPBasicAuth,
    ACPDigestAuth,
    ACPJWT,
    ACPMethod,
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
    LabelSelectorRequirement,
    OpenAPISpec,
    SelectorOperator,
    Service,
)

__all__ = [
    "ACPBasicAuth",
    "ACPDigestAuth",
    "ACPJWT",
    "ACPMethod",
    "API",
    "APIAccess",
    "APICollection",
    "APIGateway",
    "APIPortal",
    "APIService",
    "APIServiceBackendPort",
    "AccessControlPolicy",
    "App",
    "Cluster",
    "ClusterScopeConfig",
    "ExternalDNS",
    "Ingress",
    "IngressController",
    "LabelSelector",
    "LabelSelectorRequirement",
    "OpenAPISpec",
    "SelectorOperator",
    "Service",
]
