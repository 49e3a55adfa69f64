"""Cluster topology aggregation.

Lists watched resources, correlates them and publishes ``Cluster``
snapshots.

Submodules:
    selectors    -- object keys, Service and label selector predicates.
    controllers  -- ingress controller detection heuristic.
    fetcher      -- one aggregation pass: listing plus correlation.
    watcher      -- recurring passes and snapshot publication.
    kube         -- kubernetes-asyncio ResourceLister.
"""

from clusterscope.topology.controllers import ImageSignatureDetector, IngressControllerDetector
from clusterscope.topology.fetcher import (
    Fetcher,
    ListingError,
    ResourceKind,
    ResourceLister,
    resolve_api_access,
    resolve_api_collection,
)
from clusterscope.topology.selectors import (
    InvalidSelectorError,
    matches_label_selector,
    object_key,
    service_selects,
)
from clusterscope.topology.watcher import TopologyWatcher

__all__ = [
    "Fetcher",
    "ImageSignatureDetector",
    "IngressControllerDetector",
    "InvalidSelectorError",
    "ListingError",
    "ResourceKind",
    "ResourceLister",
    "TopologyWatcher",
    "matches_label_selector",
    "object_key",
    "resolve_api_access",
    "resolve_api_collection",
    "service_selects",
]
