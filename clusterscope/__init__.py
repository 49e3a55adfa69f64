"""ClusterScope: Kubernetes topology aggregation and access control policy resolution."""

__version__ = "0.1.0"
