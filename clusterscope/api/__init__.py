"""Status API layer for ClusterScope.

Exposes:
    create_app -- FastAPI application factory.
"""

from clusterscope.api.app import create_app

__all__ = ["create_app"]
