"""Logging and metrics for ClusterScope."""
