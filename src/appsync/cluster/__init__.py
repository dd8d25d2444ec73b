# ABOUTME: Cluster access package for the appsync controller
# ABOUTME: Exposes the ClusterAPI contract and the in-memory implementation

"""
Cluster access.

    base.py   - ClusterAPI abstract base class and WatchEvent
    memory.py - InMemoryCluster, used by tests and dry runs

The HTTP implementation lives in appsync.utils.client.KubernetesClient.
"""

from appsync.cluster.base import ClusterAPI, WatchEvent
from appsync.cluster.memory import InMemoryCluster

__all__ = ["ClusterAPI", "InMemoryCluster", "WatchEvent"]
