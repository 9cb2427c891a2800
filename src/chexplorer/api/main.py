"""
Executable entrypoint for the cluster API.

Configure the ClickHouse nodes via environment variables:
  CH_NODES            (default: node1=localhost:8124,node2=localhost:8125)
  CH_CLUSTERS         (default: demo_cluster=shard:node1,node2;ha_cluster=replica:node1,node2)
  CH_SHARD_CLUSTER    (default: demo_cluster)
  CH_REPLICA_CLUSTER  (default: ha_cluster)
  CH_USER             (default: default)
  CH_PASSWORD         (default: empty)
  CH_SECURE           (default: false)
  CH_VERIFY           (default: false)
  CH_QUERY_TIMEOUT    (default: 30 seconds)
"""

from __future__ import annotations

import os

from chexplorer.coordinator import PlacementCoordinator
from chexplorer.registry import NodeRegistry

from .app import create_app


def _build_coordinator() -> PlacementCoordinator:
    registry = NodeRegistry.from_env()
    return PlacementCoordinator(
        registry,
        shard_cluster=os.getenv("CH_SHARD_CLUSTER", "demo_cluster"),
        replica_cluster=os.getenv("CH_REPLICA_CLUSTER", "ha_cluster"),
    )


coordinator = _build_coordinator()
app = create_app(coordinator)
