"""
Test utilities and fixtures for the placement and replication checks.
A fake in-memory backend stands in for the ClickHouse nodes.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient

from chexplorer.api.app import create_app
from chexplorer.backend import PlacementBackend, TableLayout
from chexplorer.coordinator import PlacementCoordinator
from chexplorer.errors import NodeUnreachableError
from chexplorer.hashing import murmurhash3_32
from chexplorer.registry import Node, NodeRegistry
from chexplorer.router import decide

TWO_NODES = "node1=localhost:8124,node2=localhost:8125"
TWO_NODE_CLUSTERS = "demo_cluster=shard:node1,node2;ha_cluster=replica:node1,node2"
THREE_NODES = "node1=ch-1:8123,node2=ch-2:8123,node3=ch-3:8123"
THREE_NODE_CLUSTERS = (
    "demo_cluster=shard:node1,node2,node3;ha_cluster=replica:node1,node2,node3"
)


class RecordingConnection:
    """Stand-in for NodeConnection that only remembers how it was built."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.name = kwargs["name"]
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeBackend(PlacementBackend):
    """
    In-memory cluster: Distributed inserts land on the shard the router picks,
    replicated inserts become visible on a peer from its N-th read onwards
    (``replica_lag_reads``; None never replicates).
    """

    def __init__(
        self,
        shard_nodes: Sequence[Node],
        *,
        layout: Optional[TableLayout] = None,
        replica_lag_reads: Optional[int] = 2,
    ) -> None:
        self.layout = layout or TableLayout()
        self.shard_nodes = list(shard_nodes)
        self.replica_lag_reads = replica_lag_reads
        self.replica_peers: List[str] = [node.name for node in shard_nodes]
        self.counts: Dict[Tuple[str, str, Optional[str]], int] = defaultdict(int)
        self.pending: Dict[Tuple[str, str, str], int] = {}
        self.down: set[str] = set()
        self.hanging: set[str] = set()
        self.misroute: Dict[str, str] = {}
        self.release = threading.Event()
        self.inserts: List[Tuple[str, str, Dict[str, Any], bool]] = []
        self.count_calls: Dict[str, int] = defaultdict(int)
        self.services: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    # ---------------------------- helpers ----------------------------
    def _check(self, node: Node) -> None:
        if node.name in self.hanging:
            self.release.wait(5)
            raise NodeUnreachableError(node.name, "read timed out")
        if node.name in self.down:
            raise NodeUnreachableError(node.name, "connection refused")

    def _add(self, node_name: str, table: str, key: str) -> None:
        self.counts[(node_name, table, key)] += 1
        self.counts[(node_name, table, None)] += 1

    # ---------------------------- contract ---------------------------
    def execute_count(self, node: Node, key: Optional[str], *, table: str, column: str) -> int:
        self._check(node)
        with self._lock:
            self.count_calls[node.name] += 1
            pending_key = (node.name, table, key)
            if key is not None and pending_key in self.pending:
                self.pending[pending_key] -= 1
                if self.pending[pending_key] <= 0:
                    del self.pending[pending_key]
                    self._add(node.name, table, key)
            return self.counts.get((node.name, table, key), 0)

    def execute_insert(
        self, node: Node, table: str, row: Mapping[str, Any], *, distributed: bool = False
    ) -> None:
        self._check(node)
        with self._lock:
            self.inserts.append((node.name, table, dict(row), distributed))
            if distributed:
                key = row[self.layout.shard_key_column]
                target = self.misroute.get(key) or decide(key, self.shard_nodes).expected_node.name
                self._add(target, self.layout.local, key)
                self.services[row.get("service", "")] += 1
                return
            key = row[self.layout.replication_key_column]
            self._add(node.name, table, key)
            if self.replica_lag_reads is None:
                return
            for peer in self.replica_peers:
                if peer != node.name:
                    self.pending[(peer, table, key)] = self.replica_lag_reads

    def server_info(self, node: Node) -> Dict[str, Any]:
        self._check(node)
        index = self.replica_peers.index(node.name) + 1
        return {"version": "24.8.1.1", "shard": f"{index:02d}", "replica": f"replica-{index}"}

    def cluster_topology(self, node: Node, clusters: Sequence[str]) -> List[Dict[str, Any]]:
        self._check(node)
        return [
            {
                "cluster": cluster,
                "shard_num": position,
                "replica_num": 1,
                "host_name": shard.host,
                "port": 9000,
                "is_local": int(shard.name == node.name),
            }
            for cluster in clusters
            for position, shard in enumerate(self.shard_nodes, 1)
        ]

    def server_hash(self, node: Node, key: str) -> int:
        self._check(node)
        return murmurhash3_32(key.encode("utf-8"))

    def service_breakdown(self, node: Node, table: str) -> List[Dict[str, Any]]:
        for shard in self.shard_nodes:
            self._check(shard)
        with self._lock:
            ranked = sorted(self.services.items(), key=lambda item: (-item[1], item[0]))
        return [{"service": service, "events": events} for service, events in ranked]

    def replica_status(self, node: Node, database: str) -> List[Dict[str, Any]]:
        self._check(node)
        with self._lock:
            queued = defaultdict(int)
            for peer, _table, _key in self.pending:
                queued[peer] += 1
        active = len([peer for peer in self.replica_peers if peer not in self.down])
        return [
            {
                "table": self.layout.replicated_table,
                "replica_name": f"replica-{index}",
                "total_replicas": len(self.replica_peers),
                "active_replicas": active,
                "queue_size": queued[peer],
            }
            for index, peer in enumerate(self.replica_peers, 1)
        ]


def build_registry(nodes: str = TWO_NODES, clusters: str = TWO_NODE_CLUSTERS) -> NodeRegistry:
    return NodeRegistry.from_specs(nodes, clusters, connection_factory=RecordingConnection)


@pytest.fixture
def registry() -> NodeRegistry:
    return build_registry()


@pytest.fixture
def three_node_registry() -> NodeRegistry:
    return build_registry(THREE_NODES, THREE_NODE_CLUSTERS)


@pytest.fixture
def fake_backend(registry: NodeRegistry) -> FakeBackend:
    return FakeBackend(registry.resolve_nodes("demo_cluster"))


@pytest.fixture
def coordinator(registry: NodeRegistry, fake_backend: FakeBackend) -> PlacementCoordinator:
    return PlacementCoordinator(registry, fake_backend, node_timeout=0.5)


@pytest.fixture
def api_client(coordinator: PlacementCoordinator) -> TestClient:
    """Fixture providing an API client backed by the fake cluster."""
    return TestClient(create_app(coordinator))
