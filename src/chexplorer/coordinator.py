from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .backend import ClickHouseBackend, PlacementBackend, TableLayout
from .errors import ConfigurationError, InvalidInputError
from .registry import REPLICA, SHARD, Node, NodeRegistry
from .replication import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    ReplicationCheckResult,
    poll_for_replication,
)
from .router import RoutingDecision, ShardKey, decide, shard_key_text
from .verifier import (
    NODE_QUERY_TIMEOUT,
    PlacementObservation,
    PlacementReport,
    count_on_node,
    summarize_placement,
    verify_placement,
)

logger = logging.getLogger("chexplorer.coordinator")


@dataclass(frozen=True)
class InsertAndRouteResult:
    decision: RoutingDecision
    observations: List[PlacementObservation]
    report: PlacementReport
    row: Dict[str, Any]

    @property
    def expected_node(self) -> Node:
        return self.decision.expected_node

    @property
    def actual_nodes(self) -> List[Node]:
        return list(self.report.holders)

    def per_node_counts(self) -> Dict[str, Optional[int]]:
        return {obs.node.name: obs.row_count for obs in self.observations}


def _timestamp() -> datetime:
    # DateTime columns have second precision and no zone.
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None)


class PlacementCoordinator:
    """
    Entry point for the sharding and replication demos.

    Owns nothing mutable: the registry (topology + connection pool) and the backend are
    built once at startup and passed in.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        backend: Optional[PlacementBackend] = None,
        *,
        layout: Optional[TableLayout] = None,
        shard_cluster: str = "demo_cluster",
        replica_cluster: str = "ha_cluster",
        node_timeout: float = NODE_QUERY_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.backend = backend or ClickHouseBackend(registry)
        self.layout = layout or TableLayout()
        self.shard_cluster = shard_cluster
        self.replica_cluster = replica_cluster
        self.node_timeout = node_timeout

        for name, kind in ((shard_cluster, SHARD), (replica_cluster, REPLICA)):
            if registry.cluster_kind(name) != kind:
                raise ConfigurationError(f"Cluster '{name}' is not a {kind} cluster")

    # ------------------------------ sharding ------------------------------
    def shard_nodes(self) -> List[Node]:
        return self.registry.resolve_nodes(self.shard_cluster)

    def replica_nodes(self) -> List[Node]:
        return self.registry.resolve_nodes(self.replica_cluster)

    def route(self, key: ShardKey) -> RoutingDecision:
        return decide(key, self.shard_nodes())

    def _sharding_row(self, key_text: str, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": _timestamp(),
            "service": "frontend",
            "event_type": "demo_insert",
            "value": round(random.uniform(0, 100), 4),
        }
        row.update(payload or {})
        row[self.layout.shard_key_column] = key_text
        return row

    async def insert_and_route(
        self, key: ShardKey, payload: Optional[Mapping[str, Any]] = None
    ) -> InsertAndRouteResult:
        """
        Write one row through the Distributed table and check which shard holds it.

        Input and topology are validated before any I/O; a failed write raises
        NodeUnreachableError, a failed per-node read is reported in the observations.
        """
        key_text = shard_key_text(key)
        nodes = self.shard_nodes()
        decision = decide(key, nodes)
        row = self._sharding_row(key_text, payload)
        routing_node = nodes[0]

        logger.info(
            "Insert and route | key=%s | hash=%d | expected=%s (%s) | via=%s",
            key_text,
            decision.hash_value,
            decision.expected_node.name,
            decision.expected_node.role,
            routing_node.name,
        )
        await asyncio.to_thread(
            self.backend.execute_insert,
            routing_node,
            self.layout.distributed,
            row,
            distributed=True,
        )

        observations = await verify_placement(
            key_text,
            decision.expected_node,
            nodes,
            self.backend,
            table=self.layout.local,
            column=self.layout.shard_key_column,
            timeout=self.node_timeout,
        )
        report = summarize_placement(decision.expected_node, observations)
        logger.info(
            "Placement verdict | key=%s | verdict=%s | holders=%s | unreachable=%s",
            key_text,
            report.verdict,
            [n.name for n in report.holders],
            [n.name for n in report.unreachable],
        )
        return InsertAndRouteResult(
            decision=decision, observations=observations, report=report, row=row
        )

    # ----------------------------- replication ----------------------------
    def _replica_pair(self, primary: Optional[str], secondary: Optional[str]) -> tuple[Node, Node]:
        nodes = self.replica_nodes()
        known = [n.name for n in nodes]
        for name in (primary, secondary):
            if name and name not in known:
                raise InvalidInputError(
                    f"Node '{name}' is not a replica in '{self.replica_cluster}', expected one of {known}"
                )
        primary_node = (
            self.registry.resolve_node(self.replica_cluster, primary) if primary else nodes[0]
        )
        if secondary:
            secondary_node = self.registry.resolve_node(self.replica_cluster, secondary)
        else:
            others = [n for n in nodes if n.name != primary_node.name]
            if not others:
                raise InvalidInputError("No secondary replica available")
            secondary_node = others[0]
        if primary_node.name == secondary_node.name:
            raise InvalidInputError("Primary and secondary replica must be different nodes")
        return primary_node, secondary_node

    async def verify_replication(
        self,
        key: Optional[ShardKey] = None,
        payload: Optional[Mapping[str, Any]] = None,
        primary: Optional[str] = None,
        secondary: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> ReplicationCheckResult:
        """
        Write one row directly to ``primary`` and poll ``secondary`` for it.

        Without a key a unique message is generated so earlier runs cannot satisfy the check.
        When the secondary cannot be read before the write, nothing is written and the
        result carries the error.
        """
        if timeout < 0:
            raise InvalidInputError(f"timeout must be >= 0, got {timeout}")
        if poll_interval <= 0:
            raise InvalidInputError(f"poll_interval must be > 0, got {poll_interval}")
        written_at = datetime.now(timezone.utc)
        key_text = (
            shard_key_text(key)
            if key is not None
            else f"Replication test at {written_at.isoformat()}"
        )
        primary_node, secondary_node = self._replica_pair(primary, secondary)

        row: Dict[str, Any] = {
            "timestamp": _timestamp(),
            "service": "demo",
            "severity": "INFO",
            "replica": primary_node.role,
        }
        row.update(payload or {})
        row[self.layout.replication_key_column] = key_text

        logger.info(
            "Replication demo | key=%s | primary=%s | secondary=%s | timeout=%.2fs",
            key_text,
            primary_node.name,
            secondary_node.name,
            timeout,
        )

        async def write() -> None:
            await asyncio.to_thread(
                self.backend.execute_insert, primary_node, self.layout.replicated, row
            )

        # The secondary's baseline is read before the write so a fast replica still
        # shows growth.
        result = await poll_for_replication(
            key_text,
            secondary_node,
            self.backend,
            table=self.layout.replicated,
            column=self.layout.replication_key_column,
            timeout=timeout,
            poll_interval=poll_interval,
            written_at=written_at,
            write=write,
        )
        result.source = primary_node
        return result

    # ------------------------------ overview ------------------------------
    async def _probe(self, node: Node) -> Dict[str, Any]:
        base = {"node": node.name, "address": node.address, "role": node.role}
        try:
            info = await asyncio.wait_for(
                asyncio.to_thread(self.backend.server_info, node), timeout=self.node_timeout
            )
        except asyncio.TimeoutError:
            return {**base, "status": "down", "error": f"timed out after {self.node_timeout}s"}
        except Exception as exc:
            logger.warning("Health probe failed | node=%s | error=%s", node.name, exc)
            return {**base, "status": "down", "error": str(exc)}
        return {**base, "status": "up", **info}

    async def node_health(self) -> List[Dict[str, Any]]:
        """Probe every configured node once, concurrently."""
        seen: Dict[str, Node] = {}
        for cluster in self.registry.cluster_names:
            for node in self.registry.resolve_nodes(cluster):
                seen.setdefault(node.name, node)
        return list(await asyncio.gather(*(self._probe(node) for node in seen.values())))

    async def _count_all(self, nodes: List[Node], table: str, column: str) -> List[PlacementObservation]:
        return list(
            await asyncio.gather(
                *(
                    count_on_node(
                        self.backend, node, None, table=table, column=column, timeout=self.node_timeout
                    )
                    for node in nodes
                )
            )
        )

    async def _bounded_read(self, description: str, func, *args) -> tuple[Any, Optional[str]]:
        """Run one blocking read under ``node_timeout``; returns ``(value, error)``."""
        try:
            value = await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.node_timeout)
        except asyncio.TimeoutError:
            return None, f"timed out after {self.node_timeout}s"
        except Exception as exc:
            logger.warning("%s failed | error=%s", description, exc)
            return None, f"{type(exc).__name__}: {exc}"
        return value, None

    async def shard_counts(self) -> List[PlacementObservation]:
        """Total rows in the local table of every shard, unreachable shards marked."""
        return await self._count_all(
            self.shard_nodes(), self.layout.local, self.layout.shard_key_column
        )

    async def shard_summary(self) -> Dict[str, Any]:
        """
        Rows per shard plus a per-service breakdown read through the Distributed table.

        The breakdown needs every shard; when it fails ``by_service`` is None and
        ``error`` says why, while the per-shard counts are still returned.
        """
        shards, (by_service, error) = await asyncio.gather(
            self.shard_counts(),
            self._bounded_read(
                "Service breakdown",
                self.backend.service_breakdown,
                self.shard_nodes()[0],
                self.layout.distributed,
            ),
        )
        return {"shards": shards, "by_service": by_service, "error": error}

    async def replication_status(self) -> Dict[str, Any]:
        """
        Rows of the replicated table on every replica plus ``system.replicas``
        (queue sizes, active replicas) read from the first reachable replica.
        """
        nodes = self.replica_nodes()
        row_counts = await self._count_all(
            nodes, self.layout.replicated, self.layout.replication_key_column
        )
        source = next((obs.node for obs in row_counts if not obs.unreachable), nodes[0])
        replicas, error = await self._bounded_read(
            "Replica status", self.backend.replica_status, source, self.layout.database
        )
        return {
            "source": source.name,
            "row_counts": row_counts,
            "replicas": replicas,
            "error": error,
        }

    async def topology(self) -> List[Dict[str, Any]]:
        """Read ``system.clusters`` for the configured clusters from the first shard node."""
        node = self.shard_nodes()[0]
        return await asyncio.to_thread(
            self.backend.cluster_topology, node, self.registry.cluster_names
        )

    async def compare_hash(self, key: ShardKey) -> Dict[str, Any]:
        """Check that the server's ``murmurHash3_32`` agrees with the local router."""
        decision = self.route(key)
        node = self.shard_nodes()[0]
        server_value = await asyncio.to_thread(
            self.backend.server_hash, node, shard_key_text(key)
        )
        return {
            "node": node.name,
            "local_hash": decision.hash_value,
            "server_hash": server_value,
            "agrees": server_value == decision.hash_value,
        }

    def describe(self) -> Dict[str, Any]:
        return {
            "shard_cluster": self.shard_cluster,
            "replica_cluster": self.replica_cluster,
            "clusters": self.registry.describe(),
        }
