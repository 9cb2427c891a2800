from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .registry import Node, NodeRegistry
from .sql_utils import format_identifier, quote_column

# Block the insert until the row has reached its shard.
SYNC_DISTRIBUTED_INSERT = {"insert_distributed_sync": 1}


@dataclass(frozen=True)
class TableLayout:
    """Names of the demo schema objects the checks read and write."""

    database: str = "cluster_demo"
    local_table: str = "events_local"
    distributed_table: str = "events_distributed"
    replicated_table: str = "events_replicated"
    shard_key_column: str = "user_id"
    replication_key_column: str = "message"

    @property
    def local(self) -> str:
        return format_identifier(self.database, self.local_table)

    @property
    def distributed(self) -> str:
        return format_identifier(self.database, self.distributed_table)

    @property
    def replicated(self) -> str:
        return format_identifier(self.database, self.replicated_table)


class PlacementBackend:
    """
    Query/insert contract the verification core needs from the database.

    Every method talks to exactly one node and bypasses any routing layer unless the
    table it is given is itself a Distributed table.
    """

    def execute_count(
        self, node: Node, key: Optional[str], *, table: str, column: str
    ) -> int:  # pragma: no cover - interface
        """Count rows in ``table`` where ``column = key`` (all rows when key is None)."""
        raise NotImplementedError

    def execute_insert(
        self, node: Node, table: str, row: Mapping[str, Any], *, distributed: bool = False
    ) -> None:  # pragma: no cover - interface
        """Write one row to ``table`` on ``node``; ``distributed`` marks a routing table."""
        raise NotImplementedError

    def server_info(self, node: Node) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError

    def cluster_topology(
        self, node: Node, clusters: Sequence[str]
    ) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError

    def server_hash(self, node: Node, key: str) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def service_breakdown(
        self, node: Node, table: str
    ) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        """Rows per ``service`` in ``table``, most frequent first."""
        raise NotImplementedError

    def replica_status(
        self, node: Node, database: str
    ) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        """``system.replicas`` rows for the replicated tables of ``database``."""
        raise NotImplementedError


class ClickHouseBackend(PlacementBackend):
    """Concrete backend running parameterised SQL through the registry's pooled connections."""

    def __init__(self, registry: NodeRegistry) -> None:
        self.registry = registry

    def execute_count(
        self, node: Node, key: Optional[str], *, table: str, column: str
    ) -> int:
        connection = self.registry.connection(node)
        if key is None:
            value = connection.query_scalar(f"SELECT count() FROM {table}")
        else:
            value = connection.query_scalar(
                f"SELECT count() FROM {table} WHERE {quote_column(column)} = {{key:String}}",
                parameters={"key": key},
            )
        return int(value or 0)

    def execute_insert(
        self, node: Node, table: str, row: Mapping[str, Any], *, distributed: bool = False
    ) -> None:
        settings = SYNC_DISTRIBUTED_INSERT if distributed else None
        self.registry.connection(node).insert(table, [row], settings=settings)

    def server_info(self, node: Node) -> Dict[str, Any]:
        records = self.registry.connection(node).query_records(
            "SELECT version() AS version, getMacro('shard') AS shard, "
            "getMacro('replica') AS replica"
        )
        return records[0] if records else {}

    def cluster_topology(self, node: Node, clusters: Sequence[str]) -> List[Dict[str, Any]]:
        return self.registry.connection(node).query_records(
            """
            SELECT cluster, shard_num, replica_num, host_name, port, is_local
            FROM system.clusters
            WHERE has({clusters:Array(String)}, cluster)
            ORDER BY cluster, shard_num, replica_num
            """,
            parameters={"clusters": list(clusters)},
        )

    def server_hash(self, node: Node, key: str) -> int:
        value = self.registry.connection(node).query_scalar(
            "SELECT murmurHash3_32({key:String})", parameters={"key": key}
        )
        return int(value)

    def service_breakdown(self, node: Node, table: str) -> List[Dict[str, Any]]:
        return self.registry.connection(node).query_records(
            f"SELECT service, count() AS events FROM {table} "
            "GROUP BY service ORDER BY events DESC, service"
        )

    def replica_status(self, node: Node, database: str) -> List[Dict[str, Any]]:
        return self.registry.connection(node).query_records(
            """
            SELECT table, replica_name, replica_path, is_readonly, total_replicas,
                   active_replicas, queue_size, inserts_in_queue, merges_in_queue,
                   absolute_delay, last_queue_update
            FROM system.replicas
            WHERE database = {database:String}
            ORDER BY table, replica_name
            """,
            parameters={"database": database},
        )
