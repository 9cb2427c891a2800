from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from chexplorer.backend import ClickHouseBackend, TableLayout
from chexplorer.registry import NodeRegistry

from conftest import TWO_NODE_CLUSTERS, TWO_NODES


@pytest.fixture
def connections() -> dict:
    return {}


@pytest.fixture
def backend(connections: dict) -> ClickHouseBackend:
    def factory(**kwargs):
        connection = MagicMock(name=kwargs["name"])
        connections[kwargs["name"]] = connection
        return connection

    registry = NodeRegistry.from_specs(TWO_NODES, TWO_NODE_CLUSTERS, connection_factory=factory)
    return ClickHouseBackend(registry)


def _node(backend: ClickHouseBackend, name: str):
    return backend.registry.resolve_node("demo_cluster", name)


def test_layout_quotes_identifiers():
    layout = TableLayout()
    assert layout.local == "`cluster_demo`.`events_local`"
    assert layout.distributed == "`cluster_demo`.`events_distributed`"
    assert layout.replicated == "`cluster_demo`.`events_replicated`"


def test_count_by_key_uses_bound_parameter(backend, connections):
    node = _node(backend, "node2")
    backend.registry.connection(node).query_scalar.return_value = 4

    count = backend.execute_count(
        node, "user-42'; DROP TABLE x", table=TableLayout().local, column="user_id"
    )

    assert count == 4
    connections["node2"].query_scalar.assert_called_once_with(
        "SELECT count() FROM `cluster_demo`.`events_local` WHERE `user_id` = {key:String}",
        parameters={"key": "user-42'; DROP TABLE x"},
    )


def test_count_without_key_counts_all_rows(backend, connections):
    node = _node(backend, "node1")
    backend.registry.connection(node).query_scalar.return_value = None

    assert backend.execute_count(node, None, table="`db`.`t`", column="user_id") == 0
    connections["node1"].query_scalar.assert_called_once_with("SELECT count() FROM `db`.`t`")


def test_distributed_insert_waits_for_shards(backend, connections):
    node = _node(backend, "node1")
    row = {"user_id": "user-1", "service": "frontend"}

    backend.execute_insert(node, TableLayout().distributed, row, distributed=True)

    connections["node1"].insert.assert_called_once_with(
        TableLayout().distributed, [row], settings={"insert_distributed_sync": 1}
    )


def test_direct_insert_has_no_distributed_settings(backend, connections):
    node = backend.registry.resolve_node("ha_cluster", "node1")
    row = {"message": "hello"}

    backend.execute_insert(node, TableLayout().replicated, row)

    connections["node1"].insert.assert_called_once_with(
        TableLayout().replicated, [row], settings=None
    )


def test_server_hash_and_info(backend, connections):
    node = _node(backend, "node1")
    connection = backend.registry.connection(node)
    connection.query_scalar.return_value = 3111312080
    connection.query_records.return_value = [{"version": "24.8", "shard": "01", "replica": "replica-1"}]

    assert backend.server_hash(node, "user-42") == 3111312080
    connection.query_scalar.assert_called_once_with(
        "SELECT murmurHash3_32({key:String})", parameters={"key": "user-42"}
    )
    assert backend.server_info(node)["shard"] == "01"


def test_cluster_topology_filters_by_cluster_names(backend, connections):
    node = _node(backend, "node1")
    backend.registry.connection(node).query_records.return_value = []

    backend.cluster_topology(node, ["demo_cluster", "ha_cluster"])

    kwargs = connections["node1"].query_records.call_args.kwargs
    assert kwargs["parameters"] == {"clusters": ["demo_cluster", "ha_cluster"]}


def test_service_breakdown_groups_distributed_rows(backend, connections):
    node = _node(backend, "node1")
    backend.registry.connection(node).query_records.return_value = [{"service": "auth", "events": 3}]

    rows = backend.service_breakdown(node, TableLayout().distributed)

    assert rows == [{"service": "auth", "events": 3}]
    sql = connections["node1"].query_records.call_args.args[0]
    assert "FROM `cluster_demo`.`events_distributed`" in sql
    assert "GROUP BY service" in sql


def test_replica_status_reads_system_replicas(backend, connections):
    node = backend.registry.resolve_node("ha_cluster", "node2")
    backend.registry.connection(node).query_records.return_value = []

    backend.replica_status(node, "cluster_demo")

    call = connections["node2"].query_records.call_args
    assert "FROM system.replicas" in call.args[0]
    assert call.kwargs["parameters"] == {"database": "cluster_demo"}
