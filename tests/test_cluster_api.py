"""
Tests for the cluster API endpoints against the in-memory fake cluster.
"""

from __future__ import annotations

import pytest

from chexplorer.api.app import create_app


def test_create_app_requires_coordinator():
    with pytest.raises(ValueError):
        create_app(None)


def test_nodes_endpoint(api_client):
    response = api_client.get("/cluster/nodes")
    assert response.status_code == 200
    data = response.json()
    assert data["shard_cluster"] == "demo_cluster"
    shard = data["clusters"][0]
    assert shard["kind"] == "shard"
    assert shard["nodes"][0] == {"name": "node1", "address": "localhost:8124", "role": "shard-1"}


def test_health_endpoint_marks_down_node(api_client, fake_backend):
    fake_backend.down.add("node1")

    response = api_client.get("/cluster/health")

    assert response.status_code == 200
    statuses = {entry["node"]: entry["status"] for entry in response.json()}
    assert statuses == {"node1": "down", "node2": "up"}


def test_route_preview_writes_nothing(api_client, fake_backend):
    response = api_client.get("/cluster/route", params={"key": "user-42", "verify": True})

    assert response.status_code == 200
    data = response.json()
    assert data["hash_value"] == 3111312080
    assert data["shard_count"] == 2
    assert data["shard_index"] == 0
    assert data["expected_node"]["name"] == "node1"
    assert data["server_hash"] == 3111312080
    assert data["hash_agrees"] is True
    assert fake_backend.inserts == []


def test_route_requires_key(api_client):
    assert api_client.get("/cluster/route").status_code == 422
    assert api_client.get("/cluster/route", params={"key": ""}).status_code == 422


def test_insert_and_route(api_client):
    response = api_client.post(
        "/cluster/insert-and-route", json={"user_id": "user-42", "service": "checkout"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["shard_key"] == 'murmurHash3_32("user-42")'
    assert data["service"] == "checkout"
    assert data["expected_node"]["name"] == "node1"
    assert [node["name"] for node in data["actual_nodes"]] == ["node1"]
    assert data["verdict"] == "confirmed"
    assert data["matches"] is True
    assert data["anomaly"] is False
    assert [obs["row_count"] for obs in data["observations"]] == [1, 0]


def test_insert_and_route_defaults(api_client):
    response = api_client.post("/cluster/insert-and-route", json={})
    assert response.status_code == 200
    assert response.json()["user_id"] == "demo-user"


def test_insert_and_route_rejects_bad_body(api_client, fake_backend):
    assert api_client.post("/cluster/insert-and-route", json={"user_id": ""}).status_code == 422
    assert api_client.post("/cluster/insert-and-route", json={"bogus": 1}).status_code == 422
    assert fake_backend.inserts == []


def test_insert_and_route_unreachable_writer(api_client, fake_backend):
    fake_backend.down.add("node1")

    response = api_client.post("/cluster/insert-and-route", json={"user_id": "user-42"})

    assert response.status_code == 503
    assert response.json()["node"] == "node1"


def test_insert_and_route_with_unreachable_shard(api_client, fake_backend):
    fake_backend.down.add("node2")

    response = api_client.post("/cluster/insert-and-route", json={"user_id": "user-42"})

    assert response.status_code == 200
    observations = {obs["node"]: obs for obs in response.json()["observations"]}
    assert observations["node2"]["status"] == "unreachable"
    assert observations["node2"]["row_count"] is None
    assert observations["node1"]["row_count"] == 1


def test_shard_counts_endpoint(api_client):
    api_client.post("/cluster/insert-and-route", json={"user_id": "user-42"})

    response = api_client.get("/cluster/shard-counts")

    assert response.status_code == 200
    data = response.json()
    assert [obs["row_count"] for obs in data["shards"]] == [1, 0]
    assert data["by_service"] == [{"service": "frontend", "events": 1}]
    assert data["error"] is None


def test_topology_endpoint(api_client):
    response = api_client.get("/cluster/topology")
    assert response.status_code == 200
    assert len(response.json()) == 4


def test_replicate_demo(api_client):
    response = api_client.post(
        "/cluster/replicate-demo", json={"timeout": 1.0, "poll_interval": 0.01}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["replicated"] is True
    assert data["primary"] == "node1"
    assert data["secondary"] == "node2"
    assert data["before_count"] == 0
    assert data["after_count"] == 1
    assert data["key"].startswith("Replication test at ")


def test_replicate_demo_same_node_is_bad_request(api_client):
    response = api_client.post(
        "/cluster/replicate-demo", json={"primary": "node2", "secondary": "node2"}
    )
    assert response.status_code == 400
    assert "different" in response.json()["detail"]


def test_replicate_demo_validates_timing(api_client):
    assert api_client.post("/cluster/replicate-demo", json={"timeout": -1}).status_code == 422
    assert api_client.post("/cluster/replicate-demo", json={"poll_interval": 0}).status_code == 422


def test_replicate_demo_unreachable_secondary(api_client, fake_backend):
    fake_backend.down.add("node2")

    response = api_client.post(
        "/cluster/replicate-demo", json={"timeout": 0.5, "poll_interval": 0.01}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["replicated"] is False
    assert data["error"] is not None


def test_shard_counts_with_down_shard(api_client, fake_backend):
    fake_backend.down.add("node2")

    response = api_client.get("/cluster/shard-counts")

    assert response.status_code == 200
    data = response.json()
    assert data["shards"][1]["status"] == "unreachable"
    assert data["by_service"] is None
    assert data["error"]


def test_replication_status_endpoint(api_client):
    api_client.post("/cluster/replicate-demo", json={"timeout": 1.0, "poll_interval": 0.01})

    response = api_client.get("/cluster/replication-status")

    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "node1"
    assert [obs["row_count"] for obs in data["row_counts"]] == [1, 1]
    assert [row["replica_name"] for row in data["replicas"]] == ["replica-1", "replica-2"]


def test_replicate_demo_with_fast_replica(api_client, fake_backend):
    fake_backend.replica_lag_reads = 1

    response = api_client.post(
        "/cluster/replicate-demo",
        json={"key": "user-7", "timeout": 0.5, "poll_interval": 0.05},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["replicated"] is True
    assert data["timed_out"] is False
