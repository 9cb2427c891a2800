from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NodeInfo(BaseModel):
    name: str
    address: str
    role: str


class ClusterInfo(BaseModel):
    name: str
    kind: str
    nodes: list[NodeInfo]


class NodesResponse(BaseModel):
    shard_cluster: str
    replica_cluster: str
    clusters: list[ClusterInfo]


class NodeHealth(BaseModel):
    node: str
    address: str
    role: str
    status: str
    version: str | None = None
    shard: str | None = None
    replica: str | None = None
    error: str | None = None


class PlacementObservationModel(BaseModel):
    node: str
    address: str
    role: str
    row_count: int | None = None
    status: str
    error: str | None = None


class RouteResponse(BaseModel):
    key: str
    hash_function: str
    hash_value: int
    shard_count: int
    shard_index: int
    expected_node: NodeInfo
    server_hash: int | None = None
    hash_agrees: bool | None = None


class InsertAndRouteRequest(BaseModel):
    user_id: str = Field(default="demo-user", min_length=1)
    service: str = "frontend"
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class InsertAndRouteResponse(BaseModel):
    user_id: str
    service: str
    shard_key: str
    hash_value: int
    expected_node: NodeInfo
    actual_nodes: list[NodeInfo]
    verdict: str
    matches: bool | None = None
    anomaly: bool
    total_rows: int
    observations: list[PlacementObservationModel]


class ReplicateRequest(BaseModel):
    key: str | None = Field(default=None, min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    primary: str | None = None
    secondary: str | None = None
    timeout: float = Field(default=5.0, ge=0, le=60)
    poll_interval: float = Field(default=0.25, gt=0, le=10)

    model_config = ConfigDict(extra="forbid")


class ReplicationCheckResponse(BaseModel):
    key: str | None = None
    primary: str | None = None
    secondary: str | None = None
    written_at: str
    before_count: int | None = None
    after_count: int | None = None
    replicated: bool
    elapsed_ms: int
    attempts: int
    timed_out: bool
    error: str | None = None
    expected_count: int | None = None


class ServiceCount(BaseModel):
    service: str
    events: int


class ShardSummaryResponse(BaseModel):
    shards: list[PlacementObservationModel]
    by_service: list[ServiceCount] | None = None
    error: str | None = None


class ReplicationStatusResponse(BaseModel):
    source: str
    row_counts: list[PlacementObservationModel]
    replicas: list[dict[str, Any]] | None = None
    error: str | None = None
