from fastapi import APIRouter, Depends, Query

from chexplorer.coordinator import PlacementCoordinator
from chexplorer.registry import Node
from chexplorer.router import HASH_FUNCTION

from ..dependencies import get_coordinator
from ..schemas import (
    InsertAndRouteRequest,
    InsertAndRouteResponse,
    NodeHealth,
    NodeInfo,
    NodesResponse,
    PlacementObservationModel,
    ReplicateRequest,
    ReplicationCheckResponse,
    ReplicationStatusResponse,
    RouteResponse,
    ShardSummaryResponse,
)

router = APIRouter(prefix="/cluster", tags=["cluster"])


def _node_info(node: Node) -> NodeInfo:
    return NodeInfo(name=node.name, address=node.address, role=node.role)


@router.get("/nodes", response_model=NodesResponse)
def list_nodes(coordinator: PlacementCoordinator = Depends(get_coordinator)):
    """Return the configured clusters and their nodes with shard/replica roles."""
    return coordinator.describe()


@router.get("/health", response_model=list[NodeHealth])
async def cluster_health(coordinator: PlacementCoordinator = Depends(get_coordinator)):
    """Probe every node for version and shard/replica macros; down nodes are reported, not raised."""
    return await coordinator.node_health()


@router.get("/topology", response_model=list[dict])
async def cluster_topology(coordinator: PlacementCoordinator = Depends(get_coordinator)):
    """Return ``system.clusters`` rows for the configured clusters."""
    return await coordinator.topology()


@router.get("/shard-counts", response_model=ShardSummaryResponse)
async def shard_counts(coordinator: PlacementCoordinator = Depends(get_coordinator)):
    """Row count of the shard-local table on every shard node, plus events per service."""
    summary = await coordinator.shard_summary()
    return {**summary, "shards": [obs.as_dict() for obs in summary["shards"]]}


@router.get("/replication-status", response_model=ReplicationStatusResponse)
async def replication_status(coordinator: PlacementCoordinator = Depends(get_coordinator)):
    """Row count of the replicated table on every replica and the ``system.replicas`` view."""
    status = await coordinator.replication_status()
    return {**status, "row_counts": [obs.as_dict() for obs in status["row_counts"]]}


@router.get("/route", response_model=RouteResponse)
async def route_key(
    key: str = Query(..., min_length=1, description="Shard key to route"),
    verify: bool = Query(default=False, description="Also ask a node for murmurHash3_32(key)"),
    coordinator: PlacementCoordinator = Depends(get_coordinator),
) -> RouteResponse:
    """Preview which shard a key routes to without writing anything."""
    decision = coordinator.route(key)
    response = RouteResponse(
        key=key,
        hash_function=HASH_FUNCTION,
        hash_value=decision.hash_value,
        shard_count=len(coordinator.shard_nodes()),
        shard_index=decision.shard_index,
        expected_node=_node_info(decision.expected_node),
    )
    if verify:
        comparison = await coordinator.compare_hash(key)
        response.server_hash = comparison["server_hash"]
        response.hash_agrees = comparison["agrees"]
    return response


@router.post("/insert-and-route", response_model=InsertAndRouteResponse)
async def insert_and_route(
    request: InsertAndRouteRequest,
    coordinator: PlacementCoordinator = Depends(get_coordinator),
) -> InsertAndRouteResponse:
    """Insert a row through the Distributed table and report where it actually landed."""
    payload = {"service": request.service, **request.payload}
    result = await coordinator.insert_and_route(request.user_id, payload)
    return InsertAndRouteResponse(
        user_id=request.user_id,
        service=str(result.row.get("service", request.service)),
        shard_key=result.decision.hash_expression,
        hash_value=result.decision.hash_value,
        expected_node=_node_info(result.expected_node),
        actual_nodes=[_node_info(node) for node in result.actual_nodes],
        verdict=result.report.verdict,
        matches=result.report.matches,
        anomaly=result.report.anomaly,
        total_rows=result.report.total_rows,
        observations=[
            PlacementObservationModel(**obs.as_dict()) for obs in result.observations
        ],
    )


@router.post("/replicate-demo", response_model=ReplicationCheckResponse)
async def replicate_demo(
    request: ReplicateRequest,
    coordinator: PlacementCoordinator = Depends(get_coordinator),
) -> ReplicationCheckResponse:
    """Write to one replica and poll another until the row shows up or the timeout expires."""
    result = await coordinator.verify_replication(
        request.key,
        request.payload,
        request.primary,
        request.secondary,
        timeout=request.timeout,
        poll_interval=request.poll_interval,
    )
    return ReplicationCheckResponse(**result.as_dict())
