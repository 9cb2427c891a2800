from .backend import ClickHouseBackend, PlacementBackend, TableLayout
from .connection import NodeConnection, is_mutating
from .coordinator import InsertAndRouteResult, PlacementCoordinator
from .errors import (
    ConfigurationError,
    ExplorerError,
    InvalidInputError,
    NodeUnreachableError,
)
from .hashing import murmurhash3_32
from .registry import ClusterTopology, Node, NodeRegistry, NodeSettings, parse_address
from .replication import ReplicationCheckResult, poll_for_replication
from .router import RoutingDecision, decide, hash_key, route, shard_distribution
from .verifier import (
    PlacementObservation,
    PlacementReport,
    summarize_placement,
    verify_placement,
)

__version__ = "0.1.0"

__all__ = [
    "PlacementCoordinator",
    "InsertAndRouteResult",
    # Routing
    "murmurhash3_32",
    "hash_key",
    "route",
    "decide",
    "shard_distribution",
    "RoutingDecision",
    # Topology
    "Node",
    "NodeSettings",
    "ClusterTopology",
    "NodeRegistry",
    "parse_address",
    "NodeConnection",
    "is_mutating",
    # Verification
    "PlacementBackend",
    "ClickHouseBackend",
    "TableLayout",
    "PlacementObservation",
    "PlacementReport",
    "verify_placement",
    "summarize_placement",
    "ReplicationCheckResult",
    "poll_for_replication",
    # Errors
    "ExplorerError",
    "InvalidInputError",
    "ConfigurationError",
    "NodeUnreachableError",
]
