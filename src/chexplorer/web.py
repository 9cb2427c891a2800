#!/usr/bin/env python3
"""
CLI entry point for the ClickHouse Explorer cluster API.

Usage:
    python -m chexplorer.web [options]

Options:
    --host HOST              Host to bind to (default: 0.0.0.0)
    --port PORT              Port to listen on (default: 3001)
    --ch-nodes SPEC          Nodes as name=host:port,... (default: node1=localhost:8124,node2=localhost:8125)
    --ch-clusters SPEC       Clusters as name=kind:node,...;... (default: demo_cluster=shard:...;ha_cluster=replica:...)
    --shard-cluster NAME     Cluster used for the sharding demo (default: demo_cluster)
    --replica-cluster NAME   Cluster used for the replication demo (default: ha_cluster)
    --ch-user USER           ClickHouse user (default: default)
    --ch-password PWD        ClickHouse password (default: empty)
    --ch-secure              Use secure connection
    --ch-verify              Verify SSL certificates
    --ch-query-timeout SEC   Per-query timeout in seconds (default: 30)
    --reload                 Enable auto-reload (for development)
    --help                   Show this help message

Examples:
    python -m chexplorer.web
    python -m chexplorer.web --port 9000 --ch-nodes n1=ch-1:8123,n2=ch-2:8123
"""

import argparse
import os

import uvicorn

from .api.app import create_app
from .coordinator import PlacementCoordinator
from .registry import DEFAULT_CLUSTERS, DEFAULT_NODES, NodeRegistry


def _env_bool(name: str, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    val = os.getenv(name)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "on"}


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="ClickHouse Explorer - sharding and replication verification API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s
  %(prog)s --port 9000 --ch-nodes n1=ch-1:8123,n2=ch-2:8123
        """,
    )

    # Web server options
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: %(default)s)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "3001")),
        help="Port to listen on (default: %(default)s)",
    )

    # Topology options
    parser.add_argument(
        "--ch-nodes",
        default=os.getenv("CH_NODES", DEFAULT_NODES),
        help="Nodes as name=host:port,... (default: %(default)s)",
    )
    parser.add_argument(
        "--ch-clusters",
        default=os.getenv("CH_CLUSTERS", DEFAULT_CLUSTERS),
        help="Clusters as name=kind:node,...;... (default: %(default)s)",
    )
    parser.add_argument(
        "--shard-cluster",
        default=os.getenv("CH_SHARD_CLUSTER", "demo_cluster"),
        help="Cluster used for the sharding demo (default: %(default)s)",
    )
    parser.add_argument(
        "--replica-cluster",
        default=os.getenv("CH_REPLICA_CLUSTER", "ha_cluster"),
        help="Cluster used for the replication demo (default: %(default)s)",
    )

    # ClickHouse connection options
    parser.add_argument(
        "--ch-user",
        default=os.getenv("CH_USER", "default"),
        help="ClickHouse user (default: %(default)s)",
    )
    parser.add_argument(
        "--ch-password",
        default=os.getenv("CH_PASSWORD", ""),
        help="ClickHouse password",
    )
    parser.add_argument(
        "--ch-secure",
        action="store_true",
        default=_env_bool("CH_SECURE", False),
        help="Use secure connection (default: %(default)s)",
    )
    parser.add_argument(
        "--ch-verify",
        action="store_true",
        default=_env_bool("CH_VERIFY", False),
        help="Verify SSL certificates (default: %(default)s)",
    )
    parser.add_argument(
        "--ch-query-timeout",
        type=int,
        default=int(os.getenv("CH_QUERY_TIMEOUT", "30")),
        help="Per-query max_execution_time in seconds (default: %(default)s)",
    )

    # Development options
    parser.add_argument(
        "--reload",
        action="store_true",
        default=_env_bool("RELOAD", False),
        help="Enable auto-reload for development (default: %(default)s)",
    )

    return parser.parse_args(argv)


def build_coordinator(args: argparse.Namespace) -> PlacementCoordinator:
    registry = NodeRegistry.from_specs(
        args.ch_nodes,
        args.ch_clusters,
        user=args.ch_user,
        password=args.ch_password,
        secure=args.ch_secure,
        verify=args.ch_verify,
        query_timeout=args.ch_query_timeout,
    )
    return PlacementCoordinator(
        registry,
        shard_cluster=args.shard_cluster,
        replica_cluster=args.replica_cluster,
    )


def main() -> None:
    """Main entry point."""
    args = parse_args()

    # Fail on a bad topology before binding the port
    coordinator = build_coordinator(args)

    display_host = "127.0.0.1" if args.host == "0.0.0.0" else args.host
    print("Starting ClickHouse Explorer cluster API")
    print(f"   API Docs: http://{display_host}:{args.port}/docs")
    for cluster in coordinator.registry.describe():
        members = ", ".join(f"{n['name']}@{n['address']} ({n['role']})" for n in cluster["nodes"])
        print(f"   {cluster['name']} [{cluster['kind']}]: {members}")
    print()

    if args.reload:
        # Reload needs an import string; the app module rebuilds itself from the environment.
        os.environ.update(
            {
                "CH_NODES": args.ch_nodes,
                "CH_CLUSTERS": args.ch_clusters,
                "CH_SHARD_CLUSTER": args.shard_cluster,
                "CH_REPLICA_CLUSTER": args.replica_cluster,
                "CH_USER": args.ch_user,
                "CH_PASSWORD": args.ch_password,
                "CH_SECURE": str(args.ch_secure).lower(),
                "CH_VERIFY": str(args.ch_verify).lower(),
                "CH_QUERY_TIMEOUT": str(args.ch_query_timeout),
            }
        )
        uvicorn.run("chexplorer.api.main:app", host=args.host, port=args.port, reload=True)
        return

    uvicorn.run(create_app(coordinator), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
