from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .connection import NodeConnection
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SHARD = "shard"
REPLICA = "replica"
CLUSTER_KINDS = (SHARD, REPLICA)

DEFAULT_NODES = "node1=localhost:8124,node2=localhost:8125"
DEFAULT_CLUSTERS = "demo_cluster=shard:node1,node2;ha_cluster=replica:node1,node2"


def _env_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    val = environ.get(name)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "on"}


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split ``host:port`` (``[v6-host]:port`` for IPv6) into its parts.

    Raises ConfigurationError when the host is empty or the port is not in 1..65535.
    """
    raw = (address or "").strip()
    host, sep, port_text = raw.rpartition(":")
    if not sep or not host or not port_text:
        raise ConfigurationError(f"Malformed node address '{address}', expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigurationError(f"Malformed node address '{address}', wrap IPv6 hosts in []")
    if not host:
        raise ConfigurationError(f"Malformed node address '{address}', host is empty")
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError(f"Malformed node address '{address}', port is not a number")
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Malformed node address '{address}', port out of range")
    return host, port


@dataclass(frozen=True)
class Node:
    """A ClickHouse endpoint as seen from one logical cluster."""

    name: str
    address: str
    role: str

    @property
    def host(self) -> str:
        return parse_address(self.address)[0]

    @property
    def port(self) -> int:
        return parse_address(self.address)[1]


@dataclass
class NodeSettings:
    host: str
    port: int
    user: str = "default"
    password: str = ""
    secure: bool = False
    verify: bool = False

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class ClusterTopology:
    name: str
    kind: str
    node_names: Tuple[str, ...] = field(default_factory=tuple)


class NodeRegistry:
    """
    Static topology of the demo cluster plus the pool of node connections.

    Built once at process start; every lookup fails with ConfigurationError rather than
    silently returning an empty topology.
    """

    def __init__(
        self,
        settings: Mapping[str, NodeSettings],
        clusters: Mapping[str, ClusterTopology],
        *,
        query_timeout: int = 30,
        connection_factory: Optional[Callable[..., NodeConnection]] = None,
    ) -> None:
        self._settings: Dict[str, NodeSettings] = dict(settings)
        self._clusters: Dict[str, ClusterTopology] = dict(clusters)
        self._query_timeout = query_timeout
        self._connection_factory = connection_factory or NodeConnection
        self._connections: Dict[str, NodeConnection] = {}
        self._lock = threading.Lock()
        self._validate()
        logger.info(
            "Node registry ready | nodes=%s clusters=%s",
            list(self._settings),
            {name: list(topology.node_names) for name, topology in self._clusters.items()},
        )

    def _validate(self) -> None:
        for name, node_settings in self._settings.items():
            # Round-trip through the parser so malformed hosts/ports fail at startup.
            parse_address(node_settings.address)
            if not name:
                raise ConfigurationError("Node names must not be empty")
        for name, topology in self._clusters.items():
            if topology.kind not in CLUSTER_KINDS:
                raise ConfigurationError(
                    f"Cluster '{name}' has unknown kind '{topology.kind}', "
                    f"expected one of {CLUSTER_KINDS}"
                )
            if not topology.node_names:
                raise ConfigurationError(f"Cluster '{name}' has no configured nodes")
            if len(set(topology.node_names)) != len(topology.node_names):
                raise ConfigurationError(f"Cluster '{name}' lists a node more than once")
            missing = [n for n in topology.node_names if n not in self._settings]
            if missing:
                raise ConfigurationError(
                    f"Cluster '{name}' references unknown nodes: {missing}"
                )

    # ------------------------------ topology ------------------------------
    @property
    def cluster_names(self) -> List[str]:
        return list(self._clusters)

    def cluster_kind(self, cluster_name: str) -> str:
        return self._topology(cluster_name).kind

    def _topology(self, cluster_name: str) -> ClusterTopology:
        topology = self._clusters.get(cluster_name)
        if topology is None or not topology.node_names:
            raise ConfigurationError(f"Cluster '{cluster_name}' has no configured nodes")
        return topology

    def resolve_nodes(self, cluster_name: str) -> List[Node]:
        """Return the cluster's nodes in shard/replica order with one-based roles."""
        topology = self._topology(cluster_name)
        return [
            Node(
                name=node_name,
                address=self._settings[node_name].address,
                role=f"{topology.kind}-{position}",
            )
            for position, node_name in enumerate(topology.node_names, 1)
        ]

    def resolve_node(self, cluster_name: str, node_name: str) -> Node:
        for node in self.resolve_nodes(cluster_name):
            if node.name == node_name:
                return node
        raise ConfigurationError(f"Node '{node_name}' is not part of cluster '{cluster_name}'")

    def describe(self) -> List[dict]:
        return [
            {
                "name": name,
                "kind": topology.kind,
                "nodes": [
                    {"name": node.name, "address": node.address, "role": node.role}
                    for node in self.resolve_nodes(name)
                ],
            }
            for name, topology in self._clusters.items()
        ]

    # ---------------------------- connections -----------------------------
    def connection(self, node: Node | str) -> NodeConnection:
        """Return the pooled connection for ``node``, creating it on first use."""
        name = node if isinstance(node, str) else node.name
        with self._lock:
            existing = self._connections.get(name)
            if existing is not None:
                return existing
            node_settings = self._settings.get(name)
            if node_settings is None:
                raise ConfigurationError(f"Node '{name}' is not configured")
            connection = self._connection_factory(
                name=name,
                host=node_settings.host,
                port=node_settings.port,
                user=node_settings.user,
                password=node_settings.password,
                secure=node_settings.secure,
                verify=node_settings.verify,
                query_timeout=self._query_timeout,
            )
            self._connections[name] = connection
            return connection

    def close(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()

    # ---------------------------- construction ----------------------------
    @classmethod
    def from_specs(
        cls,
        nodes: str,
        clusters: str,
        *,
        user: str = "default",
        password: str = "",
        secure: bool = False,
        verify: bool = False,
        query_timeout: int = 30,
        connection_factory: Optional[Callable[..., NodeConnection]] = None,
    ) -> "NodeRegistry":
        """
        Build a registry from compact text specs.

        ``nodes``: ``name=host:port,name=host:port``
        ``clusters``: ``cluster=kind:node,node;cluster=kind:node,node``
        """
        settings: Dict[str, NodeSettings] = {}
        for entry in _split(nodes, ","):
            name, sep, address = entry.partition("=")
            name = name.strip()
            if not sep or not name:
                raise ConfigurationError(f"Malformed node entry '{entry}', expected name=host:port")
            if name in settings:
                raise ConfigurationError(f"Node '{name}' is configured twice")
            host, port = parse_address(address)
            settings[name] = NodeSettings(
                host=host,
                port=port,
                user=user,
                password=password,
                secure=secure,
                verify=verify,
            )
        if not settings:
            raise ConfigurationError("No nodes configured")

        topologies: Dict[str, ClusterTopology] = {}
        for entry in _split(clusters, ";"):
            name, sep, body = entry.partition("=")
            kind, kind_sep, members = body.partition(":")
            name = name.strip()
            if not sep or not kind_sep or not name:
                raise ConfigurationError(
                    f"Malformed cluster entry '{entry}', expected name=kind:node,node"
                )
            topologies[name] = ClusterTopology(
                name=name,
                kind=kind.strip().lower(),
                node_names=tuple(_split(members, ",")),
            )

        return cls(
            settings,
            topologies,
            query_timeout=query_timeout,
            connection_factory=connection_factory,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NodeRegistry":
        env = os.environ if environ is None else environ
        try:
            query_timeout = int(env.get("CH_QUERY_TIMEOUT", "30"))
        except ValueError:
            raise ConfigurationError("CH_QUERY_TIMEOUT must be an integer number of seconds")
        return cls.from_specs(
            env.get("CH_NODES", DEFAULT_NODES),
            env.get("CH_CLUSTERS", DEFAULT_CLUSTERS),
            user=env.get("CH_USER", "default"),
            password=env.get("CH_PASSWORD", ""),
            secure=_env_bool(env, "CH_SECURE", False),
            verify=_env_bool(env, "CH_VERIFY", False),
            query_timeout=query_timeout,
        )


def _split(text: str, separator: str) -> Sequence[str]:
    return [part.strip() for part in (text or "").split(separator) if part.strip()]
