from __future__ import annotations

from typing import Optional


class ExplorerError(Exception):
    """Base class for errors raised by the placement and replication checks."""


class InvalidInputError(ExplorerError, ValueError):
    """A shard key, shard count or timing parameter was rejected before any I/O."""


class ConfigurationError(ExplorerError, RuntimeError):
    """The node topology is missing or malformed."""


class NodeUnreachableError(ExplorerError, ConnectionError):
    """A specific node could not be queried (network failure or timeout)."""

    def __init__(self, node_name: str, reason: Optional[str] = None) -> None:
        self.node_name = node_name
        self.reason = reason
        message = f"Node '{node_name}' is unreachable"
        if reason:
            message += f": {reason}"
        super().__init__(message)
