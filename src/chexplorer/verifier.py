from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .backend import PlacementBackend
from .registry import Node
from .router import ShardKey, shard_key_text

logger = logging.getLogger("chexplorer.verifier")

# Per-node ceiling for a placement count; one stuck node must not stall the check.
NODE_QUERY_TIMEOUT = 2.0

CONFIRMED = "confirmed"
MISMATCH = "mismatch"
UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class PlacementObservation:
    node: Node
    row_count: Optional[int]
    error: Optional[str] = None

    @property
    def unreachable(self) -> bool:
        return self.row_count is None

    @property
    def holds_rows(self) -> bool:
        return bool(self.row_count)

    def as_dict(self) -> dict:
        return {
            "node": self.node.name,
            "address": self.node.address,
            "role": self.node.role,
            "row_count": self.row_count,
            "status": "unreachable" if self.unreachable else "ok",
            "error": self.error,
        }


@dataclass(frozen=True)
class PlacementReport:
    """Verdict over one set of observations; ``verdict`` is confirmed/mismatch/undetermined."""

    expected_node: Node
    verdict: str
    holders: List[Node] = field(default_factory=list)
    unreachable: List[Node] = field(default_factory=list)
    total_rows: int = 0

    @property
    def anomaly(self) -> bool:
        """More than one shard holds the key: duplicate write or misrouting."""
        return len(self.holders) > 1

    @property
    def matches(self) -> Optional[bool]:
        if self.verdict == UNDETERMINED:
            return None
        return self.verdict == CONFIRMED


async def count_on_node(
    backend: PlacementBackend,
    node: Node,
    key: Optional[str],
    *,
    table: str,
    column: str,
    timeout: float,
) -> PlacementObservation:
    """Count ``key`` (all rows when None) on one node; failures become ``row_count=None``."""
    try:
        count = await asyncio.wait_for(
            asyncio.to_thread(backend.execute_count, node, key, table=table, column=column),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Placement count timed out | node=%s | timeout=%.2fs", node.name, timeout
        )
        return PlacementObservation(node=node, row_count=None, error=f"timed out after {timeout}s")
    except Exception as exc:
        logger.warning("Placement count failed | node=%s | error=%s", node.name, exc)
        return PlacementObservation(
            node=node, row_count=None, error=f"{type(exc).__name__}: {exc}"
        )
    return PlacementObservation(node=node, row_count=int(count))


async def verify_placement(
    key: ShardKey,
    expected_node: Node,
    nodes: Sequence[Node],
    backend: PlacementBackend,
    *,
    table: str,
    column: str,
    timeout: float = NODE_QUERY_TIMEOUT,
) -> List[PlacementObservation]:
    """
    Count rows for ``key`` on every node concurrently, bypassing the Distributed table.

    Observations come back in ``nodes`` order. Nodes that fail or exceed ``timeout`` are
    reported with ``row_count=None`` so a down shard never reads as an empty one. The
    verdict is left to :func:`summarize_placement`.
    """
    key_text = shard_key_text(key)
    logger.info(
        "Verifying placement | key=%s | expected=%s | nodes=%s",
        key_text,
        expected_node.name,
        [node.name for node in nodes],
    )
    observations = await asyncio.gather(
        *(
            count_on_node(backend, node, key_text, table=table, column=column, timeout=timeout)
            for node in nodes
        )
    )
    holders = [obs.node.name for obs in observations if obs.holds_rows]
    if len(holders) > 1:
        logger.warning("Placement anomaly | key=%s | holders=%s", key_text, holders)
    return list(observations)


def summarize_placement(
    expected_node: Node, observations: Sequence[PlacementObservation]
) -> PlacementReport:
    holders = [obs.node for obs in observations if obs.holds_rows]
    unreachable = [obs.node for obs in observations if obs.unreachable]
    total_rows = sum(obs.row_count or 0 for obs in observations)

    if holders:
        # Any holder other than the expected node is a routing error even if the
        # expected node also has the row.
        verdict = CONFIRMED if [n.name for n in holders] == [expected_node.name] else MISMATCH
    elif unreachable:
        verdict = UNDETERMINED
    else:
        verdict = MISMATCH

    return PlacementReport(
        expected_node=expected_node,
        verdict=verdict,
        holders=holders,
        unreachable=unreachable,
        total_rows=total_rows,
    )
