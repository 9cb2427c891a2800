from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Awaitable, Callable, Optional

from .backend import PlacementBackend
from .errors import InvalidInputError
from .registry import Node
from .router import ShardKey, shard_key_text

logger = logging.getLogger("chexplorer.replication")

DEFAULT_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.25


@dataclass
class ReplicationCheckResult:
    """
    Outcome of one replication convergence check.

    ``before_count`` is read before the row is written when the check performs the
    write itself. ``after_count`` is the last successful observation.

    ``before_count``/``after_count`` are ``None`` when no read completed. Read
    ``error`` and ``timed_out`` to tell why: ``error`` set means the replica failed,
    ``timed_out`` with no error means the budget ran out first (always the case
    for ``timeout=0``). ``replicated`` is only ever True when a growth (or
    ``expected_count``) was actually observed in budget.
    """

    written_at: datetime
    before_count: Optional[int]
    after_count: Optional[int]
    replicated: bool
    elapsed_ms: int
    node: Optional[Node] = None
    source: Optional[Node] = None
    key: Optional[str] = None
    attempts: int = 0
    timed_out: bool = False
    error: Optional[str] = None
    expected_count: Optional[int] = None

    @property
    def determined(self) -> bool:
        """False when the replica could not be read, so ``replicated=False`` means nothing."""
        return self.error is None

    def as_dict(self) -> dict:
        return {
            "key": self.key,
            "primary": self.source.name if self.source else None,
            "secondary": self.node.name if self.node else None,
            "written_at": self.written_at.isoformat(),
            "before_count": self.before_count,
            "after_count": self.after_count,
            "replicated": self.replicated,
            "elapsed_ms": self.elapsed_ms,
            "attempts": self.attempts,
            "timed_out": self.timed_out,
            "error": self.error,
            "expected_count": self.expected_count,
        }


class _BudgetExhausted(Exception):
    pass


async def poll_for_replication(
    key: ShardKey,
    target_node: Node,
    backend: PlacementBackend,
    *,
    table: str,
    column: str,
    timeout: float = DEFAULT_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    written_at: Optional[datetime] = None,
    expected_count: Optional[int] = None,
    write: Optional[Callable[[], Awaitable[Any]]] = None,
) -> ReplicationCheckResult:
    """
    Poll ``target_node`` until the count for ``key`` grows or ``timeout`` expires.

    The baseline is read immediately. When ``write`` is given it is awaited right
    after the baseline, so a replica that converges before the first poll still
    counts as replicated. The replica is then re-read every ``poll_interval`` seconds.

    ``timeout`` bounds every query; a query still running at the deadline is
    abandoned. Replica failures and budget exhaustion are reported in the result and
    skip the write. A failing ``write`` propagates.
    """
    if timeout < 0:
        raise InvalidInputError(f"timeout must be >= 0, got {timeout}")
    if poll_interval <= 0:
        raise InvalidInputError(f"poll_interval must be > 0, got {poll_interval}")
    key_text = shard_key_text(key)
    written_at = written_at or datetime.now(timezone.utc)

    start = monotonic()
    deadline = start + timeout

    def remaining() -> float:
        return deadline - monotonic()

    async def read_count() -> int:
        budget = remaining()
        if budget <= 0:
            raise _BudgetExhausted()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    backend.execute_count, target_node, key_text, table=table, column=column
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            raise _BudgetExhausted()

    def converged(count: int, baseline: int) -> bool:
        if expected_count is not None:
            return count >= expected_count
        return count > baseline

    def finish(**kwargs) -> ReplicationCheckResult:
        result = ReplicationCheckResult(
            written_at=written_at,
            elapsed_ms=int((monotonic() - start) * 1000),
            node=target_node,
            key=key_text,
            expected_count=expected_count,
            **kwargs,
        )
        logger.info(
            "Replication check | node=%s | key=%s | before=%s after=%s replicated=%s "
            "attempts=%d timed_out=%s elapsed=%dms error=%s",
            target_node.name,
            key_text,
            result.before_count,
            result.after_count,
            result.replicated,
            result.attempts,
            result.timed_out,
            result.elapsed_ms,
            result.error,
        )
        return result

    try:
        before = int(await read_count())
    except _BudgetExhausted:
        return finish(
            before_count=None,
            after_count=None,
            replicated=False,
            timed_out=True,
        )
    except Exception as exc:
        logger.warning("Replica baseline read failed | node=%s | error=%s", target_node.name, exc)
        return finish(
            before_count=None,
            after_count=None,
            replicated=False,
            error=f"{type(exc).__name__}: {exc}",
        )

    if write is not None:
        await write()
    elif expected_count is not None and converged(before, before):
        return finish(before_count=before, after_count=before, replicated=True)

    after = before
    attempts = 0
    while True:
        budget = remaining()
        if budget <= 0:
            return finish(
                before_count=before,
                after_count=after,
                replicated=False,
                attempts=attempts,
                timed_out=True,
            )
        await asyncio.sleep(min(poll_interval, budget))
        try:
            after = int(await read_count())
        except _BudgetExhausted:
            return finish(
                before_count=before,
                after_count=after,
                replicated=False,
                attempts=attempts,
                timed_out=True,
            )
        except Exception as exc:
            logger.warning("Replica poll failed | node=%s | error=%s", target_node.name, exc)
            return finish(
                before_count=before,
                after_count=after,
                replicated=False,
                attempts=attempts,
                error=f"{type(exc).__name__}: {exc}",
            )
        attempts += 1
        if converged(after, before):
            return finish(
                before_count=before,
                after_count=after,
                replicated=True,
                attempts=attempts,
            )
