"""
Shard routing for the demo Distributed table.

``events_distributed`` is declared with ``murmurHash3_32(user_id)`` as its sharding
key and equal shard weights, so the owning shard of a key is
``murmurhash3_32(utf8(key)) % shard_count`` and shard index ``i`` lives on the
``i``-th node of the shard cluster.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence, Union

import pandas as pd

from .errors import InvalidInputError
from .hashing import murmurhash3_32
from .registry import Node

HASH_FUNCTION = "murmurHash3_32"

ShardKey = Union[str, bytes, bytearray]


def shard_key_bytes(key: ShardKey) -> bytes:
    """Normalise a shard key to bytes, rejecting empty and non-text keys."""
    if isinstance(key, str):
        data = key.encode("utf-8")
    elif isinstance(key, (bytes, bytearray)):
        data = bytes(key)
    else:
        raise InvalidInputError(f"Shard key must be str or bytes, got {type(key).__name__}")
    if not data:
        raise InvalidInputError("Shard key must not be empty")
    return data


def shard_key_text(key: ShardKey) -> str:
    """Return the key as text for SQL parameters; bytes keys must be valid UTF-8."""
    data = shard_key_bytes(key)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidInputError("Shard key bytes must be valid UTF-8 to be sent to ClickHouse")


def _check_shard_count(shard_count: int) -> None:
    if isinstance(shard_count, bool) or not isinstance(shard_count, int):
        raise InvalidInputError(f"Shard count must be an integer, got {shard_count!r}")
    if shard_count < 1:
        raise InvalidInputError(f"Shard count must be >= 1, got {shard_count}")


def hash_key(key: ShardKey) -> int:
    return murmurhash3_32(shard_key_bytes(key))


def route(key: ShardKey, shard_count: int) -> int:
    """Return the zero-based shard index that owns ``key``."""
    _check_shard_count(shard_count)
    return hash_key(key) % shard_count


@dataclass(frozen=True)
class RoutingDecision:
    shard_key: bytes
    hash_value: int
    shard_index: int
    expected_node: Node

    @property
    def shard_number(self) -> int:
        """One-based shard number as used in ``system.clusters``."""
        return self.shard_index + 1

    @property
    def hash_expression(self) -> str:
        return f'{HASH_FUNCTION}("{self.shard_key.decode("utf-8", "replace")}")'


def decide(key: ShardKey, nodes: Sequence[Node]) -> RoutingDecision:
    """Route ``key`` over an ordered list of shard nodes."""
    if not nodes:
        raise InvalidInputError("Cannot route over an empty node list")
    data = shard_key_bytes(key)
    hash_value = murmurhash3_32(data)
    index = hash_value % len(nodes)
    return RoutingDecision(
        shard_key=data,
        hash_value=hash_value,
        shard_index=index,
        expected_node=nodes[index],
    )


def shard_distribution(keys: Iterable[ShardKey], shard_count: int) -> pd.DataFrame:
    """
    Route every key and report how many landed on each shard.

    Returns one row per shard (empty shards included) with columns
    ``shard``, ``keys`` and ``share`` (fraction of all keys, 0.0 when no keys).
    """
    _check_shard_count(shard_count)
    counts = Counter(route(key, shard_count) for key in keys)
    total = sum(counts.values())
    frame = pd.DataFrame(
        {
            "shard": list(range(shard_count)),
            "keys": [counts.get(shard, 0) for shard in range(shard_count)],
        }
    )
    frame["share"] = frame["keys"] / total if total else 0.0
    return frame
