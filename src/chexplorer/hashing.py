"""
MurmurHash3 (x86, 32-bit) as used by ClickHouse's ``murmurHash3_32``.

The Distributed table in the demo cluster shards on ``murmurHash3_32(user_id)``, so
the router must reproduce the server's function bit for bit. Seed is 0, input is the
raw bytes of the key (UTF-8 for text), output is an unsigned 32-bit integer.
"""

from __future__ import annotations

import struct

_C1 = 0xCC9E2D51
_C2 = 0x1B873593
_MASK = 0xFFFFFFFF


def _rotl32(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (32 - shift))) & _MASK


def _mix_block(k: int) -> int:
    k = (k * _C1) & _MASK
    k = _rotl32(k, 15)
    return (k * _C2) & _MASK


def _fmix32(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK
    h ^= h >> 16
    return h


def murmurhash3_32(data: bytes, seed: int = 0) -> int:
    """Return the unsigned MurmurHash3_x86_32 of ``data``."""
    length = len(data)
    h = seed & _MASK
    body_end = length - (length & 3)

    for (block,) in struct.iter_unpack("<I", data[:body_end]):
        h ^= _mix_block(block)
        h = _rotl32(h, 13)
        h = (h * 5 + 0xE6546B64) & _MASK

    tail = data[body_end:]
    k = 0
    if len(tail) == 3:
        k ^= tail[2] << 16
    if len(tail) >= 2:
        k ^= tail[1] << 8
    if tail:
        k ^= tail[0]
        h ^= _mix_block(k)

    h ^= length
    return _fmix32(h)
