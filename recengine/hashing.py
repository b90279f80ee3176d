"""Stable, portable string hashing used for bucketing and categorical features.

``string_hash32`` is the classic 31-multiplier polynomial hash over UTF-16
code units with signed 32-bit wrap-around::

    h = 0
    for unit in utf16_code_units(value):
        h = int32(h * 31 + unit)

It never depends on ``PYTHONHASHSEED`` and yields the same value as the
equivalent Java/JavaScript implementation. It is not cryptographic.
"""
from __future__ import annotations

_MASK32 = 0xFFFFFFFF
_SIGN_BIT = 0x80000000


def _utf16_code_units(value: str):
    # Lone surrogates pass through as their own code unit.
    data = value.encode("utf-16-le", "surrogatepass")
    for offset in range(0, len(data), 2):
        yield data[offset] | (data[offset + 1] << 8)


def string_hash32(value: str) -> int:
    """Signed 32-bit polynomial hash of ``value``."""
    h = 0
    for unit in _utf16_code_units(value):
        h = (h * 31 + unit) & _MASK32
    return h - 0x100000000 if h & _SIGN_BIT else h


def bucket(value: str, buckets: int = 100) -> int:
    """Map ``value`` onto ``[0, buckets)`` as ``abs(string_hash32(value)) % buckets``."""
    return abs(string_hash32(value)) % buckets


def assignment_bucket(user_id: str, experiment_id: str, buckets: int = 100) -> int:
    """Bucket for a user within an experiment, hashed from ``"<user_id>:<experiment_id>"``."""
    return bucket(f"{user_id}:{experiment_id}", buckets)


def hash_feature(value: str) -> float:
    """Categorical value folded into ``[0, 1)`` for use as a numeric feature."""
    return bucket(value.lower(), 1000) / 1000.0


__all__ = ["string_hash32", "bucket", "assignment_bucket", "hash_feature"]
