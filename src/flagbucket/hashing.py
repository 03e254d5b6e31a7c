from __future__ import annotations
import math
from decimal import Decimal
from typing import Any

import mmh3

# murmur3 returns an unsigned 32-bit integer.
MAX_HASH_VALUE = 4294967295
BASE_SEED = 1
DEFAULT_BUCKETING_VALUE = "null"


def murmurhash_v3(data: str, seed: int) -> int:
    return mmh3.hash(data, seed, signed=False)


def generate_bounded_hash(value: str, seed: int) -> float:
    """
    Hashes the given value with the given seed to a float in the range [0, 1].

    Stability of this hash function is crucial. Bucketing of a user into a
    variation must be identical across processes, interpreter versions and
    SDKs sharing the same config, so only the seeded murmur3 32-bit hash is
    ever used here.
    """
    return murmurhash_v3(value, seed) / MAX_HASH_VALUE


class BoundedHashes:
    """
    The pair of independent hashes derived for a bucketing value and target.
    """

    __slots__ = ("rollout_hash", "bucketing_hash")
    rollout_hash: float
    bucketing_hash: float

    def __init__(self, rollout_hash: float, bucketing_hash: float):
        self.rollout_hash = rollout_hash
        self.bucketing_hash = bucketing_hash

    def __repr__(self):
        return f"BoundedHashes(rollout_hash={self.rollout_hash!r}, bucketing_hash={self.bucketing_hash!r})"


def generate_bounded_hashes(bucketing_value: str, target_id: str) -> BoundedHashes:
    """
    Generate the rollout and bucketing hashes for the given bucketing value.
    The target id is hashed with the global base seed and the result is used
    as the seed of both bounded hashes, so the same user lands in different
    buckets for different targets.
    """
    target_seed = murmurhash_v3(target_id, BASE_SEED)
    return BoundedHashes(
        rollout_hash=generate_bounded_hash(bucketing_value + "_rollout", target_seed),
        bucketing_hash=generate_bounded_hash(bucketing_value, target_seed),
    )


def _format_number(v: float) -> str:
    """
    Shortest round-trip decimal representation of v without an exponent.
    Integral floats have no fractional part (3.0 -> "3").
    """
    if not math.isfinite(v):
        return repr(v)
    return format(Decimal(repr(v)).normalize(), "f")


def stringify_bucketing_value(value: Any) -> str:
    match value:
        case None:
            return DEFAULT_BUCKETING_VALUE
        case bool():
            # bool is checked before int since it's a subclass of int.
            return "true" if value else "false"
        case str():
            return value
        case int():
            return str(value)
        case float():
            return _format_number(value)
        case _:
            return DEFAULT_BUCKETING_VALUE


def determine_bucketing_value(bucketing_key: str | None, user_id: str, merged_custom_data: dict[str, Any]) -> str:
    """
    Return the value a target hashes on for a user. This is the user id unless
    the target names another custom data attribute to bucket by.
    """
    if not bucketing_key or bucketing_key == "user_id":
        return user_id
    if bucketing_key not in merged_custom_data:
        return DEFAULT_BUCKETING_VALUE
    return stringify_bucketing_value(merged_custom_data[bucketing_key])
