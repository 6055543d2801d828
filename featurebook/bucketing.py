"""
Deterministic hashing and bucket math.

Hashes are FNV-1a (32 bit) over UTF-16 code units so that a given
(seed, value, version) lands in the same bucket as in every other
GrowthBook-compatible SDK.
"""

from typing import Iterator, List, Optional, Tuple

VariationRange = Tuple[float, float]

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def _code_units(value: str) -> Iterator[int]:
    data = value.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def fnv1a32(value: str) -> int:
    h = _FNV_OFFSET
    for unit in _code_units(value):
        h = ((h ^ unit) * _FNV_PRIME) & 0xFFFFFFFF
    return h


def hash_to_unit(seed: str, value: str, version: int) -> Optional[float]:
    """
    Maps ``value`` to a float in [0, 1).

    Version 1 has 1000 buckets and is kept for payloads authored before
    version 2 (10000 buckets, seed mixed in before a second hashing
    round). Any other version returns None.
    """
    if version == 2:
        n = fnv1a32(str(fnv1a32(seed + value)))
        return (n % 10000) / 10000
    if version == 1:
        n = fnv1a32(value + seed)
        return (n % 1000) / 1000
    return None


def in_range(n: float, range: VariationRange) -> bool:
    return range[0] <= n < range[1]


def in_namespace(hash_value: str, namespace: Tuple[str, float, float]) -> bool:
    n = hash_to_unit("__" + namespace[0], hash_value, 1)
    if n is None:
        return False
    return in_range(n, (namespace[1], namespace[2]))


def get_equal_weights(num_variations: int) -> List[float]:
    if num_variations < 1:
        return []
    return [1 / num_variations] * num_variations


def _clamp(n: float) -> float:
    return min(max(n, 0), 1)


def get_bucket_ranges(
    num_variations: int, coverage: float = 1, weights: List[float] = None
) -> List[VariationRange]:
    """
    Lays the variations out as contiguous ranges over [0, 1).

    Weights may sum to less than 1, leaving the remainder unallocated.
    Negative weights count as 0. A weight list of the wrong length or
    summing to more than 1 falls back to an even split.
    """
    coverage = _clamp(coverage)

    if weights is None or len(weights) != num_variations:
        weights = get_equal_weights(num_variations)
    else:
        weights = [max(w or 0, 0) for w in weights]
        if sum(weights) > 1.01:
            weights = get_equal_weights(num_variations)

    ranges = []
    cumulative = 0.0
    for w in weights:
        ranges.append((cumulative, cumulative + coverage * w))
        cumulative += w
    return ranges


def choose_variation(n: float, ranges: List[VariationRange]) -> int:
    for i, r in enumerate(ranges):
        if in_range(n, r):
            return i
    return -1


def choose_weighted_variation(n: float, weights: List[float]) -> int:
    """Index of the first variation whose cumulative weight exceeds ``n``, or -1."""
    return choose_variation(n, get_bucket_ranges(len(weights), 1, weights))
