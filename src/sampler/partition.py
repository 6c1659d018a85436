"""Random integer partitions used to split a spend across operations.

Every function takes the random source explicitly so runs can be replayed
from a seed.
"""

import random
from collections.abc import Iterable


def _differences(points: Iterable[int]) -> list[int]:
    parts, previous = [], 0
    for point in points:
        parts.append(point - previous)
        previous = point
    return parts


def uniform_m_of_n(max_value: int, size: int, rng: random.Random) -> list[int]:
    """Pick ``size`` distinct integers from ``[1, max_value]`` without replacement.

    Floyd's incremental selection: for every bound ``b`` in
    ``max_value - size + 1 .. max_value`` draw uniformly from ``[1, b]`` and take
    ``b`` itself when the draw was already chosen. Memory is O(size), not
    O(max_value), and every subset is equally likely.
    """
    if size < 0 or max_value < 0:
        raise ValueError(f"negative arguments: max_value={max_value} size={size}")
    if size > max_value:
        raise ValueError(f"cannot pick {size} distinct values from [1, {max_value}]")

    chosen: set[int] = set()
    picked: list[int] = []
    for bound in range(max_value - size + 1, max_value + 1):
        value = rng.randint(1, bound)
        if value in chosen:
            value = bound
        chosen.add(value)
        picked.append(value)
    return picked


def partition_without_zeros(total: int, size: int, rng: random.Random) -> list[int]:
    """Split ``total`` into ``size`` strictly positive parts.

    ``size - 1`` distinct cut points are drawn from ``[1, total - 1]``; sorted and
    closed with ``total`` their successive differences are all >= 1 and add up
    to ``total``.

    Degenerate inputs: ``size == 0`` gives ``[]``, ``size == 1`` gives ``[total]``
    and ``total == 0`` gives ``size`` zeros. ``0 < total < size`` has no positive
    answer and raises ``ValueError``.
    """
    if size < 0 or total < 0:
        raise ValueError(f"negative arguments: total={total} size={size}")
    if size == 0:
        return []
    if size == 1:
        return [total]
    if total == 0:
        return [0] * size
    if total < size:
        raise ValueError(f"cannot split {total} into {size} positive parts")

    cuts = sorted(uniform_m_of_n(total - 1, size - 1, rng))
    cuts.append(total)
    return _differences(cuts)


def partition_with_zeros(total: int, size: int, rng: random.Random) -> list[int]:
    """Split ``total`` into ``size`` non-negative parts (cut points drawn with replacement)."""
    if size < 0 or total < 0:
        raise ValueError(f"negative arguments: total={total} size={size}")
    if size == 0:
        return []

    cuts = sorted(rng.randint(0, total) for _ in range(size - 1))
    cuts.append(total)
    return _differences(cuts)
