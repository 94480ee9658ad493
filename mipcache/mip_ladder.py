"""
Mip ladder planning - candidate long-side sizes for a source asset.
"""

import math
from typing import Any, Iterable, List, Optional

DEFAULT_BASE_SIZE = 250


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def parse_seed_sizes(values: Optional[Iterable[Any]]) -> List[int]:
    """
    Normalize configured seed sizes.

    Accepts numbers, numeric strings, or dicts carrying an 'entry' or
    'value' field. Anything non-numeric or non-positive is dropped.

    Returns:
        Sorted list of positive integer sizes
    """
    sizes = []
    if not values:
        return sizes
    if isinstance(values, (int, float, str)):
        values = [values]

    for value in values:
        if isinstance(value, dict):
            value = value.get('entry', value.get('value'))
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number > 0:
            sizes.append(round_half_up(number))

    return sorted(sizes)


def base_size_for(seeds: List[int]) -> int:
    """Lower median of the seed sizes, or the default base size."""
    if not seeds:
        return DEFAULT_BASE_SIZE
    ordered = sorted(seeds)
    return ordered[(len(ordered) - 1) // 2]


def build_ladder(
    base_size: int,
    step_multiplier: float,
    min_size: int,
    original_long: Optional[int] = None,
    seeds: Iterable[int] = ()
) -> List[int]:
    """
    Build the ascending, de-duplicated ladder of candidate sizes.

    Args:
        base_size: Default long side
        step_multiplier: Geometric step between rungs (> 1)
        min_size: Smallest rung allowed on the downward walk
        original_long: Native long side of the source, when known
        seeds: Extra configured sizes to include

    Returns:
        Sorted list of unique sizes; capped at original_long when known
    """
    if step_multiplier <= 1:
        raise ValueError(f"step multiplier must be > 1, got {step_multiplier}")

    candidates = {base_size}
    candidates.update(seeds)

    current = base_size
    while current > min_size:
        nxt = round_half_up(current / step_multiplier)
        if nxt >= current:
            break
        if nxt >= min_size:
            candidates.add(nxt)
        current = nxt

    if original_long:
        # never upscale past the source resolution
        candidates = {c for c in candidates if c <= original_long}
        current = base_size
        while True:
            nxt = round_half_up(current * step_multiplier)
            if nxt <= current or nxt > original_long:
                break
            candidates.add(nxt)
            current = nxt
        candidates.add(original_long)

    return sorted(c for c in candidates if c > 0)


def select_for(requested: int, ladder: List[int]) -> int:
    """
    Smallest ladder entry at or above the requested size.

    Requests larger than every entry are clamped to the largest one.
    """
    if not ladder:
        raise ValueError("ladder is empty")
    for size in ladder:
        if size >= requested:
            return size
    return ladder[-1]
