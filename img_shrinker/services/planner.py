"""Shrink planning: how many blocks the filesystem keeps after the shrink."""

from __future__ import annotations

from img_shrinker.domain.models import ShrinkPlan

# Descending (headroom threshold, blocks added) ladder; first match wins.
MARGIN_LADDER = (5000, 1000, 100)


def safety_margin(headroom: int) -> int:
    """Blocks to keep above the minimum, given the current headroom."""
    for step in MARGIN_LADDER:
        if headroom > step:
            return step
    return 0


def plan_shrink(current_blocks: int, minimum_blocks: int) -> ShrinkPlan:
    """Plan the target block count for a filesystem.

    The target is the minimum plus a margin taken from ``MARGIN_LADDER``. Since
    a margin is only added when the headroom is strictly larger, the target
    always stays between the minimum and the current size.

    Raises:
        ValueError: If the minimum is negative or exceeds the current size
    """
    if minimum_blocks < 0 or current_blocks < minimum_blocks:
        raise ValueError(
            f"Invalid filesystem sizes: current={current_blocks} minimum={minimum_blocks}"
        )
    margin = safety_margin(current_blocks - minimum_blocks)
    return ShrinkPlan(
        current_blocks=current_blocks,
        minimum_blocks=minimum_blocks,
        target_blocks=minimum_blocks + margin,
        margin_blocks=margin,
    )
