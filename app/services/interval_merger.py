"""
Line Metrics Engine - Breakdown Interval Merging

When several machines on a line are down at the same time their breakdown
windows overlap. Merging them into a disjoint set keeps line-level downtime
from being counted twice. Each merged window counts its whole elapsed
minutes, truncated.
"""

from typing import Iterable, List, Union

from app.models.metrics import BreakdownEvent, Interval, MergedBreakdown

MergeInput = Union[BreakdownEvent, Interval, MergedBreakdown]


def _sources(item: MergeInput) -> set:
    if isinstance(item, MergedBreakdown):
        return set(item.contributing_source_ids)
    if item.source_id is None:
        return set()
    return {item.source_id}


def merge_breakdowns(events: Iterable[MergeInput]) -> List[MergedBreakdown]:
    """
    Merge breakdown events into the minimal disjoint cover of their union.

    Events that overlap or touch (next start <= current end) are joined.
    Already-merged breakdowns are accepted, so merging is idempotent.
    """
    ordered = sorted(events, key=lambda item: (item.start, item.end))
    if not ordered:
        return []

    merged: List[MergedBreakdown] = []
    window_start = ordered[0].start
    window_end = ordered[0].end
    window_sources = _sources(ordered[0])

    for item in ordered[1:]:
        if item.start <= window_end:
            window_end = max(window_end, item.end)
            window_sources |= _sources(item)
        else:
            merged.append(MergedBreakdown(
                start=window_start,
                end=window_end,
                contributing_source_ids=window_sources
            ))
            window_start, window_end, window_sources = item.start, item.end, _sources(item)

    merged.append(MergedBreakdown(
        start=window_start,
        end=window_end,
        contributing_source_ids=window_sources
    ))
    return merged


def merged_elapsed_minutes(merged: Iterable[MergedBreakdown]) -> int:
    """Sum of the whole minutes of each merged breakdown window."""
    return sum(breakdown.elapsed_minutes for breakdown in merged)


def total_breakdown_minutes(events: Iterable[MergeInput]) -> int:
    return merged_elapsed_minutes(merge_breakdowns(events))
