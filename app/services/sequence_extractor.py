"""
Line Metrics Engine - Machine State Sequence Extraction

This module groups contiguous runs of a machine-state code into intervals.
A run's duration is the number of samples in it, not its elapsed time: the
machine-state tag is sampled about once per minute and the reports built on
these durations count samples.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence

import structlog

from app.config import settings
from app.models.metrics import Interval, TimeSample, TimeWindow
from app.repositories.base import TimeSeriesStore
from app.utils.time_utils import whole_minutes_between

logger = structlog.get_logger()


@dataclass
class SequenceRun:
    """One contiguous run of the target code."""
    interval: Interval
    sample_count: int


@dataclass
class SequenceExtraction:
    """Runs found for one tag and target code."""
    runs: List[SequenceRun] = field(default_factory=list)

    @property
    def intervals(self) -> List[Interval]:
        return [run.interval for run in self.runs]

    @property
    def sample_count_duration(self) -> int:
        return sum(run.sample_count for run in self.runs)


def _breaks_run(current: TimeSample, following: Optional[TimeSample], target_code: int, gap_tolerance_minutes: int) -> bool:
    if following is None:
        return True
    if following.as_code() != target_code:
        return True
    return whole_minutes_between(current.timestamp, following.timestamp) > gap_tolerance_minutes


def extract_sequences(
    samples: Sequence[TimeSample],
    target_code: int,
    source_id: Any = None,
    gap_tolerance_minutes: Optional[int] = None
) -> SequenceExtraction:
    """
    Group contiguous samples carrying target_code into runs.

    A run ends at the last sample, at a sample whose successor has a different
    code, or where the successor is more than gap_tolerance_minutes whole
    minutes later. Samples must be in ascending timestamp order.
    """
    if gap_tolerance_minutes is None:
        gap_tolerance_minutes = settings.RUN_BREAK_GAP_MINUTES

    extraction = SequenceExtraction()
    current_run: List[TimeSample] = []

    for index, sample in enumerate(samples):
        if sample.as_code() != target_code:
            continue

        current_run.append(sample)
        following = samples[index + 1] if index + 1 < len(samples) else None

        if _breaks_run(sample, following, target_code, gap_tolerance_minutes):
            extraction.runs.append(SequenceRun(
                interval=Interval(
                    start=current_run[0].timestamp,
                    end=current_run[-1].timestamp,
                    source_id=source_id,
                    code=target_code
                ),
                sample_count=len(current_run)
            ))
            current_run = []

    return extraction


async def extract_machine_state_sequences(
    store: TimeSeriesStore,
    tag_id: int,
    window: TimeWindow,
    target_code: int,
    source_id: Any = None,
    now: Optional[datetime] = None
) -> SequenceExtraction:
    """Read a machine-state tag over the window and extract runs of target_code."""
    samples = await store.samples(tag_id, window.start, window.upper_bound(now))
    extraction = extract_sequences(samples, target_code, source_id=source_id)

    logger.debug(
        "Machine state sequences extracted",
        tag_id=tag_id,
        target_code=target_code,
        samples=len(samples),
        runs=len(extraction.runs),
        sample_count_duration=extraction.sample_count_duration,
        live=window.is_live
    )

    return extraction
