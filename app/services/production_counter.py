"""
Line Metrics Engine - Production Counter Resolution

Net production is read from line counter tags as the difference between the
first sample in a window and the last one. Lines carry different counters:
some count cases (multiplied by the SKU's containers per pack), others count
units directly. The resolver tries an ordered list of strategies and stops at
the first that yields a delta.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog

from app.config import settings
from app.models.metrics import (
    ProductionCountMethod,
    ResolvedProductionCount,
    TagOwnerType,
    TagRef,
    TimeSample,
    TimeWindow,
)
from app.repositories.base import TimeSeriesStore
from app.utils.async_utils import gather_all
from app.utils.instrumentation import COUNTER_RESETS, RESOLVER_TIER_HITS

logger = structlog.get_logger()


@dataclass
class CounterDelta:
    """Difference between the boundary samples of a counter tag."""
    first: TimeSample
    last: TimeSample
    raw_delta: float
    delta: float

    @property
    def counter_reset(self) -> bool:
        return self.raw_delta < 0


async def boundary_samples(
    store: TimeSeriesStore,
    tag_id: int,
    window: TimeWindow
) -> tuple:
    """
    First sample at-or-after the window start, and the closing sample.

    The closing sample is the one at-or-before the window end, or for a live
    window the most recent sample since the window start.
    """
    if window.is_live:
        closing = store.latest_sample(tag_id, since=window.start)
    else:
        closing = store.sample_at_or_before(tag_id, window.end)
    first, last = await gather_all(store.sample_at_or_after(tag_id, window.start), closing)
    return first, last


async def counter_delta(
    store: TimeSeriesStore,
    tag_id: int,
    window: TimeWindow,
    tag_ref: str = "",
    clamp_negative: Optional[bool] = None
) -> Optional[CounterDelta]:
    """Counter increase over the window, or None when a boundary sample is missing."""
    if clamp_negative is None:
        clamp_negative = settings.CLAMP_NEGATIVE_COUNTER_DELTAS

    first, last = await boundary_samples(store, tag_id, window)
    if first is None or last is None:
        return None

    first_value, last_value = first.as_number(), last.as_number()
    if first_value is None or last_value is None:
        logger.warning(
            "Counter sample is not numeric",
            tag_id=tag_id,
            tag_ref=tag_ref,
            first=first.value,
            last=last.value
        )
        return None

    raw_delta = last_value - first_value
    delta = raw_delta
    if raw_delta < 0:
        COUNTER_RESETS.labels(tag_ref=tag_ref or "unknown").inc()
        logger.warning(
            "Counter decreased inside window, possible counter reset",
            tag_id=tag_id,
            tag_ref=tag_ref,
            first_value=first_value,
            last_value=last_value,
            clamped=clamp_negative
        )
        if clamp_negative:
            delta = 0.0

    return CounterDelta(first=first, last=last, raw_delta=raw_delta, delta=delta)


async def line_counter_delta(
    store: TimeSeriesStore,
    line_id: int,
    ref: TagRef,
    window: TimeWindow
) -> float:
    """Delta of a line counter tag over the window; 0 when the tag or its samples are missing."""
    tag = await store.find_tag(TagOwnerType.LINE, line_id, ref.value)
    if tag is None:
        logger.warning("Line counter tag not found", line_id=line_id, tag_ref=ref.value)
        return 0.0

    result = await counter_delta(store, tag.id, window, tag_ref=ref.value)
    return result.delta if result is not None else 0.0


class CounterStrategy:
    """One tier of the production counter fallback chain."""

    tag_ref: TagRef
    method: ProductionCountMethod

    async def resolve(
        self,
        store: TimeSeriesStore,
        line_id: int,
        window: TimeWindow,
        containers_per_pack: float
    ) -> Optional[ResolvedProductionCount]:
        tag = await store.find_tag(TagOwnerType.LINE, line_id, self.tag_ref.value)
        if tag is None:
            return None

        delta = await counter_delta(store, tag.id, window, tag_ref=self.tag_ref.value)
        if delta is None:
            logger.info(
                "Counter tag has no samples in window",
                line_id=line_id,
                tag_ref=self.tag_ref.value,
                window_start=window.start,
                window_end=window.end
            )
            return None

        return self.build_result(delta, containers_per_pack)

    def build_result(self, delta: CounterDelta, containers_per_pack: float) -> ResolvedProductionCount:
        raise NotImplementedError


class CaseCounterStrategy(CounterStrategy):
    """Case counter multiplied by containers per pack."""

    tag_ref = TagRef.CASE_COUNT
    method = ProductionCountMethod.CASE_BASED

    def build_result(self, delta: CounterDelta, containers_per_pack: float) -> ResolvedProductionCount:
        return ResolvedProductionCount(
            units=delta.delta * containers_per_pack,
            method=self.method,
            cases_count=delta.delta,
            counter_reset=delta.counter_reset
        )


class UnitCounterStrategy(CounterStrategy):
    """Direct unit counter."""

    tag_ref = TagRef.UNIT_COUNT
    method = ProductionCountMethod.UNIT_BASED

    def build_result(self, delta: CounterDelta, containers_per_pack: float) -> ResolvedProductionCount:
        return ResolvedProductionCount(
            units=delta.delta,
            method=self.method,
            cases_count=0,
            counter_reset=delta.counter_reset
        )


DEFAULT_COUNTER_STRATEGIES = (CaseCounterStrategy(), UnitCounterStrategy())


class ProductionCounterResolver:
    """Resolves net production units through an ordered list of counter strategies."""

    def __init__(self, store: TimeSeriesStore, strategies: Optional[Sequence[CounterStrategy]] = None):
        self.store = store
        self.strategies: List[CounterStrategy] = list(strategies or DEFAULT_COUNTER_STRATEGIES)

    async def resolve(
        self,
        line_id: int,
        window: TimeWindow,
        containers_per_pack: Optional[float] = 1
    ) -> ResolvedProductionCount:
        """
        Resolve net production for a line over an explicit window.

        Callers pass the job window or the program window; the resolver
        never derives it. Returns method NONE with zero units when no
        strategy applies.
        """
        if not containers_per_pack:
            containers_per_pack = 1

        for strategy in self.strategies:
            result = await strategy.resolve(self.store, line_id, window, containers_per_pack)
            if result is None:
                continue

            RESOLVER_TIER_HITS.labels(resolver="production_counter", tier=result.method.value).inc()
            logger.info(
                "Production count resolved",
                line_id=line_id,
                method=result.method.value,
                units=result.units,
                cases_count=result.cases_count,
                containers_per_pack=containers_per_pack,
                live=window.is_live
            )
            return result

        RESOLVER_TIER_HITS.labels(resolver="production_counter", tier=ProductionCountMethod.NONE.value).inc()
        logger.warning(
            "No production counter found for line, returning 0",
            line_id=line_id,
            strategies=[strategy.tag_ref.value for strategy in self.strategies]
        )
        return ResolvedProductionCount(units=0, method=ProductionCountMethod.NONE, cases_count=0)
