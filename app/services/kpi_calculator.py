"""
Line Metrics Engine - KPI Cascade Calculator

This module computes the job-level efficiency cascade for a production line:

    VOT = product count / (design speed / 60)
    QL  = lost units / produced units x 100
    NOT = VOT + QL
    UDT = merged breakdown minutes of all machines on the line
    GOT = batch duration - UDT
    SLT = GOT - NOT
    SL  = SLT - tailback time - lack time

QL is a percentage summed directly with the minute-valued VOT; this is the
business definition the reports are built on and is kept as is.

Live jobs (no actual end) are evaluated up to "now". Every lookup receives
the same TimeWindow, so live and historical evaluation share one code path.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Iterable, List, Optional

import structlog

from app.config import settings
from app.models.metrics import (
    DesignSpeedProvenance,
    Interval,
    Job,
    MachineState,
    MergedBreakdown,
    MetricsResult,
    ProductionCountMethod,
    TagOwnerType,
    TagRef,
    TimeWindow,
    TrueEfficiencyResult,
)
from app.repositories.base import (
    BreakdownRepository,
    ConfigurationRepository,
    JobRepository,
    TimeSeriesStore,
)
from app.services.design_speed import DesignSpeedResolver
from app.services.interval_merger import merge_breakdowns, merged_elapsed_minutes
from app.services.production_counter import ProductionCounterResolver, line_counter_delta
from app.services.sequence_extractor import extract_machine_state_sequences
from app.utils.exceptions import (
    LineMetricsException,
    MetricsCalculationError,
    NotFoundError,
    UnresolvedError,
    is_degradable,
)
from app.utils.async_utils import gather_all
from app.utils.instrumentation import (
    DEGRADED_QUANTITIES,
    METRICS_COMPUTATION_SECONDS,
    METRICS_COMPUTATIONS,
)
from app.utils.time_utils import ensure_utc, finite_or_zero, safe_divide, utcnow, whole_minutes_between

logger = structlog.get_logger()

DOWNTIME_STATE_CODES = (MachineState.STOPPED, MachineState.EQUIPMENT_FAILURE)


@dataclass
class CascadeInputs:
    """Resolved quantities the cascade is evaluated from."""
    batch_duration: float = 0
    product_count: float = 0
    design_speed: float = 0
    lost_units: float = 0
    produced_units: float = 0
    udt: float = 0
    tailback_time: float = 0
    lack_time: float = 0


def value_operating_time(product_count: float, design_speed: float) -> float:
    """VOT in minutes; 0 when the design speed is unknown."""
    if not design_speed:
        return 0.0
    return safe_divide(product_count, design_speed / 60)


def quality_loss(lost_units: float, produced_units: float) -> float:
    return safe_divide(lost_units, produced_units) * 100


def compute_cascade(inputs: CascadeInputs) -> MetricsResult:
    """Evaluate the dependent metric chain in order."""
    batch_duration = finite_or_zero(inputs.batch_duration)

    vot = value_operating_time(inputs.product_count, inputs.design_speed)
    ql = quality_loss(inputs.lost_units, inputs.produced_units)
    net_operating_time = vot + ql

    udt = finite_or_zero(inputs.udt)
    got = batch_duration - udt
    slt = got - net_operating_time
    sl = slt - finite_or_zero(inputs.tailback_time) - finite_or_zero(inputs.lack_time)

    return MetricsResult(
        vot=vot,
        ql=ql,
        not_=net_operating_time,
        udt=udt,
        got=got,
        slt=slt,
        sl=sl,
        batch_duration=batch_duration
    )


def clip_to_window(events: Iterable[Any], start: datetime, end: datetime) -> List[Interval]:
    """Restrict events to [start, end], dropping those entirely outside."""
    clipped = []
    for event in events:
        clipped_start = max(event.start, start)
        clipped_end = min(event.end, end)
        if clipped_start > clipped_end:
            continue
        clipped.append(Interval(start=clipped_start, end=clipped_end, source_id=event.source_id))
    return clipped


class KpiCascadeCalculator:
    """
    Orchestrates the resolvers and extractors for one job and evaluates the
    KPI cascade. Holds only collaborator references; every call builds its
    own state.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        jobs: JobRepository,
        config: ConfigurationRepository,
        breakdowns: BreakdownRepository,
        production_counter: Optional[ProductionCounterResolver] = None,
        design_speed_resolver: Optional[DesignSpeedResolver] = None
    ):
        self.store = store
        self.jobs = jobs
        self.config = config
        self.breakdowns = breakdowns
        self.production_counter = production_counter or ProductionCounterResolver(store)
        self.design_speed_resolver = design_speed_resolver or DesignSpeedResolver(config, store)

    async def _degrade(self, quantity: str, awaitable: Awaitable, default: Any = 0.0, **context) -> Any:
        """Await a lookup; NotFound/Unresolved failures degrade it to the default."""
        try:
            return await awaitable
        except LineMetricsException as e:
            if not is_degradable(e):
                raise
            DEGRADED_QUANTITIES.labels(quantity=quantity, reason=e.error_code).inc()
            logger.warning(
                "Quantity degraded to default",
                quantity=quantity,
                reason=e.error_code,
                error=e.message,
                **context
            )
            return default

    async def containers_per_pack(self, job: Job) -> float:
        if job.sku_id is None:
            return 1
        value = await self.config.containers_per_pack(job.sku_id)
        return value or 1

    async def product_count(
        self,
        job: Job,
        line_id: int,
        window: TimeWindow,
        net_production_override: Optional[float] = None
    ) -> float:
        """Net production override when given, otherwise the resolved counter delta."""
        if net_production_override is not None:
            return float(net_production_override)

        containers_per_pack = await self.containers_per_pack(job)
        resolved = await self.production_counter.resolve(line_id, window, containers_per_pack)
        if resolved.method == ProductionCountMethod.NONE:
            raise UnresolvedError("product count", {"line_id": line_id})
        return resolved.units

    async def design_speed(self, job: Job, line_id: int) -> float:
        resolved = await self.design_speed_resolver.resolve(job, line_id)
        if resolved.provenance == DesignSpeedProvenance.NONE:
            raise UnresolvedError("design speed", {"line_id": line_id, "sku_id": job.sku_id})
        return resolved.value

    async def unscheduled_downtime(self, job: Job, line_id: int, window: TimeWindow, now: datetime) -> float:
        """Merged breakdown minutes of every machine on the line within the job window."""
        merged = await self.merged_breakdowns(job, line_id, window, now)
        return merged_elapsed_minutes(merged)

    async def merged_breakdowns(
        self,
        job: Job,
        line_id: int,
        window: TimeWindow,
        now: Optional[datetime] = None
    ) -> List[MergedBreakdown]:
        machine_ids = await self.config.line_machine_ids(line_id)
        if not machine_ids:
            logger.warning("Line has no machines", line_id=line_id)
            return []

        events = await self.breakdowns.breakdown_events(
            job.id, machine_ids, settings.MIN_BREAKDOWN_DURATION_MINUTES
        )
        merged = merge_breakdowns(clip_to_window(events, window.start, window.upper_bound(now)))

        logger.debug(
            "Breakdowns merged",
            job_id=job.id,
            line_id=line_id,
            events=len(events),
            merged=len(merged)
        )
        return merged

    async def _machine_state_tag_id(self, machine_id: int) -> int:
        tag = await self.store.find_tag(TagOwnerType.MACHINE, machine_id, TagRef.MACHINE_STATE.value)
        if tag is None:
            raise NotFoundError("Machine state tag", machine_id)
        return tag.id

    async def state_duration(
        self,
        machine_id: int,
        window: TimeWindow,
        state_code: int,
        now: Optional[datetime] = None
    ) -> int:
        """Sample-count duration of a machine state within the window."""
        tag_id = await self._machine_state_tag_id(machine_id)
        extraction = await extract_machine_state_sequences(
            self.store, tag_id, window, state_code, source_id=machine_id, now=now
        )
        return extraction.sample_count_duration

    async def state_intervals(
        self,
        machine_id: int,
        window: TimeWindow,
        state_code: int,
        now: Optional[datetime] = None
    ) -> List[Interval]:
        """Intervals of a machine state within the window, for timeline builders."""
        tag_id = await self._machine_state_tag_id(machine_id)
        extraction = await extract_machine_state_sequences(
            self.store, tag_id, window, state_code, source_id=machine_id, now=now
        )
        return extraction.intervals

    async def machine_downtime_intervals(
        self,
        machine_id: int,
        window: TimeWindow,
        now: Optional[datetime] = None
    ) -> List[MergedBreakdown]:
        """Stopped and equipment-failure runs of one machine, merged."""
        tag_id = await self._machine_state_tag_id(machine_id)
        extractions = await gather_all(*[
            extract_machine_state_sequences(self.store, tag_id, window, code, source_id=machine_id, now=now)
            for code in DOWNTIME_STATE_CODES
        ])
        intervals = [interval for extraction in extractions for interval in extraction.intervals]
        return merge_breakdowns(intervals)

    async def compute_metrics(
        self,
        job_id: int,
        bottleneck_machine_id: int,
        line_id: int,
        net_production_override: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> MetricsResult:
        """
        Compute the KPI cascade for a job.

        A missing job, tag or configuration degrades the affected quantity to
        0. Engine exceptions such as DatabaseError propagate unchanged; any
        other failure is raised as MetricsCalculationError.
        """
        now = ensure_utc(now) if now is not None else utcnow()

        with METRICS_COMPUTATION_SECONDS.labels(entry_point="compute_metrics").time():
            try:
                job = await self.jobs.get_job(job_id)
                if job is None:
                    METRICS_COMPUTATIONS.labels(entry_point="compute_metrics", outcome="job_not_found").inc()
                    logger.warning("Job not found, returning zero metrics", job_id=job_id)
                    return MetricsResult()

                window = TimeWindow.for_job(job)
                context = {"job_id": job_id, "line_id": line_id}

                (
                    product_count,
                    design_speed,
                    lost_units,
                    produced_units,
                    udt,
                    tailback_time,
                    lack_time,
                ) = await gather_all(
                    self._degrade("product_count", self.product_count(job, line_id, window, net_production_override), **context),
                    self._degrade("design_speed", self.design_speed(job, line_id), **context),
                    self._degrade("lost_units", line_counter_delta(self.store, line_id, TagRef.REJECTED_UNITS, window), **context),
                    self._degrade("produced_units", line_counter_delta(self.store, line_id, TagRef.UNIT_COUNT, window), **context),
                    self._degrade("udt", self.unscheduled_downtime(job, line_id, window, now), **context),
                    self._degrade(
                        "tailback_time",
                        self.state_duration(bottleneck_machine_id, window, settings.TAILBACK_STATE_CODE, now),
                        **context
                    ),
                    self._degrade(
                        "lack_time",
                        self.state_duration(bottleneck_machine_id, window, settings.LACK_STATE_CODE, now),
                        **context
                    ),
                )

                inputs = CascadeInputs(
                    batch_duration=whole_minutes_between(job.actual_start_time, window.upper_bound(now)),
                    product_count=product_count,
                    design_speed=design_speed,
                    lost_units=lost_units,
                    produced_units=produced_units,
                    udt=udt,
                    tailback_time=tailback_time,
                    lack_time=lack_time
                )
                result = compute_cascade(inputs)

            except Exception as e:
                METRICS_COMPUTATIONS.labels(entry_point="compute_metrics", outcome="error").inc()
                logger.error(
                    "Failed to compute metrics",
                    error=str(e),
                    job_id=job_id,
                    bottleneck_machine_id=bottleneck_machine_id,
                    line_id=line_id
                )
                if isinstance(e, LineMetricsException):
                    raise
                raise MetricsCalculationError(job_id, "Failed to compute metrics", {"original_error": str(e)}) from e

        METRICS_COMPUTATIONS.labels(entry_point="compute_metrics", outcome="ok").inc()
        logger.info(
            "Metrics computed",
            job_id=job_id,
            line_id=line_id,
            bottleneck_machine_id=bottleneck_machine_id,
            live=window.is_live,
            net_production_override=net_production_override,
            product_count=product_count,
            design_speed=design_speed,
            vot=result.vot,
            ql=result.ql,
            net_operating_time=result.not_,
            udt=result.udt,
            got=result.got,
            slt=result.slt,
            sl=result.sl,
            batch_duration=result.batch_duration
        )
        return result

    async def compute_true_efficiency(
        self,
        program_id: int,
        job_id: int,
        line_id: int,
        net_production_override: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> TrueEfficiencyResult:
        """
        VOT measured against the program window.

        Returns zeros, and never raises, when the program or job is missing,
        the program is still open, or its end precedes its start.
        """
        now = ensure_utc(now) if now is not None else utcnow()

        with METRICS_COMPUTATION_SECONDS.labels(entry_point="compute_true_efficiency").time():
            try:
                program, job = await gather_all(
                    self.jobs.get_program(program_id),
                    self.jobs.get_job(job_id)
                )

                if program is None or job is None:
                    logger.warning(
                        "Missing program or job, true efficiency is 0",
                        program_id=program_id,
                        job_id=job_id,
                        program_found=program is not None,
                        job_found=job is not None
                    )
                    METRICS_COMPUTATIONS.labels(entry_point="compute_true_efficiency", outcome="not_found").inc()
                    return TrueEfficiencyResult()

                if program.start_date is None or program.is_open:
                    logger.info(
                        "Program window is open, true efficiency is 0",
                        program_id=program_id,
                        job_id=job_id
                    )
                    METRICS_COMPUTATIONS.labels(entry_point="compute_true_efficiency", outcome="open_program").inc()
                    return TrueEfficiencyResult()

                if program.end_date < program.start_date:
                    logger.warning(
                        "Program ends before it starts, true efficiency is 0",
                        program_id=program_id,
                        start_date=program.start_date,
                        end_date=program.end_date
                    )
                    METRICS_COMPUTATIONS.labels(entry_point="compute_true_efficiency", outcome="invalid_program").inc()
                    return TrueEfficiencyResult()

                job_window = TimeWindow.for_job(job)
                program_window = TimeWindow.for_program(program)
                context = {"job_id": job_id, "program_id": program_id, "line_id": line_id}

                product_count, design_speed = await gather_all(
                    self._degrade(
                        "product_count",
                        self.product_count(job, line_id, program_window, net_production_override),
                        **context
                    ),
                    self._degrade("design_speed", self.design_speed(job, line_id), **context),
                )

                production_time = whole_minutes_between(job.actual_start_time, job_window.upper_bound(now))
                program_duration = whole_minutes_between(program.start_date, program.end_date)
                vot = value_operating_time(product_count, design_speed)
                true_efficiency = round(safe_divide(vot, program_duration) * 100, 2)

            except Exception as e:
                METRICS_COMPUTATIONS.labels(entry_point="compute_true_efficiency", outcome="error").inc()
                logger.error(
                    "Failed to compute true efficiency, returning 0",
                    error=str(e),
                    program_id=program_id,
                    job_id=job_id,
                    line_id=line_id
                )
                return TrueEfficiencyResult()

        METRICS_COMPUTATIONS.labels(entry_point="compute_true_efficiency", outcome="ok").inc()
        logger.info(
            "True efficiency computed",
            program_id=program_id,
            job_id=job_id,
            line_id=line_id,
            value_operating_time=vot,
            production_time=production_time,
            program_duration=program_duration,
            true_efficiency=true_efficiency
        )
        return TrueEfficiencyResult(
            value_operating_time=vot,
            production_time=production_time,
            program_duration=program_duration,
            true_efficiency=true_efficiency
        )
