"""
Line Metrics Engine - Multi-Job Aggregation

Batch evaluation for reports covering many jobs. Jobs are evaluated
concurrently and independently: a failing job contributes a default result
and never blocks its siblings.
"""

import asyncio
from datetime import datetime
from typing import List, Optional, Sequence

import structlog

from app.models.metrics import (
    AggregatedTrueEfficiency,
    Job,
    MetricsBatchItem,
    MetricsBatchResponse,
    MetricsRequest,
    MetricsResult,
    TrueEfficiencyResult,
)
from app.services.kpi_calculator import KpiCascadeCalculator
from app.utils.time_utils import safe_divide

logger = structlog.get_logger()


class MetricsAggregator:
    """Fire-and-continue evaluation of many jobs."""

    def __init__(self, calculator: KpiCascadeCalculator):
        self.calculator = calculator

    async def compute_many(
        self,
        requests: Sequence[MetricsRequest],
        now: Optional[datetime] = None
    ) -> MetricsBatchResponse:
        """Compute metrics for every request; failed jobs get a default MetricsResult."""
        outcomes = await asyncio.gather(
            *[
                self.calculator.compute_metrics(
                    request.job_id,
                    request.bottleneck_machine_id,
                    request.line_id,
                    request.net_production_override,
                    now=now
                )
                for request in requests
            ],
            return_exceptions=True
        )

        items: List[MetricsBatchItem] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "Job metrics failed, using default result",
                    job_id=request.job_id,
                    line_id=request.line_id,
                    error=str(outcome),
                    exception_type=type(outcome).__name__
                )
                items.append(MetricsBatchItem(
                    job_id=request.job_id,
                    metrics=MetricsResult(),
                    succeeded=False,
                    error=str(outcome)
                ))
            else:
                items.append(MetricsBatchItem(job_id=request.job_id, metrics=outcome))

        failed = sum(1 for item in items if not item.succeeded)
        logger.info("Batch metrics computed", jobs=len(items), failed_jobs=failed)
        return MetricsBatchResponse(items=items, failed_jobs=failed)

    async def aggregate_true_efficiency(
        self,
        jobs: Sequence[Job],
        now: Optional[datetime] = None
    ) -> AggregatedTrueEfficiency:
        """
        Duration-weighted true efficiency: (sum of VOT / sum of program durations) x 100.

        Jobs without a program, or whose calculation fails, are counted as
        failed and left out of both sums.
        """
        if not jobs:
            return AggregatedTrueEfficiency()

        eligible = [job for job in jobs if job.program_id is not None]
        failed = len(jobs) - len(eligible)
        for job in jobs:
            if job.program_id is None:
                logger.warning("Job has no program, skipped in true efficiency", job_id=job.id)

        outcomes = await asyncio.gather(
            *[
                self.calculator.compute_true_efficiency(job.program_id, job.id, job.line_id, now=now)
                for job in eligible
            ],
            return_exceptions=True
        )

        results: List[TrueEfficiencyResult] = []
        for job, outcome in zip(eligible, outcomes):
            if isinstance(outcome, Exception):
                failed += 1
                logger.warning(
                    "True efficiency failed for job",
                    job_id=job.id,
                    error=str(outcome)
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)

        if not results:
            return AggregatedTrueEfficiency(failed_jobs=failed)

        total_vot = sum(result.value_operating_time for result in results)
        total_program_duration = sum(result.program_duration for result in results)

        return AggregatedTrueEfficiency(
            true_efficiency=round(safe_divide(total_vot, total_program_duration) * 100, 2),
            job_count=len(results),
            total_vot=round(total_vot, 2),
            total_program_duration=round(total_program_duration, 2),
            failed_jobs=failed
        )
