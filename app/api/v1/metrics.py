"""
Line Metrics Engine - Metrics API Routes

This module provides read-only API endpoints over the KPI cascade: job
metrics, program-relative true efficiency and batch evaluation for reports.
"""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
import structlog

from app.models.metrics import (
    MetricsBatchResponse,
    MetricsRequest,
    MetricsResult,
    TrueEfficiencyResult,
)
from app.repositories.sql import (
    SQLBreakdownRepository,
    SQLConfigurationRepository,
    SQLJobRepository,
    SQLTimeSeriesStore,
)
from app.services.kpi_calculator import KpiCascadeCalculator
from app.services.metrics_aggregator import MetricsAggregator
from app.utils.exceptions import ValidationError

logger = structlog.get_logger()

router = APIRouter()

MAX_BATCH_SIZE = 500


def get_calculator() -> KpiCascadeCalculator:
    """Calculator wired to the database-backed collaborators."""
    return KpiCascadeCalculator(
        store=SQLTimeSeriesStore(),
        jobs=SQLJobRepository(),
        config=SQLConfigurationRepository(),
        breakdowns=SQLBreakdownRepository()
    )


def get_aggregator(calculator: KpiCascadeCalculator = Depends(get_calculator)) -> MetricsAggregator:
    return MetricsAggregator(calculator)


@router.get(
    "/jobs/{job_id}",
    response_model=MetricsResult,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK
)
async def get_job_metrics(
    job_id: int,
    bottleneck_machine_id: int = Query(..., description="Machine governing line availability"),
    line_id: int = Query(..., description="Production line of the job"),
    net_production: Optional[float] = Query(None, ge=0, description="Net production override in units"),
    calculator: KpiCascadeCalculator = Depends(get_calculator)
) -> MetricsResult:
    """Compute the KPI cascade for a job. Live jobs are evaluated up to now."""
    result = await calculator.compute_metrics(
        job_id=job_id,
        bottleneck_machine_id=bottleneck_machine_id,
        line_id=line_id,
        net_production_override=net_production
    )

    logger.debug("Job metrics served via API", job_id=job_id, line_id=line_id)
    return result


@router.get(
    "/programs/{program_id}/jobs/{job_id}/true-efficiency",
    response_model=TrueEfficiencyResult,
    status_code=status.HTTP_200_OK
)
async def get_true_efficiency(
    program_id: int,
    job_id: int,
    line_id: int = Query(..., description="Production line of the job"),
    net_production: Optional[float] = Query(None, ge=0, description="Net production override in units"),
    calculator: KpiCascadeCalculator = Depends(get_calculator)
) -> TrueEfficiencyResult:
    """VOT measured against the program window; zeros for open programs."""
    return await calculator.compute_true_efficiency(
        program_id=program_id,
        job_id=job_id,
        line_id=line_id,
        net_production_override=net_production
    )


@router.post("/batch", response_model=MetricsBatchResponse, status_code=status.HTTP_200_OK)
async def compute_batch_metrics(
    requests: List[MetricsRequest] = Body(..., description="Jobs to evaluate"),
    aggregator: MetricsAggregator = Depends(get_aggregator)
) -> MetricsBatchResponse:
    """Evaluate many jobs; a failing job yields a default result instead of failing the batch."""
    if len(requests) > MAX_BATCH_SIZE:
        raise ValidationError(
            "Too many jobs in batch",
            {"max_batch_size": MAX_BATCH_SIZE, "received": len(requests)}
        )

    return await aggregator.compute_many(requests)
