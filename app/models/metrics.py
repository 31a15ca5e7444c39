"""
Line Metrics Engine - Metrics Models

This module defines Pydantic models for the OEE metrics engine: tag samples,
state intervals, breakdowns, jobs and programs as read from the external
stores, the resolved inputs of the KPI cascade and its results.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, List, Optional, Set, Union

from pydantic import BaseModel, Field, validator, root_validator

from app.utils.time_utils import ensure_utc, utcnow, whole_minutes_between


class MachineState(IntEnum):
    """Machine state codes reported on the machine-state tag."""
    NO_BATCH = 0
    STOPPED = 1
    STARTING = 2
    PREPARED = 4
    LACK = 8
    TAILBACK = 16
    LACK_BRANCH_LINE = 32
    TAILBACK_BRANCH_LINE = 64
    OPERATING = 128
    STOPPING = 256
    ABORTING = 512
    EQUIPMENT_FAILURE = 1024
    EXTERNAL_FAILURE = 2048
    EMERGENCY_STOP = 4096
    HOLDING = 8192
    HELD = 16384
    IDLE = 32768


class TagRef(str, Enum):
    """Tag reference values identifying a tag's role on its line or machine."""
    BREAKDOWN = "bd"
    MACHINE_STATE = "mchnst"
    FIRST_FAULT = "alarm"
    UNIT_COUNT = "bc"
    REJECTED_UNITS = "lost"
    CURRENT_SPEED = "flspd"
    RECIPE = "rcpn"
    CASE_COUNT = "csct"
    PALLET_COUNT = "pltsct"
    CURRENT_PROGRAM = "prgm"
    UNITS_PLANNED = "bp"
    BATCH_ACTIVE = "bac"


class TagOwnerType(str, Enum):
    """Entity type a tag is attached to."""
    LINE = "line"
    MACHINE = "machine"


class ProductionCountMethod(str, Enum):
    """How net production was resolved."""
    CASE_BASED = "case-based"
    UNIT_BASED = "unit-based"
    NONE = "none"


class DesignSpeedProvenance(str, Enum):
    """Which configuration lookup produced the design speed."""
    SKU_EXACT = "sku-exact"
    RECIPE_NAME_FALLBACK = "recipe-name-fallback"
    NONE = "none"


# Base models
class BaseMetricsModel(BaseModel):
    """Base model for metrics entities."""

    class Config:
        from_attributes = True
        populate_by_name = True
        frozen = True


class Tag(BaseMetricsModel):
    """A named sensor or counter channel."""
    id: int
    owner_type: TagOwnerType
    owner_id: int
    ref: str
    name: Optional[str] = None


class TimeSample(BaseMetricsModel):
    """A single time-stamped tag reading."""
    timestamp: datetime
    value: Union[float, int, str, None] = None

    @validator("timestamp")
    def normalize_timestamp(cls, v):
        return ensure_utc(v)

    def as_code(self) -> Optional[int]:
        """Leading integer of the value, or None when it is not numeric."""
        try:
            return int(float(self.value))
        except (TypeError, ValueError):
            return None

    def as_number(self) -> Optional[float]:
        try:
            return float(self.value)
        except (TypeError, ValueError):
            return None


class Interval(BaseMetricsModel):
    """A contiguous run of one state code on one tag."""
    start: datetime
    end: datetime
    source_id: Optional[Any] = None
    code: Optional[int] = None

    @validator("start", "end")
    def normalize_bounds(cls, v):
        return ensure_utc(v)

    @root_validator(skip_on_failure=True)
    def check_ordering(cls, values):
        if values["start"] > values["end"]:
            raise ValueError("interval start must not be after its end")
        return values


class BreakdownEvent(BaseMetricsModel):
    """A machine alarm event as read from the breakdown repository."""
    start: datetime
    end: datetime
    source_id: Any
    duration: Optional[float] = None
    alarm_code: Optional[str] = None

    @validator("start", "end")
    def normalize_bounds(cls, v):
        return ensure_utc(v)


class MergedBreakdown(BaseMetricsModel):
    """Union of overlapping breakdown events across machines."""
    start: datetime
    end: datetime
    contributing_source_ids: Set[Any] = Field(default_factory=set)

    @property
    def elapsed_minutes(self) -> int:
        """Whole minutes covered by the window, truncated like the line reports."""
        return whole_minutes_between(self.start, self.end)


class Job(BaseMetricsModel):
    """A production job as tracked by the job repository."""
    id: int
    line_id: int
    sku_id: Optional[int] = None
    program_id: Optional[int] = None
    actual_start_time: datetime
    actual_end_time: Optional[datetime] = None

    @validator("actual_start_time", "actual_end_time")
    def normalize_times(cls, v):
        return ensure_utc(v) if v is not None else v


class Program(BaseMetricsModel):
    """A scheduling window containing one or more jobs."""
    id: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @validator("start_date", "end_date")
    def normalize_dates(cls, v):
        return ensure_utc(v) if v is not None else v

    @property
    def is_open(self) -> bool:
        return self.end_date is None


class TimeWindow(BaseMetricsModel):
    """
    The "as-of" context threaded through every lookup.

    A window without an end is live: range queries run up to "now" and point
    lookups at the end take the most recent sample instead of the sample
    at-or-before the end.
    """
    start: datetime
    end: Optional[datetime] = None

    @validator("start", "end")
    def normalize_bounds(cls, v):
        return ensure_utc(v) if v is not None else v

    @property
    def is_live(self) -> bool:
        return self.end is None

    def upper_bound(self, now: Optional[datetime] = None) -> datetime:
        if self.end is not None:
            return self.end
        return ensure_utc(now) if now is not None else utcnow()

    @classmethod
    def for_job(cls, job: Job) -> "TimeWindow":
        return cls(start=job.actual_start_time, end=job.actual_end_time)

    @classmethod
    def for_program(cls, program: Program) -> "TimeWindow":
        return cls(start=program.start_date, end=program.end_date)


class ResolvedProductionCount(BaseMetricsModel):
    """Net production units and the counter strategy that produced them."""
    units: float = 0
    method: ProductionCountMethod = ProductionCountMethod.NONE
    cases_count: float = 0
    counter_reset: bool = False


class ResolvedDesignSpeed(BaseMetricsModel):
    """Design throughput in units per minute and where it came from."""
    value: float = 0
    provenance: DesignSpeedProvenance = DesignSpeedProvenance.NONE


class MetricsResult(BaseMetricsModel):
    """KPI cascade output. Minutes throughout, except QL which is a percentage."""
    vot: float = 0
    ql: float = 0
    not_: float = Field(default=0, alias="not")
    udt: float = 0
    got: float = 0
    slt: float = 0
    sl: float = 0
    batch_duration: float = 0


class TrueEfficiencyResult(BaseMetricsModel):
    """VOT measured against the program window."""
    value_operating_time: float = 0
    production_time: float = 0
    program_duration: float = 0
    true_efficiency: float = 0


class AggregatedTrueEfficiency(BaseMetricsModel):
    """Duration-weighted true efficiency over many jobs."""
    true_efficiency: float = 0
    job_count: int = 0
    total_vot: float = 0
    total_program_duration: float = 0
    failed_jobs: int = 0


class MetricsRequest(BaseMetricsModel):
    """One job of a batch metrics computation."""
    job_id: int
    bottleneck_machine_id: int
    line_id: int
    net_production_override: Optional[float] = None


class MetricsBatchItem(BaseMetricsModel):
    """A batch member's result; failed jobs carry the default result and the cause."""
    job_id: int
    metrics: MetricsResult
    succeeded: bool = True
    error: Optional[str] = None


class MetricsBatchResponse(BaseMetricsModel):
    items: List[MetricsBatchItem] = Field(default_factory=list)
    failed_jobs: int = 0

