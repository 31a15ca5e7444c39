"""
Line Metrics Engine - Collaborator Interfaces

Read-only interfaces to the stores the metrics engine consumes. The engine
depends only on these; `app.repositories.sql` provides the database-backed
implementations.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional, Sequence

from app.models.metrics import BreakdownEvent, Job, Program, Tag, TagOwnerType, TimeSample


class TimeSeriesStore(ABC):
    """Tag lookup and time-ordered tag samples."""

    @abstractmethod
    async def find_tag(self, owner_type: TagOwnerType, owner_id: int, ref: str) -> Optional[Tag]:
        ...

    @abstractmethod
    async def samples(self, tag_id: int, start: datetime, end: datetime) -> List[TimeSample]:
        """Samples with start <= timestamp <= end, ascending."""

    @abstractmethod
    async def sample_at_or_before(self, tag_id: int, at: datetime) -> Optional[TimeSample]:
        ...

    @abstractmethod
    async def sample_at_or_after(self, tag_id: int, at: datetime) -> Optional[TimeSample]:
        ...

    @abstractmethod
    async def latest_sample(self, tag_id: int, since: Optional[datetime] = None) -> Optional[TimeSample]:
        """Most recent sample, optionally restricted to timestamp >= since."""


class JobRepository(ABC):

    @abstractmethod
    async def get_job(self, job_id: int) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_program(self, program_id: int) -> Optional[Program]:
        ...


class ConfigurationRepository(ABC):
    """Line, recipe and SKU configuration."""

    @abstractmethod
    async def design_speed_for_sku(self, line_id: int, sku_id: int) -> Optional[Any]:
        """Raw design speed of the line recipe whose recipe links this SKU id."""

    @abstractmethod
    async def design_speed_for_sku_name(self, line_id: int, sku_name: str) -> Optional[Any]:
        """Raw design speed of the line recipe whose linked SKU has this name."""

    @abstractmethod
    async def containers_per_pack(self, sku_id: int) -> Optional[int]:
        ...

    @abstractmethod
    async def line_machine_ids(self, line_id: int) -> List[int]:
        ...


class BreakdownRepository(ABC):

    @abstractmethod
    async def breakdown_events(
        self,
        job_id: int,
        machine_ids: Sequence[int],
        min_duration_minutes: float
    ) -> List[BreakdownEvent]:
        """Alarm events of the given machines recorded against a job, at least min_duration long."""
