"""
Line Metrics Engine - SQL Collaborators

Database-backed implementations of the collaborator interfaces, reading the
plant telemetry schema through `app.database.execute_query`.
"""

from datetime import datetime
from typing import Any, List, Optional, Sequence

import structlog

from app.database import execute_query, execute_scalar
from app.models.metrics import BreakdownEvent, Job, Program, Tag, TagOwnerType, TimeSample
from app.repositories.base import (
    BreakdownRepository,
    ConfigurationRepository,
    JobRepository,
    TimeSeriesStore,
)

logger = structlog.get_logger()


def _sample(row) -> Optional[TimeSample]:
    if row is None:
        return None
    return TimeSample(timestamp=row["createdAt"], value=row["value"])


class SQLTimeSeriesStore(TimeSeriesStore):
    """Tags and tag values."""

    async def find_tag(self, owner_type: TagOwnerType, owner_id: int, ref: str) -> Optional[Tag]:
        query = """
        SELECT id, "taggableType", "taggableId", ref, name
        FROM "Tags"
        WHERE "taggableType" = :owner_type
        AND "taggableId" = :owner_id
        AND ref = :ref
        LIMIT 1
        """
        rows = await execute_query(query, {
            "owner_type": TagOwnerType(owner_type).value,
            "owner_id": owner_id,
            "ref": ref
        })
        if not rows:
            return None
        row = rows[0]
        return Tag(
            id=row["id"],
            owner_type=row["taggableType"],
            owner_id=row["taggableId"],
            ref=row["ref"],
            name=row["name"]
        )

    async def samples(self, tag_id: int, start: datetime, end: datetime) -> List[TimeSample]:
        query = """
        SELECT value, "createdAt"
        FROM "TagValues"
        WHERE "tagId" = :tag_id
        AND "createdAt" BETWEEN :start AND :end
        ORDER BY "createdAt" ASC
        """
        rows = await execute_query(query, {"tag_id": tag_id, "start": start, "end": end})
        return [_sample(row) for row in rows]

    async def sample_at_or_before(self, tag_id: int, at: datetime) -> Optional[TimeSample]:
        query = """
        SELECT value, "createdAt"
        FROM "TagValues"
        WHERE "tagId" = :tag_id
        AND "createdAt" <= :at
        ORDER BY "createdAt" DESC
        LIMIT 1
        """
        rows = await execute_query(query, {"tag_id": tag_id, "at": at})
        return _sample(rows[0]) if rows else None

    async def sample_at_or_after(self, tag_id: int, at: datetime) -> Optional[TimeSample]:
        query = """
        SELECT value, "createdAt"
        FROM "TagValues"
        WHERE "tagId" = :tag_id
        AND "createdAt" >= :at
        ORDER BY "createdAt" ASC
        LIMIT 1
        """
        rows = await execute_query(query, {"tag_id": tag_id, "at": at})
        return _sample(rows[0]) if rows else None

    async def latest_sample(self, tag_id: int, since: Optional[datetime] = None) -> Optional[TimeSample]:
        query = """
        SELECT value, "createdAt"
        FROM "TagValues"
        WHERE "tagId" = :tag_id
        AND (CAST(:since AS TIMESTAMPTZ) IS NULL OR "createdAt" >= :since)
        ORDER BY "createdAt" DESC
        LIMIT 1
        """
        rows = await execute_query(query, {"tag_id": tag_id, "since": since})
        return _sample(rows[0]) if rows else None


class SQLJobRepository(JobRepository):

    async def get_job(self, job_id: int) -> Optional[Job]:
        query = """
        SELECT id, "lineId", "skuId", "programId", "actualStartTime", "actualEndTime"
        FROM "Jobs"
        WHERE id = :job_id
        """
        rows = await execute_query(query, {"job_id": job_id})
        if not rows:
            return None
        row = rows[0]
        if row["actualStartTime"] is None:
            logger.warning("Job has not started", job_id=job_id)
            return None
        return Job(
            id=row["id"],
            line_id=row["lineId"],
            sku_id=row["skuId"],
            program_id=row["programId"],
            actual_start_time=row["actualStartTime"],
            actual_end_time=row["actualEndTime"]
        )

    async def get_program(self, program_id: int) -> Optional[Program]:
        query = """
        SELECT id, "startDate", "endDate"
        FROM "Programs"
        WHERE id = :program_id
        """
        rows = await execute_query(query, {"program_id": program_id})
        if not rows:
            return None
        row = rows[0]
        return Program(id=row["id"], start_date=row["startDate"], end_date=row["endDate"])


class SQLConfigurationRepository(ConfigurationRepository):
    """Line recipes, design speeds, SKUs and line machines."""

    async def design_speed_for_sku(self, line_id: int, sku_id: int) -> Optional[Any]:
        query = """
        SELECT ds.value
        FROM "LineRecipies" lr
        JOIN "Recipes" r ON r.id = lr."recipieId"
        JOIN "DesignSpeeds" ds ON ds.id = lr."designSpeedId"
        WHERE lr."lineId" = :line_id
        AND r."skuId" = :sku_id
        ORDER BY lr.id ASC
        LIMIT 1
        """
        return await execute_scalar(query, {"line_id": line_id, "sku_id": sku_id})

    async def design_speed_for_sku_name(self, line_id: int, sku_name: str) -> Optional[Any]:
        query = """
        SELECT ds.value
        FROM "LineRecipies" lr
        JOIN "Recipes" r ON r.id = lr."recipieId"
        JOIN "Skus" s ON s.id = r."skuId"
        JOIN "DesignSpeeds" ds ON ds.id = lr."designSpeedId"
        WHERE lr."lineId" = :line_id
        AND s.name = :sku_name
        ORDER BY lr.id ASC
        LIMIT 1
        """
        return await execute_scalar(query, {"line_id": line_id, "sku_name": sku_name})

    async def containers_per_pack(self, sku_id: int) -> Optional[int]:
        query = """
        SELECT "numberOfContainersPerPack" FROM "Skus" WHERE id = :sku_id
        """
        return await execute_scalar(query, {"sku_id": sku_id})

    async def line_machine_ids(self, line_id: int) -> List[int]:
        query = """
        SELECT "machineId" FROM "LineMachines"
        WHERE "lineId" = :line_id AND "machineId" IS NOT NULL
        """
        rows = await execute_query(query, {"line_id": line_id})
        return [row["machineId"] for row in rows]


class SQLBreakdownRepository(BreakdownRepository):

    async def breakdown_events(
        self,
        job_id: int,
        machine_ids: Sequence[int],
        min_duration_minutes: float
    ) -> List[BreakdownEvent]:
        if not machine_ids:
            return []

        query = """
        SELECT "machineId", "alarmCode", "alarmStartDateTime", "alarmEndDateTime", duration
        FROM "AlarmAggregations"
        WHERE "jobId" = :job_id
        AND "machineId" = ANY(:machine_ids)
        AND duration >= :min_duration
        AND "alarmEndDateTime" IS NOT NULL
        ORDER BY "alarmStartDateTime" ASC
        """
        rows = await execute_query(query, {
            "job_id": job_id,
            "machine_ids": list(machine_ids),
            "min_duration": min_duration_minutes
        })
        return [
            BreakdownEvent(
                start=row["alarmStartDateTime"],
                end=row["alarmEndDateTime"],
                source_id=row["machineId"],
                duration=row["duration"],
                alarm_code=str(row["alarmCode"]) if row["alarmCode"] is not None else None
            )
            for row in rows
        ]
