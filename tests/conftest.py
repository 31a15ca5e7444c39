"""Shared fixtures: in-memory collaborators for the metrics engine."""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from app.models.metrics import (
    BreakdownEvent,
    Job,
    MachineState,
    Program,
    Tag,
    TagOwnerType,
    TagRef,
    TimeSample,
)
from app.repositories.base import (
    BreakdownRepository,
    ConfigurationRepository,
    JobRepository,
    TimeSeriesStore,
)
from app.services.kpi_calculator import KpiCascadeCalculator

T0 = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)

LINE_ID = 1
BOTTLENECK_ID = 10
OTHER_MACHINE_ID = 11
SKU_ID = 7


def at(minutes: float) -> datetime:
    """T0 plus the given number of minutes."""
    return T0 + timedelta(minutes=minutes)


def samples(*pairs: Tuple[float, Any]) -> List[TimeSample]:
    return [TimeSample(timestamp=at(minute), value=value) for minute, value in pairs]


def state_samples(length: int, runs: Dict[int, Iterable[int]], default: int = MachineState.OPERATING) -> List[Tuple[float, int]]:
    """One sample per minute; runs maps a state code to the minutes carrying it."""
    codes = {}
    for code, minutes in runs.items():
        for minute in minutes:
            codes[minute] = code
    return [(minute, int(codes.get(minute, default))) for minute in range(length)]


class FakeTimeSeriesStore(TimeSeriesStore):

    def __init__(self):
        self.tags: List[Tag] = []
        self.values: Dict[int, List[TimeSample]] = defaultdict(list)
        self.calls: List[str] = []

    def add_tag(self, owner_type: TagOwnerType, owner_id: int, ref: TagRef, pairs: Sequence[Tuple[float, Any]] = ()) -> int:
        tag_id = len(self.tags) + 1
        self.tags.append(Tag(id=tag_id, owner_type=owner_type, owner_id=owner_id, ref=ref.value))
        self.values[tag_id] = sorted(samples(*pairs), key=lambda s: s.timestamp)
        return tag_id

    async def find_tag(self, owner_type, owner_id, ref) -> Optional[Tag]:
        for tag in self.tags:
            if tag.owner_type == owner_type and tag.owner_id == owner_id and tag.ref == ref:
                return tag
        return None

    async def samples(self, tag_id, start, end) -> List[TimeSample]:
        self.calls.append("samples")
        return [s for s in self.values[tag_id] if start <= s.timestamp <= end]

    async def sample_at_or_before(self, tag_id, at) -> Optional[TimeSample]:
        self.calls.append("sample_at_or_before")
        matching = [s for s in self.values[tag_id] if s.timestamp <= at]
        return matching[-1] if matching else None

    async def sample_at_or_after(self, tag_id, at) -> Optional[TimeSample]:
        self.calls.append("sample_at_or_after")
        matching = [s for s in self.values[tag_id] if s.timestamp >= at]
        return matching[0] if matching else None

    async def latest_sample(self, tag_id, since=None) -> Optional[TimeSample]:
        self.calls.append("latest_sample")
        matching = [s for s in self.values[tag_id] if since is None or s.timestamp >= since]
        return matching[-1] if matching else None


class FakeJobRepository(JobRepository):

    def __init__(self):
        self.jobs: Dict[int, Job] = {}
        self.programs: Dict[int, Program] = {}

    def add_job(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    def add_program(self, program: Program) -> Program:
        self.programs[program.id] = program
        return program

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def get_program(self, program_id):
        return self.programs.get(program_id)


class FakeConfigurationRepository(ConfigurationRepository):

    def __init__(self):
        self.speeds_by_sku: Dict[Tuple[int, int], Any] = {}
        self.speeds_by_sku_name: Dict[Tuple[int, str], Any] = {}
        self.packs: Dict[int, int] = {}
        self.machines: Dict[int, List[int]] = {}

    async def design_speed_for_sku(self, line_id, sku_id):
        return self.speeds_by_sku.get((line_id, sku_id))

    async def design_speed_for_sku_name(self, line_id, sku_name):
        return self.speeds_by_sku_name.get((line_id, sku_name))

    async def containers_per_pack(self, sku_id):
        return self.packs.get(sku_id)

    async def line_machine_ids(self, line_id):
        return self.machines.get(line_id, [])


class FakeBreakdownRepository(BreakdownRepository):

    def __init__(self):
        self.events: Dict[int, List[BreakdownEvent]] = defaultdict(list)
        self.failing_jobs: set = set()

    def add(self, job_id: int, machine_id: int, start_minute: float, end_minute: float):
        self.events[job_id].append(BreakdownEvent(
            start=at(start_minute),
            end=at(end_minute),
            source_id=machine_id,
            duration=end_minute - start_minute
        ))

    async def breakdown_events(self, job_id, machine_ids, min_duration_minutes):
        if job_id in self.failing_jobs:
            raise RuntimeError("alarm store unavailable")
        return [
            event for event in self.events[job_id]
            if event.source_id in machine_ids and event.duration >= min_duration_minutes
        ]


@pytest.fixture
def store():
    return FakeTimeSeriesStore()


@pytest.fixture
def jobs():
    return FakeJobRepository()


@pytest.fixture
def config():
    repo = FakeConfigurationRepository()
    repo.machines[LINE_ID] = [BOTTLENECK_ID, OTHER_MACHINE_ID]
    return repo


@pytest.fixture
def breakdowns():
    return FakeBreakdownRepository()


@pytest.fixture
def calculator(store, jobs, config, breakdowns):
    return KpiCascadeCalculator(store=store, jobs=jobs, config=config, breakdowns=breakdowns)


@pytest.fixture
def eight_hour_line(store, jobs, config, breakdowns):
    """
    A finished 480-minute job producing 400 units at 60 units/min design
    speed, 20 rejects, two overlapping breakdowns (30 merged minutes) and a
    bottleneck with 5 tailback and 3 lack samples.
    """
    job = jobs.add_job(Job(
        id=100,
        line_id=LINE_ID,
        sku_id=SKU_ID,
        program_id=200,
        actual_start_time=at(0),
        actual_end_time=at(480)
    ))
    config.speeds_by_sku[(LINE_ID, SKU_ID)] = 60
    store.add_tag(TagOwnerType.LINE, LINE_ID, TagRef.UNIT_COUNT, [(0, 1000), (240, 1200), (480, 1400)])
    store.add_tag(TagOwnerType.LINE, LINE_ID, TagRef.REJECTED_UNITS, [(0, 100), (480, 120)])
    store.add_tag(
        TagOwnerType.MACHINE,
        BOTTLENECK_ID,
        TagRef.MACHINE_STATE,
        state_samples(481, {
            MachineState.TAILBACK: range(100, 105),
            MachineState.LACK: range(200, 203),
        })
    )
    breakdowns.add(job.id, BOTTLENECK_ID, 120, 140)
    breakdowns.add(job.id, OTHER_MACHINE_ID, 135, 150)
    breakdowns.add(job.id, OTHER_MACHINE_ID, 300, 302)
    return job
