"""Tests for app.services.kpi_calculator."""

import asyncio
import math

import pytest

from app.models.metrics import Job, MachineState, MetricsResult, Program, TagOwnerType, TagRef, TimeWindow
from app.services.kpi_calculator import (
    CascadeInputs,
    clip_to_window,
    compute_cascade,
    quality_loss,
    value_operating_time,
)
from app.utils.exceptions import DatabaseError, MetricsCalculationError
from tests.conftest import BOTTLENECK_ID, LINE_ID, OTHER_MACHINE_ID, SKU_ID, at, state_samples

SCENARIO_A = CascadeInputs(
    batch_duration=480,
    product_count=400,
    design_speed=60,
    lost_units=20,
    produced_units=400,
    udt=30,
    tailback_time=5,
    lack_time=3
)


def assert_all_finite(result: MetricsResult):
    for value in result.model_dump().values():
        assert math.isfinite(value)


class TestComputeCascade:

    def test_scenario_a(self):
        result = compute_cascade(SCENARIO_A)

        assert result.vot == 400
        assert result.ql == 5
        assert result.not_ == 405
        assert result.batch_duration == 480
        assert result.udt == 30
        assert result.got == 450
        assert result.slt == 45
        assert result.sl == 37

    def test_identities(self):
        result = compute_cascade(SCENARIO_A)
        assert result.got + result.udt == result.batch_duration
        assert result.slt + result.not_ == result.got

    def test_zero_design_speed(self):
        inputs = CascadeInputs(**{**SCENARIO_A.__dict__, "design_speed": 0})
        result = compute_cascade(inputs)

        assert result.vot == 0
        assert result.not_ == result.ql == 5
        assert_all_finite(result)

    @pytest.mark.parametrize("product_count", [0, 400, 1e9])
    def test_zero_design_speed_independent_of_product_count(self, product_count):
        assert value_operating_time(product_count, 0) == 0

    def test_zero_product_count(self):
        inputs = CascadeInputs(**{**SCENARIO_A.__dict__, "product_count": 0, "produced_units": 0})
        result = compute_cascade(inputs)

        assert result.vot == 0
        assert result.ql == 0
        assert result.not_ == 0
        assert result.got == 450
        assert result.slt == 450
        assert result.sl == 442
        assert_all_finite(result)

    def test_non_finite_inputs_never_leak(self):
        result = compute_cascade(CascadeInputs(
            batch_duration=float("nan"),
            product_count=float("inf"),
            design_speed=60,
            lost_units=1,
            produced_units=float("inf"),
            udt=float("nan")
        ))
        assert_all_finite(result)

    def test_vot_formula_is_units_over_speed_per_sixty(self):
        assert value_operating_time(120, 30) == 240

    def test_quality_loss_percentage(self):
        assert quality_loss(5, 200) == 2.5
        assert quality_loss(5, 0) == 0

    def test_serializes_not_field(self):
        assert "not" in MetricsResult(not_=3).model_dump(by_alias=True)


class TestClipToWindow:

    def test_clips_and_drops(self):
        from app.models.metrics import BreakdownEvent

        events = [
            BreakdownEvent(start=at(-20), end=at(10), source_id=1),
            BreakdownEvent(start=at(50), end=at(70), source_id=2),
            BreakdownEvent(start=at(80), end=at(90), source_id=3),
        ]
        clipped = clip_to_window(events, at(0), at(60))

        assert [(i.start, i.end, i.source_id) for i in clipped] == [
            (at(0), at(10), 1),
            (at(50), at(60), 2),
        ]


class TestComputeMetrics:

    @pytest.mark.asyncio
    async def test_scenario_a_end_to_end(self, calculator, eight_hour_line):
        result = await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert result.vot == 400
        assert result.ql == 5
        assert result.not_ == 405
        assert result.batch_duration == 480
        assert result.udt == 30
        assert result.got == 450
        assert result.slt == 45
        assert result.sl == 37

    @pytest.mark.asyncio
    async def test_net_production_override(self, calculator, eight_hour_line):
        result = await calculator.compute_metrics(
            eight_hour_line.id, BOTTLENECK_ID, LINE_ID, net_production_override=600
        )
        assert result.vot == 600

    @pytest.mark.asyncio
    async def test_case_counter_uses_sku_containers_per_pack(self, calculator, eight_hour_line, store, config):
        config.packs[SKU_ID] = 12
        store.add_tag(TagOwnerType.LINE, LINE_ID, TagRef.CASE_COUNT, [(0, 100), (480, 150)])

        result = await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert result.vot == 600

    @pytest.mark.asyncio
    async def test_scenario_c_unknown_design_speed(self, calculator, eight_hour_line, config):
        config.speeds_by_sku.clear()

        result = await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert result.vot == 0
        assert result.not_ == result.ql == 5
        assert result.got == 450
        assert_all_finite(result)

    @pytest.mark.asyncio
    async def test_breakdowns_clipped_to_job_window(self, calculator, eight_hour_line, breakdowns):
        breakdowns.add(eight_hour_line.id, OTHER_MACHINE_ID, 470, 520)

        result = await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert result.udt == 40
        assert result.got + result.udt == result.batch_duration

    @pytest.mark.asyncio
    async def test_breakdowns_of_other_lines_ignored(self, calculator, eight_hour_line, breakdowns):
        breakdowns.add(eight_hour_line.id, 99, 0, 100)

        result = await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert result.udt == 30

    @pytest.mark.asyncio
    async def test_missing_job_returns_zero_metrics(self, calculator):
        result = await calculator.compute_metrics(404, BOTTLENECK_ID, LINE_ID)
        assert result == MetricsResult()

    @pytest.mark.asyncio
    async def test_missing_machine_state_tag_degrades_to_zero(self, calculator, eight_hour_line):
        result = await calculator.compute_metrics(eight_hour_line.id, OTHER_MACHINE_ID, LINE_ID)

        assert result.slt == 45
        assert result.sl == 45

    @pytest.mark.asyncio
    async def test_store_failure_raises_calculation_error(self, calculator, eight_hour_line, breakdowns):
        breakdowns.failing_jobs.add(eight_hour_line.id)

        with pytest.raises(MetricsCalculationError):
            await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

    @pytest.mark.asyncio
    async def test_failure_waits_for_sibling_lookups(self, calculator, eight_hour_line, breakdowns):
        breakdowns.failing_jobs.add(eight_hour_line.id)
        before = asyncio.all_tasks()

        with pytest.raises(MetricsCalculationError):
            await calculator.compute_metrics(eight_hour_line.id, BOTTLENECK_ID, LINE_ID)

        assert asyncio.all_tasks() == before

    @pytest.mark.asyncio
    async def test_database_error_propagates_unchanged(self, calculator, jobs, monkeypatch):
        async def unavailable(job_id):
            raise DatabaseError("Database operation failed")

        monkeypatch.setattr(jobs, "get_job", unavailable)

        with pytest.raises(DatabaseError):
            await calculator.compute_metrics(1, BOTTLENECK_ID, LINE_ID)

    @pytest.mark.asyncio
    async def test_durations_truncate_to_whole_minutes(self, calculator, jobs, config, breakdowns):
        job = jobs.add_job(Job(
            id=102, line_id=LINE_ID, sku_id=SKU_ID,
            actual_start_time=at(0), actual_end_time=at(480.5)
        ))
        config.speeds_by_sku[(LINE_ID, SKU_ID)] = 60
        breakdowns.add(job.id, BOTTLENECK_ID, 10, 30.5)

        result = await calculator.compute_metrics(job.id, BOTTLENECK_ID, LINE_ID, net_production_override=100)

        assert result.batch_duration == 480
        assert result.udt == 20
        assert result.got == 460

    @pytest.mark.asyncio
    async def test_scenario_d_live_job(self, calculator, jobs, store, config):
        job = jobs.add_job(Job(id=101, line_id=LINE_ID, sku_id=SKU_ID, actual_start_time=at(0)))
        config.speeds_by_sku[(LINE_ID, SKU_ID)] = 60
        store.add_tag(TagOwnerType.LINE, LINE_ID, TagRef.UNIT_COUNT, [(0, 100), (60, 160), (110, 210)])
        store.add_tag(
            TagOwnerType.MACHINE, BOTTLENECK_ID, TagRef.MACHINE_STATE,
            state_samples(120, {MachineState.LACK: range(30, 34)})
        )

        result = await calculator.compute_metrics(job.id, BOTTLENECK_ID, LINE_ID, now=at(120))

        assert result.batch_duration == 120
        assert result.vot == 110
        assert result.udt == 0
        assert result.got == 120
        assert result.slt == 10
        assert result.sl == 6
        assert "latest_sample" in store.calls


class TestStateIntervals:

    @pytest.mark.asyncio
    async def test_state_intervals_for_timeline(self, calculator, eight_hour_line):
        window = TimeWindow.for_job(eight_hour_line)

        intervals = await calculator.state_intervals(BOTTLENECK_ID, window, MachineState.TAILBACK)

        assert [(i.start, i.end) for i in intervals] == [(at(100), at(104))]

    @pytest.mark.asyncio
    async def test_machine_downtime_intervals_merge_stopped_and_failure(self, calculator, store, jobs):
        store.add_tag(
            TagOwnerType.MACHINE, OTHER_MACHINE_ID, TagRef.MACHINE_STATE,
            state_samples(60, {
                MachineState.STOPPED: range(10, 15),
                MachineState.EQUIPMENT_FAILURE: range(15, 20),
            })
        )
        window = TimeWindow(start=at(0), end=at(59))

        merged = await calculator.machine_downtime_intervals(OTHER_MACHINE_ID, window)

        assert len(merged) == 2
        assert (merged[0].start, merged[0].end) == (at(10), at(14))
        assert (merged[1].start, merged[1].end) == (at(15), at(19))


class TestComputeTrueEfficiency:

    @pytest.mark.asyncio
    async def test_uses_program_window_for_production(self, calculator, jobs, store, config):
        jobs.add_program(Program(id=200, start_date=at(-60), end_date=at(540)))
        job = jobs.add_job(Job(
            id=100, line_id=LINE_ID, sku_id=SKU_ID, program_id=200,
            actual_start_time=at(0), actual_end_time=at(480)
        ))
        config.speeds_by_sku[(LINE_ID, SKU_ID)] = 60
        config.packs[SKU_ID] = 10
        store.add_tag(TagOwnerType.LINE, LINE_ID, TagRef.CASE_COUNT, [(-60, 0), (0, 10), (480, 50), (540, 60)])

        result = await calculator.compute_true_efficiency(200, job.id, LINE_ID)

        assert result.value_operating_time == 600
        assert result.production_time == 480
        assert result.program_duration == 600
        assert result.true_efficiency == 100.0

    @pytest.mark.asyncio
    async def test_override_and_rounding(self, calculator, jobs, config, eight_hour_line):
        jobs.add_program(Program(id=200, start_date=at(0), end_date=at(900)))

        result = await calculator.compute_true_efficiency(200, eight_hour_line.id, LINE_ID, net_production_override=400)

        assert result.value_operating_time == 400
        assert result.true_efficiency == 44.44

    @pytest.mark.asyncio
    async def test_program_and_production_time_truncate(self, calculator, jobs, eight_hour_line):
        jobs.add_program(Program(id=200, start_date=at(0), end_date=at(800.9)))

        result = await calculator.compute_true_efficiency(200, eight_hour_line.id, LINE_ID, net_production_override=400)

        assert result.program_duration == 800
        assert result.production_time == 480
        assert result.true_efficiency == 50.0

    @pytest.mark.asyncio
    async def test_open_program_returns_zeros(self, calculator, jobs, eight_hour_line):
        jobs.add_program(Program(id=200, start_date=at(0)))

        result = await calculator.compute_true_efficiency(200, eight_hour_line.id, LINE_ID)

        assert result.true_efficiency == 0
        assert result.program_duration == 0
        assert result.value_operating_time == 0

    @pytest.mark.asyncio
    async def test_program_ending_before_start_returns_zeros(self, calculator, jobs, eight_hour_line):
        jobs.add_program(Program(id=200, start_date=at(100), end_date=at(0)))

        result = await calculator.compute_true_efficiency(200, eight_hour_line.id, LINE_ID)

        assert result.true_efficiency == 0

    @pytest.mark.asyncio
    async def test_missing_program_returns_zeros(self, calculator, eight_hour_line):
        result = await calculator.compute_true_efficiency(999, eight_hour_line.id, LINE_ID)
        assert result.true_efficiency == 0

    @pytest.mark.asyncio
    async def test_zero_length_program_is_zero(self, calculator, jobs, eight_hour_line):
        jobs.add_program(Program(id=200, start_date=at(0), end_date=at(0)))

        result = await calculator.compute_true_efficiency(200, eight_hour_line.id, LINE_ID, net_production_override=400)

        assert result.true_efficiency == 0
        assert result.value_operating_time == 400
