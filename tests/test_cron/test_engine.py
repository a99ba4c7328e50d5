"""Tests für den Scheduler (Cron-Parsing, Zustandsübergänge, Persistenz)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from fnhost.core.dependencies import DependencyResolver
from fnhost.core.errors import ValidationError
from fnhost.core.executor import ExecutionEngine, ExecutionResult
from fnhost.core.store import ArtifactStore
from fnhost.cron.engine import Scheduler, _parse_cron_fields, _summarize

if TYPE_CHECKING:
    from fnhost.config import FnHostConfig


@pytest.fixture
def engine_mock() -> MagicMock:
    engine = MagicMock(spec=ExecutionEngine)
    engine.execute = AsyncMock(return_value=ExecutionResult(output="ok", result={"n": 1}))
    return engine


@pytest.fixture
def scheduler(initialized_config: FnHostConfig, engine_mock: MagicMock) -> Scheduler:
    return Scheduler(initialized_config, engine_mock)


def _add(scheduler: Scheduler, **overrides) -> str:
    data = {"functionName": "report", "cronExpression": "* * * * *", **overrides}
    return scheduler.add(data).id


# ============================================================================
# _parse_cron_fields / validate
# ============================================================================


class TestParseCronFields:
    def test_standard_five_fields(self) -> None:
        assert _parse_cron_fields("0 7 * * 1-5") == {
            "minute": "0",
            "hour": "7",
            "day": "*",
            "month": "*",
            "day_of_week": "mon,tue,wed,thu,fri",
        }

    def test_whitespace_handling(self) -> None:
        result = _parse_cron_fields("  30   12   *   *   0  ")
        assert result["minute"] == "30"
        assert result["day_of_week"] == "sun"

    @pytest.mark.parametrize("expr", ["", "0 7 *", "0 7 * * 1-5 extra"])
    def test_wrong_field_count(self, expr: str) -> None:
        with pytest.raises(ValidationError, match="expected 5 fields"):
            _parse_cron_fields(expr)


class TestDayOfWeek:
    @pytest.mark.parametrize(
        ("field", "expected"),
        [
            ("*", "*"),
            ("0", "sun"),
            ("7", "sun"),
            ("6", "sat"),
            ("1-5", "mon,tue,wed,thu,fri"),
            ("5-7", "fri,sat,sun"),
            ("0,7", "sun"),
            ("1,3,5", "mon,wed,fri"),
            ("*/2", "sun,tue,thu,sat"),
            ("1-5/2", "mon,wed,fri"),
            ("0/3", "sun,wed,sat"),
            ("mon-fri", "mon-fri"),
            ("SAT,0", "sat,sun"),
        ],
    )
    def test_translation(self, field: str, expected: str) -> None:
        assert _parse_cron_fields(f"0 9 * * {field}")["day_of_week"] == expected

    @pytest.mark.parametrize("field", ["8", "5-8", "5-2", "*/0", "1/x"])
    def test_rejected(self, field: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _parse_cron_fields(f"0 9 * * {field}")
        assert exc_info.value.error_code == "INVALID_CRON_EXPRESSION"

    @pytest.mark.parametrize(
        ("expr", "start", "weekday"),
        [
            # 2024-06-03 ist ein Montag
            ("0 9 * * 0", datetime(2024, 6, 3, tzinfo=timezone.utc), 6),
            ("0 9 * * 7", datetime(2024, 6, 3, tzinfo=timezone.utc), 6),
            ("0 9 * * 1-5", datetime(2024, 6, 8, tzinfo=timezone.utc), 0),
            ("0 9 * * 6", datetime(2024, 6, 3, tzinfo=timezone.utc), 5),
        ],
    )
    def test_next_fire_weekday(self, scheduler: Scheduler, expr: str, start: datetime, weekday: int) -> None:
        fire = scheduler._trigger(expr).get_next_fire_time(None, start)
        assert fire is not None
        assert fire.weekday() == weekday
        assert (fire.hour, fire.minute) == (9, 0)


class TestValidate:
    @pytest.mark.parametrize("expr", ["* * * * *", "*/15 9-17 1,15 1-6 mon-fri", "0 0 1 1 *", "0 9 * * 7"])
    def test_valid(self, scheduler: Scheduler, expr: str) -> None:
        scheduler.validate(expr)

    @pytest.mark.parametrize("expr", ["61 * * * *", "* 25 * * *", "* * * 13 *", "abc * * * *", "* * *", "* * * * 8"])
    def test_invalid(self, scheduler: Scheduler, expr: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            scheduler.validate(expr)
        assert exc_info.value.error_code == "INVALID_CRON_EXPRESSION"


# ============================================================================
# CRUD ohne laufenden Scheduler
# ============================================================================


class TestCrudOffline:
    def test_add_persists_snake_case(self, scheduler: Scheduler, initialized_config: FnHostConfig) -> None:
        schedule = scheduler.add({
            "functionName": "report",
            "cronExpression": "*/5 * * * *",
            "input": {"limit": 10},
            "description": "Bericht",
        })
        raw = yaml.safe_load(initialized_config.schedules_file.read_text())
        assert raw["schedules"] == [{
            "id": schedule.id,
            "function_name": "report",
            "cron_expression": "*/5 * * * *",
            "input": {"limit": 10},
            "active": True,
            "description": "Bericht",
        }]
        assert schedule.to_api()["functionName"] == "report"
        assert not scheduler.is_armed(schedule.id)

    def test_add_accepts_snake_case(self, scheduler: Scheduler) -> None:
        schedule = scheduler.add({"function_name": "report", "cron_expression": "0 * * * *"})
        assert schedule.cron_expression == "0 * * * *"

    def test_add_requires_fields(self, scheduler: Scheduler) -> None:
        with pytest.raises(ValidationError, match="required"):
            scheduler.add({"functionName": "report"})
        assert scheduler.list() == []

    def test_add_rejects_invalid_cron(self, scheduler: Scheduler) -> None:
        with pytest.raises(ValidationError):
            scheduler.add({"functionName": "report", "cronExpression": "every minute"})
        assert scheduler.list() == []

    def test_ids_are_unique_and_ordered(self, scheduler: Scheduler) -> None:
        ids = [_add(scheduler) for _ in range(5)]
        assert len(set(ids)) == 5
        assert [int(i) for i in ids] == sorted(int(i) for i in ids)
        assert [s.id for s in scheduler.list()] == ids

    def test_add_ignores_client_id(self, scheduler: Scheduler) -> None:
        schedule = scheduler.add({"id": "custom", "functionName": "f", "cronExpression": "* * * * *"})
        assert schedule.id != "custom"

    def test_update(self, scheduler: Scheduler) -> None:
        schedule_id = _add(scheduler)
        updated = scheduler.update(schedule_id, {"cron_expression": "0 12 * * *", "description": "mittags"})
        assert updated.cron_expression == "0 12 * * *"
        assert updated.function_name == "report"
        assert scheduler.get(schedule_id).description == "mittags"

    def test_update_refuses_id_change(self, scheduler: Scheduler) -> None:
        schedule_id = _add(scheduler)
        with pytest.raises(ValidationError, match="cannot be changed"):
            scheduler.update(schedule_id, {"id": "other"})

    def test_update_validates_before_touching(self, scheduler: Scheduler) -> None:
        schedule_id = _add(scheduler)
        with pytest.raises(ValidationError):
            scheduler.update(schedule_id, {"cronExpression": "nope"})
        assert scheduler.get(schedule_id).cron_expression == "* * * * *"

    def test_update_unknown(self, scheduler: Scheduler) -> None:
        assert scheduler.update("404", {"description": "x"}) is None

    def test_delete(self, scheduler: Scheduler) -> None:
        keep = _add(scheduler)
        drop = _add(scheduler)
        assert scheduler.delete(drop) is True
        assert [s.id for s in scheduler.list()] == [keep]
        assert scheduler.delete(drop) is False

    def test_deactivate_unknown_is_noop(self, scheduler: Scheduler) -> None:
        assert scheduler.deactivate("404") is False


# ============================================================================
# Lebenszyklus & Timer
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_empty_file(self, scheduler: Scheduler, initialized_config: FnHostConfig) -> None:
        try:
            assert await scheduler.start() == 0
            assert yaml.safe_load(initialized_config.schedules_file.read_text()) == {"schedules": []}
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_add_arms_when_running(self, scheduler: Scheduler) -> None:
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            assert scheduler.is_armed(schedule_id)
            inactive_id = _add(scheduler, active=False)
            assert not scheduler.is_armed(inactive_id)
            assert scheduler.get_next_run_times()[schedule_id] is not None
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_activate_then_deactivate_leaves_no_timer(self, scheduler: Scheduler) -> None:
        schedule_id = _add(scheduler, active=False)
        await scheduler.start()
        try:
            assert scheduler.activate(schedule_id) is True
            assert scheduler.is_armed(schedule_id)
            assert scheduler.get(schedule_id).active is True

            assert scheduler.deactivate(schedule_id) is True
            assert not scheduler.is_armed(schedule_id)
            assert scheduler.get(schedule_id).active is False
            assert scheduler.get_next_run_times() == {}
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_activate_is_idempotent(self, scheduler: Scheduler) -> None:
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            assert scheduler.activate(schedule_id) is True
            assert len(scheduler.get_next_run_times()) == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_restart_rearms_from_file(
        self, initialized_config: FnHostConfig, engine_mock: MagicMock
    ) -> None:
        first = Scheduler(initialized_config, engine_mock)
        await first.start()
        active_id = _add(first)
        inactive_id = _add(first, active=False)
        await first.stop()
        assert not first.is_armed(active_id)

        second = Scheduler(initialized_config, engine_mock)
        try:
            assert await second.start() == 1
            assert second.is_armed(active_id)
            assert not second.is_armed(inactive_id)
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_start_skips_invalid_records(
        self, initialized_config: FnHostConfig, engine_mock: MagicMock
    ) -> None:
        initialized_config.schedules_file.write_text(yaml.safe_dump({"schedules": [
            {"id": "1", "function_name": "a", "cron_expression": "bogus", "active": True},
            {"id": "2", "function_name": "b", "cron_expression": "0 * * * *", "active": True},
        ]}))
        scheduler = Scheduler(initialized_config, engine_mock)
        try:
            assert await scheduler.start() == 1
            assert scheduler.is_armed("2")
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_update_rearms_with_new_expression(self, scheduler: Scheduler) -> None:
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            scheduler.update(schedule_id, {"cronExpression": "0 0 1 1 *"})
            assert scheduler.is_armed(schedule_id)
            next_run = scheduler.get_next_run_times()[schedule_id]
            assert (next_run.month, next_run.day, next_run.hour, next_run.minute) == (1, 1, 0, 0)

            scheduler.update(schedule_id, {"active": False})
            assert not scheduler.is_armed(schedule_id)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_delete_disarms(self, scheduler: Scheduler) -> None:
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            scheduler.delete(schedule_id)
            assert not scheduler.is_armed(schedule_id)
        finally:
            await scheduler.stop()


# ============================================================================
# Ticks
# ============================================================================


class TestTick:
    @pytest.mark.asyncio
    async def test_trigger_now_passes_stored_input(self, scheduler: Scheduler, engine_mock: MagicMock) -> None:
        schedule_id = _add(scheduler, input={"limit": 3})
        result = await scheduler.trigger_now(schedule_id)
        engine_mock.execute.assert_awaited_once_with("report", {"limit": 3})
        assert result.result == {"n": 1}

    @pytest.mark.asyncio
    async def test_trigger_unknown(self, scheduler: Scheduler) -> None:
        assert await scheduler.trigger_now("404") is None

    @pytest.mark.asyncio
    async def test_tick_error_is_contained(self, scheduler: Scheduler, engine_mock: MagicMock) -> None:
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            engine_mock.execute.side_effect = RuntimeError("boom")
            assert await scheduler.trigger_now(schedule_id) is None
            assert scheduler.is_armed(schedule_id)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deleted_function_keeps_schedule(self, initialized_config: FnHostConfig) -> None:
        store = ArtifactStore(initialized_config)
        engine = ExecutionEngine(initialized_config, store, DependencyResolver(initialized_config))
        scheduler = Scheduler(initialized_config, engine)
        store.add("report", b"module.exports = () => 1;", ".js")
        await scheduler.start()
        try:
            schedule_id = _add(scheduler)
            store.delete("report")

            result = await scheduler.trigger_now(schedule_id)
            assert result.exit_code == 1
            assert "not found" in result.error
            assert scheduler.get(schedule_id) is not None
            assert scheduler.is_armed(schedule_id)
        finally:
            await scheduler.stop()


class TestSummarize:
    def test_prefers_result(self) -> None:
        assert _summarize(ExecutionResult(output="out", result=[1, 2])) == "[1, 2]"

    def test_truncates(self) -> None:
        summary = _summarize(ExecutionResult(output="x" * 500))
        assert summary == "x" * 100 + "..."
