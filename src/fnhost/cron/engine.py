"""Scheduler: Cron-gesteuerte Funktionsaufrufe.

Nutzt APScheduler 3.x (AsyncIOScheduler) auf dem laufenden Event-Loop.
Jeder Tick ruft die Execution-Engine mit der gespeicherten Eingabe des
Zeitplans auf. Fehler eines Ticks werden protokolliert, der Timer
bleibt bestehen.

Die Registry ``schedule id → APScheduler job id`` wird bei ``start()``
vollständig aus schedules.yaml aufgebaut. Änderungen werden immer
zuerst auf die Platte geschrieben, dann in der Registry nachgezogen.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from fnhost.core.errors import PersistenceError, ValidationError
from fnhost.cron.jobs import ScheduleStore
from fnhost.models import Schedule, new_schedule_id
from fnhost.utils.logging import bind_context, clear_context, get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from fnhost.config import FnHostConfig
    from fnhost.core.executor import ExecutionEngine, ExecutionResult

log = get_logger(__name__)

SUMMARY_LENGTH = 100

# Felder, die ein Update nicht verändern darf
_IMMUTABLE_FIELDS = frozenset({"id"})
_FIELD_BY_ALIAS = {to_camel(name): name for name in Schedule.model_fields}


# Cron zählt 0 und 7 als Sonntag, APScheduler 0 als Montag
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _invalid_cron(expression: str, reason: str) -> ValidationError:
    return ValidationError(
        f"Invalid cron expression '{expression}': {reason}",
        error_code="INVALID_CRON_EXPRESSION",
    )


def _day_of_week_term(term: str, expression: str) -> list[str] | None:
    """Übersetzt einen numerischen Wochentag-Term in Namen.

    Unterstützt ``N``, ``A-B``, ``*/S``, ``A-B/S`` und ``A/S``.
    Liefert None für Terme ohne Zahlen (Namen, ``*``), die APScheduler
    unverändert versteht.
    """
    base, _, step_text = term.partition("/")
    if base == "*" and not step_text:
        return None
    low_text, _, high_text = base.partition("-")
    if base == "*":
        low, high = 0, 6
    elif low_text.isdigit() and (not high_text or high_text.isdigit()):
        low = int(low_text)
        if high_text:
            high = int(high_text)
        else:
            high = max(low, 6) if step_text else low
    else:
        return None

    if step_text and not step_text.isdigit():
        raise _invalid_cron(expression, f"invalid step in day-of-week term '{term}'")
    step = int(step_text) if step_text else 1
    if step < 1:
        raise _invalid_cron(expression, f"invalid step in day-of-week term '{term}'")
    if high > 7 or low > high:
        raise _invalid_cron(expression, f"day-of-week term '{term}' out of range 0-7")
    return [_WEEKDAY_NAMES[value] for value in range(low, high + 1, step)]


def _translate_day_of_week(field: str, expression: str) -> str:
    """Bildet das Cron-Wochentagsfeld auf APScheduler-Namen ab."""
    terms: list[str] = []
    for term in field.lower().split(","):
        names = _day_of_week_term(term, expression)
        for name in names if names is not None else [term]:
            if name not in terms:
                terms.append(name)
    return ",".join(terms)


def _parse_cron_fields(expression: str) -> dict[str, str]:
    """Zerlegt einen 5-Feld-Cron-Ausdruck in CronTrigger-Felder.

    Raises:
        ValidationError: Falsche Feldanzahl oder ungültiger Wochentag.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise _invalid_cron(expression, f"expected 5 fields, got {len(parts)}")
    return {
        "minute": parts[0],
        "hour": parts[1],
        "day": parts[2],
        "month": parts[3],
        "day_of_week": _translate_day_of_week(parts[4], expression),
    }


def _summarize(result: ExecutionResult) -> str:
    if result.result is not None:
        text = str(result.result)
    else:
        text = result.output or result.error
    if len(text) > SUMMARY_LENGTH:
        return text[:SUMMARY_LENGTH] + "..."
    return text


class Scheduler:
    """Verwaltet persistierte Zeitpläne und ihre aktiven Timer.

    Außerhalb von ``start()``/``stop()`` arbeiten alle Operationen nur
    auf der Datei; Timer werden erst beim Start scharf geschaltet.

    Attributes:
        store: Persistenz der Zeitplan-Liste.
        running: Ob der APScheduler läuft.
    """

    def __init__(self, config: FnHostConfig, engine: ExecutionEngine) -> None:
        self._config = config
        self._engine = engine
        self.store = ScheduleStore(config.schedules_file)
        self._scheduler: AsyncIOScheduler | None = None
        self._active: dict[str, str] = {}  # schedule id → APScheduler job id
        self.running = False

    # ------------------------------------------------------------------
    # Lebenszyklus
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Startet den Scheduler und aktiviert alle aktiven Zeitpläne.

        Returns:
            Anzahl scharf geschalteter Timer.
        """
        if self.running:
            log.warning("scheduler_already_running")
            return len(self._active)

        self._scheduler = AsyncIOScheduler(timezone=self._config.scheduler.timezone)
        self._scheduler.start()
        self.running = True
        self._active.clear()

        self.store.ensure_file()
        try:
            schedules = self.store.load()
        except PersistenceError as exc:
            log.error("schedule_load_failed", error=exc.message)
            schedules = []

        for schedule in schedules:
            if not schedule.active:
                continue
            try:
                self._arm(schedule)
            except ValidationError as exc:
                log.error("schedule_skipped", schedule_id=schedule.id, error=exc.message)

        log.info("scheduler_started", armed=len(self._active), total=len(schedules))
        return len(self._active)

    async def stop(self) -> None:
        if not self.running:
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._active.clear()
        self.running = False
        log.info("scheduler_stopped")

    # ------------------------------------------------------------------
    # Validierung & Timer
    # ------------------------------------------------------------------

    def _trigger(self, expression: str) -> CronTrigger:
        fields = _parse_cron_fields(expression)
        try:
            return CronTrigger(**fields, timezone=self._config.scheduler.timezone)
        except ValueError as exc:
            raise _invalid_cron(expression, str(exc)) from exc

    def validate(self, cron_expression: str) -> None:
        """Prüft einen Cron-Ausdruck.

        Raises:
            ValidationError: Ausdruck ist ungültig.
        """
        self._trigger(cron_expression)

    def _arm(self, schedule: Schedule) -> bool:
        """Registriert einen Timer. Nur bei laufendem Scheduler."""
        trigger = self._trigger(schedule.cron_expression)
        if self._scheduler is None or schedule.id in self._active:
            return False

        job = self._scheduler.add_job(
            self._run_tick,
            trigger=trigger,
            args=[schedule],
            id=f"fnhost-schedule-{schedule.id}",
            name=schedule.function_name,
            replace_existing=True,
            max_instances=self._config.scheduler.max_instances,
            misfire_grace_time=self._config.scheduler.misfire_grace_seconds,
            coalesce=True,
        )
        self._active[schedule.id] = job.id
        log.info(
            "schedule_armed",
            schedule_id=schedule.id,
            function=schedule.function_name,
            cron=schedule.cron_expression,
        )
        return True

    def _disarm(self, schedule_id: str) -> bool:
        job_id = self._active.pop(schedule_id, None)
        if job_id is None:
            return False
        if self._scheduler is not None:
            with contextlib.suppress(JobLookupError):
                self._scheduler.remove_job(job_id)
        log.info("schedule_disarmed", schedule_id=schedule_id)
        return True

    def is_armed(self, schedule_id: str) -> bool:
        return schedule_id in self._active

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _run_tick(self, schedule: Schedule) -> ExecutionResult | None:
        bind_context(schedule_id=schedule.id, function=schedule.function_name)
        try:
            log.info("schedule_tick", cron=schedule.cron_expression)
            result = await self._engine.execute(schedule.function_name, schedule.input)
            if result.success:
                log.info("schedule_tick_done", exit_code=result.exit_code, summary=_summarize(result))
            else:
                log.warning("schedule_tick_failed", exit_code=result.exit_code, summary=_summarize(result))
            return result
        except Exception:
            log.exception("schedule_tick_error")
            return None
        finally:
            clear_context()

    async def trigger_now(self, schedule_id: str) -> ExecutionResult | None:
        """Führt einen Zeitplan sofort einmal aus (unabhängig vom Cron-Ausdruck).

        Returns:
            Ergebnis des Aufrufs, oder None wenn die ID unbekannt ist.
        """
        schedule = self.store.get(schedule_id)
        if schedule is None:
            return None
        return await self._run_tick(schedule)

    # ------------------------------------------------------------------
    # Zustandsübergänge
    # ------------------------------------------------------------------

    def activate(self, schedule: Schedule | str) -> bool:
        """Aktiviert einen Zeitplan (persistiert ``active: true``, dann Timer).

        No-op, wenn bereits ein Timer existiert.

        Returns:
            True wenn der Zeitplan existiert.

        Raises:
            ValidationError: Ungültiger Cron-Ausdruck.
        """
        if isinstance(schedule, str):
            found = self.store.get(schedule)
            if found is None:
                return False
            schedule = found

        if self.is_armed(schedule.id):
            return True

        self.validate(schedule.cron_expression)
        updated = self.store.set_active(schedule.id, True)
        if updated is None:
            return False
        self._arm(updated)
        return True

    def deactivate(self, schedule_id: str) -> bool:
        """Deaktiviert einen Zeitplan (persistiert ``active: false``, dann Timer weg).

        Idempotent, auch für unbekannte IDs.

        Returns:
            True wenn der Zeitplan existiert.
        """
        updated = self.store.set_active(schedule_id, False)
        self._disarm(schedule_id)
        return updated is not None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def list(self) -> list[Schedule]:
        return self.store.load()

    def get(self, schedule_id: str) -> Schedule | None:
        return self.store.get(schedule_id)

    def add(self, data: dict[str, Any]) -> Schedule:
        """Legt einen Zeitplan an. Akzeptiert camelCase und snake_case.

        Raises:
            ValidationError: Pflichtfelder fehlen oder Cron-Ausdruck ungültig.
        """
        schedules = self.store.load()
        fields = {k: v for k, v in data.items() if k != "id"}
        try:
            schedule = Schedule.model_validate({
                **fields,
                "id": new_schedule_id([s.id for s in schedules]),
            })
        except PydanticValidationError as exc:
            raise ValidationError(
                "functionName and cronExpression are required",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        self.validate(schedule.cron_expression)
        schedules.append(schedule)
        self.store.save(schedules)
        log.info("schedule_created", schedule_id=schedule.id, function=schedule.function_name)

        if schedule.active:
            self._arm(schedule)
        return schedule

    def update(self, schedule_id: str, changes: dict[str, Any]) -> Schedule | None:
        """Ändert einen Zeitplan.

        Returns:
            Der aktualisierte Zeitplan, oder None wenn die ID unbekannt ist.

        Raises:
            ValidationError: ID-Änderung, ungültige Felder oder Cron-Ausdruck.
        """
        schedules = self.store.load()
        index = next((i for i, s in enumerate(schedules) if s.id == schedule_id), None)
        if index is None:
            return None

        current = schedules[index]
        new_id = changes.get("id")
        if new_id is not None and str(new_id) != schedule_id:
            raise ValidationError("Schedule id cannot be changed", error_code="IMMUTABLE_FIELD")

        merged = current.to_record()
        for key, value in changes.items():
            field = _FIELD_BY_ALIAS.get(key, key)
            if field not in _IMMUTABLE_FIELDS:
                merged[field] = value
        try:
            updated = Schedule.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid schedule update for {schedule_id}",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        self.validate(updated.cron_expression)

        self._disarm(schedule_id)
        schedules[index] = updated
        self.store.save(schedules)
        log.info("schedule_updated", schedule_id=schedule_id)

        if updated.active:
            self._arm(updated)
        return updated

    def delete(self, schedule_id: str) -> bool:
        """Entfernt einen Zeitplan samt Timer.

        Returns:
            True wenn der Zeitplan existierte.
        """
        self._disarm(schedule_id)
        schedules = self.store.load()
        remaining = [s for s in schedules if s.id != schedule_id]
        if len(remaining) == len(schedules):
            return False
        self.store.save(remaining)
        log.info("schedule_deleted", schedule_id=schedule_id)
        return True

    def get_next_run_times(self) -> dict[str, datetime | None]:
        """Nächste Ausführungszeit je scharf geschaltetem Zeitplan."""
        result: dict[str, datetime | None] = {}
        if self._scheduler is None:
            return result
        for schedule_id, job_id in self._active.items():
            job = self._scheduler.get_job(job_id)
            result[schedule_id] = job.next_run_time if job is not None else None
        return result
