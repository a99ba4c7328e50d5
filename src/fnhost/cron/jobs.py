"""Zeitplan-Persistenz: Laden und Speichern von schedules.yaml.

Format::

    schedules:
      - id: "1718000000000"
        function_name: report
        cron_expression: "*/5 * * * *"
        input: {limit: 10}
        active: true
        description: null

Die Datei wird bei jeder Änderung vollständig neu geschrieben
(ein Prozess, keine Transaktionen).
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from fnhost.core.errors import PersistenceError
from fnhost.models import Schedule
from fnhost.utils.logging import get_logger

log = get_logger(__name__)


class ScheduleStore:
    """Liest und schreibt die geordnete Zeitplan-Liste.

    Attributes:
        path: Pfad zur schedules.yaml.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def ensure_file(self) -> bool:
        """Legt eine leere Zeitplan-Datei an, falls sie fehlt.

        Returns:
            True wenn die Datei neu erstellt wurde.
        """
        if self.path.exists():
            return False
        self.save([])
        log.info("schedule_file_created", path=str(self.path))
        return True

    def load(self) -> list[Schedule]:
        """Lädt alle Zeitpläne in Dateireihenfolge.

        Ungültige Einträge werden protokolliert und übersprungen.

        Raises:
            PersistenceError: Datei nicht lesbar oder kein gültiges YAML.
        """
        if not self.path.exists():
            return []
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise PersistenceError(f"Cannot read schedules from {self.path}: {exc}") from exc

        entries = raw.get("schedules") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            return []

        schedules: list[Schedule] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                schedules.append(Schedule.model_validate(entry))
            except PydanticValidationError as exc:
                log.warning("schedule_record_invalid", record_id=entry.get("id"), error=str(exc))
        return schedules

    def save(self, schedules: list[Schedule]) -> None:
        """Schreibt die vollständige Liste.

        Raises:
            PersistenceError: Datei nicht schreibbar.
        """
        data = {"schedules": [s.to_record() for s in schedules]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise PersistenceError(f"Cannot write schedules to {self.path}: {exc}") from exc

    def get(self, schedule_id: str) -> Schedule | None:
        for schedule in self.load():
            if schedule.id == schedule_id:
                return schedule
        return None

    def set_active(self, schedule_id: str, active: bool) -> Schedule | None:
        """Setzt das ``active``-Flag eines Eintrags und speichert.

        Returns:
            Der aktualisierte Zeitplan, oder None wenn die ID unbekannt ist.
        """
        schedules = self.load()
        for index, schedule in enumerate(schedules):
            if schedule.id == schedule_id:
                updated = schedule.model_copy(update={"active": active})
                schedules[index] = updated
                self.save(schedules)
                return updated
        return None
