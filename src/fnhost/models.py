"""
fnhost · Zentrale Datenmodelle.

Alle Pydantic-Modelle, die modulübergreifend genutzt werden.

Design-Prinzipien:
  - Persistenz in snake_case (schedules.yaml)
  - Externe Darstellung in camelCase (functionName, cronExpression),
    beide Schreibweisen werden beim Einlesen akzeptiert
  - JSON-serialisierbar (CLI-Ausgabe, Logging)
"""

from __future__ import annotations

import time
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ============================================================================
# Enums
# ============================================================================


class Language(StrEnum):
    """Sprachvariante eines Funktions-Artefakts."""

    JAVASCRIPT = "js"  # Direkt ausführbar
    TYPESCRIPT = "ts"  # Benötigt tsc-Kompilierung

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def from_extension(cls, extension: str) -> Language | None:
        """Ordnet eine Dateiendung (mit oder ohne Punkt) einer Sprache zu."""
        ext = extension.lower().lstrip(".")
        for lang in cls:
            if lang.value == ext:
                return lang
        return None


# ============================================================================
# Funktions-Artefakte
# ============================================================================


class FunctionArtifact(BaseModel):
    """Eine gespeicherte Funktion.

    Pro Name existiert höchstens eine Quelldatei und höchstens eine
    kompilierte Ausgabe (nur bei TypeScript).
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    name: str
    path: Path
    language: Language
    compiled_path: Path | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)

    @property
    def type(self) -> str:
        """Dateityp ohne Punkt ("js" / "ts")."""
        return self.language.value

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "path": str(self.path),
            "type": self.type,
        }
        if self.compiled_path is not None:
            data["compiledPath"] = str(self.compiled_path)
        if self.dependencies:
            data["dependencies"] = dict(self.dependencies)
        return data


class StepReport(BaseModel):
    """Ergebnis eines Upload-Schritts (Kompilierung oder Dependency-Installation)."""

    success: bool
    output: str | None = None
    error: str | None = None
    dependencies: dict[str, str] | None = None

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UploadReport(BaseModel):
    """Antwort eines Uploads: Artefakt plus Kompilier- und Installationsschritt."""

    function: FunctionArtifact
    compilation: StepReport | None = None
    dependency_installation: StepReport | None = None

    def to_api(self) -> dict[str, Any]:
        # Fehlgeschlagene Uploads werfen, ein Report ist immer ein Erfolg
        return {
            "success": True,
            "function": self.function.to_api(),
            "process": {
                "compilation": self.compilation.to_api() if self.compilation else None,
                "dependencyInstallation": (
                    self.dependency_installation.to_api() if self.dependency_installation else None
                ),
            },
        }


# ============================================================================
# Zeitpläne
# ============================================================================


def new_schedule_id(existing: list[str] | None = None) -> str:
    """Erzeugt eine monotone, zeitbasierte Schedule-ID (Millisekunden).

    Falls die Uhr seit der letzten Vergabe nicht weitergelaufen ist,
    wird die größte vorhandene ID um eins erhöht.
    """
    candidate = time.time_ns() // 1_000_000
    numeric = [int(i) for i in (existing or []) if i.isdigit()]
    if numeric and candidate <= max(numeric):
        candidate = max(numeric) + 1
    return str(candidate)


class Schedule(BaseModel):
    """Ein persistierter Zeitplan.

    ``function_name`` ist eine schwache Referenz: wird die Funktion
    gelöscht, bleibt der Zeitplan bestehen und jeder Tick meldet
    einen ExecutionError.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    function_name: str = Field(min_length=1)
    cron_expression: str = Field(min_length=1)
    input: Any = None
    active: bool = True
    description: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Darstellung für schedules.yaml (snake_case)."""
        return self.model_dump(mode="json")

    def to_api(self) -> dict[str, Any]:
        """Externe Darstellung (camelCase)."""
        return self.model_dump(mode="json", by_alias=True)
