"""
fnhost · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. ~/.fnhost/config.yaml (overrides defaults)
  3. Environment variables FNHOST_* (overrides everything)

Automatically creates the ~/.fnhost/ directory structure on first start.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, BeforeValidator, Field

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000


# ============================================================================
# Konfigurationsmodelle
# ============================================================================


def _split_command(value: Any) -> Any:
    """Erlaubt Kommandos als String (z.B. aus Env-Variablen)."""
    if isinstance(value, str):
        return shlex.split(value)
    return value


Command = Annotated[list[str], BeforeValidator(_split_command)]


class RuntimeConfig(BaseModel):
    """Node.js-Laufzeit für Funktionsaufrufe."""

    node_binary: str = "node"
    default_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, ge=100, le=3_600_000)
    # Obergrenze für gesammelten stdout+stderr pro Aufruf
    max_output_bytes: int = Field(default=1_000_000, ge=1_000)


class CompilerConfig(BaseModel):
    """TypeScript-Toolchain."""

    command: Command = Field(default_factory=lambda: ["npx", "tsc"])
    timeout_seconds: int = Field(default=120, ge=5, le=1800)


class DependencyConfig(BaseModel):
    """npm-Installation der Funktionsabhängigkeiten."""

    install_command: Command = Field(
        default_factory=lambda: ["npm", "install", "--no-audit", "--no-fund"],
    )
    timeout_seconds: int = Field(default=300, ge=10, le=3600)


class SchedulerConfig(BaseModel):
    """Cron-Scheduler."""

    timezone: str = "UTC"
    # Überlappende Ticks desselben Zeitplans werden nicht verworfen
    max_instances: int = Field(default=10, ge=1, le=100)
    misfire_grace_seconds: int = Field(default=30, ge=1, le=3600)


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = False
    console: bool = True


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class FnHostConfig(BaseModel):
    """Complete fnhost configuration.

    Loaded once at startup and then passed to every component.
    """

    home: Path = Field(default_factory=lambda: Path.home() / ".fnhost")

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    compiler: CompilerConfig = Field(default_factory=CompilerConfig)
    dependencies: DependencyConfig = Field(default_factory=DependencyConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # ---- Abgeleitete Pfade (per Property, nicht manuell konfigurierbar) ----

    @property
    def config_file(self) -> Path:
        """Pfad zur Konfigurationsdatei."""
        return self.home / "config.yaml"

    @property
    def functions_dir(self) -> Path:
        """Quelldateien (.js/.ts) und Env-Dateien der Funktionen."""
        return self.home / "functions"

    @property
    def dist_dir(self) -> Path:
        """Kompilierte TypeScript-Ausgaben."""
        return self.home / "dist" / "functions"

    @property
    def deps_dir(self) -> Path:
        """Ein Unterverzeichnis pro Funktion mit package.json + node_modules."""
        return self.home / "deps"

    @property
    def tmp_dir(self) -> Path:
        """Temporäre Bootstrap-Skripte."""
        return self.home / "tmp"

    @property
    def logs_dir(self) -> Path:
        """Verzeichnis für Log-Dateien."""
        return self.home / "logs"

    @property
    def schedules_file(self) -> Path:
        """Persistierte Zeitpläne."""
        return self.home / "schedules.yaml"


# ============================================================================
# Config-Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Wendet FNHOST_* Umgebungsvariablen an.

    Konvention: FNHOST_SECTION_KEY → data["section"]["key"]
    Beispiel: FNHOST_RUNTIME_NODE_BINARY → data["runtime"]["node_binary"]
    """
    prefix = "FNHOST_"
    sections = set(FnHostConfig.model_fields) - {"home"}
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        rest = key[len(prefix):].lower()
        section, _, leaf = rest.partition("_")
        if section in sections and leaf:
            overrides.setdefault(section, {})[leaf] = value
        elif rest in FnHostConfig.model_fields:
            overrides[rest] = value
    return _deep_merge(data, overrides)


def load_config(config_path: Path | None = None) -> FnHostConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. FNHOST_* Umgebungsvariablen

    Args:
        config_path: Expliziter Pfad zur config.yaml. Wenn None: ~/.fnhost/config.yaml

    Returns:
        Vollständig validierte FnHostConfig.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        home = os.environ.get("FNHOST_HOME")
        config_path = (Path(home) if home else Path.home() / ".fnhost") / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = file_data
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)

    data = _apply_env_overrides(data)

    return FnHostConfig(**data)


# ============================================================================
# Verzeichnisstruktur erstellen
# ============================================================================


_DEFAULT_CONFIG = """\
# fnhost · Hauptkonfiguration
# Generiert beim ersten Start. Anpassen nach Bedarf.

runtime:
  node_binary: node
  default_timeout_ms: 30000

compiler:
  command: [npx, tsc]
  timeout_seconds: 120

dependencies:
  install_command: [npm, install, --no-audit, --no-fund]
  timeout_seconds: 300

scheduler:
  timezone: UTC
  max_instances: 10

logging:
  level: INFO
  json_logs: false
"""


def ensure_directory_structure(config: FnHostConfig) -> list[str]:
    """Erstellt die vollständige ~/.fnhost/ Verzeichnisstruktur.

    Idempotent -- kann beliebig oft aufgerufen werden.
    Erstellt nur was fehlt, überschreibt nie vorhandene Dateien.

    Returns:
        Liste der neu erstellten Pfade (für Logging).
    """
    created: list[str] = []

    dirs = [
        config.home,
        config.functions_dir,
        config.dist_dir,
        config.deps_dir,
        config.tmp_dir,
        config.logs_dir,
    ]

    for d in dirs:
        if not d.exists():
            d.mkdir(parents=True, exist_ok=True)
            created.append(str(d))

    if not config.config_file.exists():
        config.config_file.write_text(_DEFAULT_CONFIG, encoding="utf-8")
        created.append(str(config.config_file))

    return created
