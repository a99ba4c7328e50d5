"""Artifact-Store: Quelldateien, kompilierte Ausgaben und Env-Dateien.

Layout unter ``<home>``:
  functions/<name>.js | <name>.ts   -- genau eine Quelldatei pro Name
  functions/<name>.env              -- Umgebungsvariablen (key=value)
  dist/functions/<name>.js          -- tsc-Ausgabe (nur TypeScript)
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from pathlib import Path

from fnhost.config import FnHostConfig
from fnhost.core.errors import CompilationError, PersistenceError, ValidationError
from fnhost.models import FunctionArtifact, Language
from fnhost.utils.logging import get_logger

log = get_logger(__name__)

ENV_SUFFIX = ".env"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


def validate_function_name(name: str) -> str:
    """Prüft einen Funktionsnamen (keine Pfadanteile, kein führender Punkt)."""
    if not name or not _SAFE_NAME.match(name):
        raise ValidationError(
            f"Invalid function name: '{name}'",
            error_code="INVALID_FUNCTION_NAME",
        )
    return name


def parse_env(content: str) -> dict[str, str]:
    """Parst den Inhalt einer Env-Datei.

    Leere Zeilen und Zeilen mit ``#`` am Anfang werden ignoriert.
    Der Wert ist alles nach dem ersten ``=``.
    """
    env: dict[str, str] = {}
    for line in content.split("\n"):
        line = line.removesuffix("\r")
        if not line.strip() or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key:
            continue
        env[key] = value
    return env


def render_env(env_vars: dict[str, str]) -> str:
    """Gegenstück zu :func:`parse_env`. Validiert Schlüssel und Werte."""
    lines: list[str] = []
    for key, value in env_vars.items():
        if not isinstance(key, str) or not key or "=" in key or "\n" in key or key.startswith("#"):
            raise ValidationError(
                f"Invalid environment variable name: {key!r}",
                error_code="INVALID_ENV_KEY",
            )
        value = str(value)
        if "\n" in value or "\r" in value:
            raise ValidationError(
                f"Environment variable {key} must not contain line breaks",
                error_code="INVALID_ENV_VALUE",
            )
        lines.append(f"{key}={value}\n")
    return "".join(lines)


class ArtifactStore:
    """Persistiert Funktions-Artefakte auf der Platte.

    Attributes:
        functions_dir: Verzeichnis für Quelldateien und Env-Dateien.
        dist_dir: Verzeichnis für kompilierte TypeScript-Ausgaben.
    """

    def __init__(self, config: FnHostConfig) -> None:
        self._config = config
        self.functions_dir = config.functions_dir
        self.dist_dir = config.dist_dir

    # ------------------------------------------------------------------
    # Pfade
    # ------------------------------------------------------------------

    def source_path(self, name: str, language: Language) -> Path:
        return self.functions_dir / f"{name}{language.extension}"

    def compiled_path(self, name: str) -> Path:
        return self.dist_dir / f"{name}.js"

    def env_path(self, name: str) -> Path:
        return self.functions_dir / f"{name}{ENV_SUFFIX}"

    def resolve_source(self, name: str) -> Path | None:
        """Findet die Quelldatei einer Funktion (.js vor .ts)."""
        for language in (Language.JAVASCRIPT, Language.TYPESCRIPT):
            path = self.source_path(name, language)
            if path.is_file():
                return path
        return None

    def read_source(self, name: str) -> str:
        path = self.resolve_source(name)
        if path is None:
            raise ValidationError(f"Function {name} not found", error_code="FUNCTION_NOT_FOUND")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc

    def get(self, name: str) -> FunctionArtifact | None:
        path = self.resolve_source(name)
        if path is None:
            return None
        return self._artifact(path)

    def _artifact(self, path: Path) -> FunctionArtifact:
        language = Language.from_extension(path.suffix)
        assert language is not None
        compiled = self.compiled_path(path.stem)
        return FunctionArtifact(
            name=path.stem,
            path=path,
            language=language,
            compiled_path=compiled if language is Language.TYPESCRIPT and compiled.exists() else None,
        )

    # ------------------------------------------------------------------
    # Operationen
    # ------------------------------------------------------------------

    def list(self) -> list[FunctionArtifact]:
        """Listet alle gespeicherten Funktionen (ohne Env-Dateien und Verzeichnisse)."""
        if not self.functions_dir.exists():
            return []
        artifacts: list[FunctionArtifact] = []
        for path in sorted(self.functions_dir.iterdir()):
            if path.is_file() and Language.from_extension(path.suffix) is not None:
                artifacts.append(self._artifact(path))
        return artifacts

    def add(self, name: str, data: bytes, extension: str) -> FunctionArtifact:
        """Speichert eine Quelldatei.

        Eine vorhandene Quelldatei der jeweils anderen Sprachvariante wird
        samt kompilierter Ausgabe entfernt, damit pro Name genau eine
        Quelle existiert.

        Raises:
            ValidationError: Bei nicht unterstützter Endung oder ungültigem Namen.
            PersistenceError: Wenn die Datei nicht geschrieben werden kann.
        """
        language = Language.from_extension(extension)
        if language is None:
            raise ValidationError(
                "Only .js and .ts files are allowed",
                error_code="INVALID_EXTENSION",
                details={"extension": extension},
            )
        validate_function_name(name)

        path = self.source_path(name, language)
        try:
            self.functions_dir.mkdir(parents=True, exist_ok=True)
            for other in Language:
                if other is not language:
                    self.source_path(name, other).unlink(missing_ok=True)
            self.compiled_path(name).unlink(missing_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise PersistenceError(f"Cannot store function {name}: {exc}") from exc

        log.info("function_stored", function=name, path=str(path), size=len(data))
        return FunctionArtifact(name=name, path=path, language=language)

    async def compile(self, path: Path, *, remove_source_on_failure: bool = True) -> Path:
        """Kompiliert eine TypeScript-Datei mit der konfigurierten Toolchain.

        Args:
            path: Pfad zur .ts-Quelldatei.
            remove_source_on_failure: Hochgeladene Quelle bei Fehler löschen
                (Upload-Rollback). Bei Kompilierung zur Ausführungszeit aus.

        Returns:
            Pfad der kompilierten .js-Datei.

        Raises:
            CompilationError: Mit der Compiler-Ausgabe in ``details["diagnostics"]``.
        """
        output_path = self.compiled_path(path.stem)
        self.dist_dir.mkdir(parents=True, exist_ok=True)
        cmd = [*self._config.compiler.command, "--outDir", str(self.dist_dir), str(path)]
        log.info("compile_start", source=str(path), command=" ".join(cmd))

        diagnostics = ""
        failed = False
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            try:
                stdout_bytes, _ = await asyncio.wait_for(
                    proc.communicate(),
                    timeout=float(self._config.compiler.timeout_seconds),
                )
            except TimeoutError:
                proc.kill()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                diagnostics = f"Compiler timed out after {self._config.compiler.timeout_seconds}s"
                failed = True
            else:
                diagnostics = stdout_bytes.decode("utf-8", errors="replace").strip()
                failed = proc.returncode != 0 or not output_path.exists()
        except OSError as exc:
            diagnostics = f"Compiler could not be started: {exc}"
            failed = True

        if failed:
            log.error("compile_failed", source=str(path), diagnostics=diagnostics[:500])
            if remove_source_on_failure:
                path.unlink(missing_ok=True)
            output_path.unlink(missing_ok=True)
            raise CompilationError(
                f"Failed to compile TypeScript file {path.name}",
                details={"diagnostics": diagnostics},
            )

        log.info("compile_done", source=str(path), output=str(output_path))
        return output_path

    def delete(self, name: str) -> bool:
        """Entfernt Quelle, kompilierte Ausgabe und Env-Datei.

        Returns:
            True wenn mindestens eine Datei existierte.
        """
        validate_function_name(name)
        paths = [
            *(self.source_path(name, language) for language in Language),
            self.compiled_path(name),
            self.env_path(name),
        ]
        removed = False
        try:
            for path in paths:
                if path.exists():
                    path.unlink()
                    removed = True
        except OSError as exc:
            raise PersistenceError(f"Cannot delete function {name}: {exc}") from exc

        if removed:
            log.info("function_deleted", function=name)
        return removed

    # ------------------------------------------------------------------
    # Umgebungsvariablen
    # ------------------------------------------------------------------

    def get_env(self, name: str) -> dict[str, str]:
        path = self.env_path(validate_function_name(name))
        if not path.exists():
            return {}
        try:
            return parse_env(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceError(f"Cannot read environment for {name}: {exc}") from exc

    def set_env(self, name: str, env_vars: dict[str, str]) -> None:
        path = self.env_path(validate_function_name(name))
        content = render_env(env_vars)
        try:
            self.functions_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Cannot save environment for {name}: {exc}") from exc
        log.info("function_env_saved", function=name, keys=len(env_vars))
