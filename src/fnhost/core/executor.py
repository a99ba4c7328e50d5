"""Execution-Engine: führt eine gespeicherte Funktion in einem Node.js-Kindprozess aus.

Ablauf pro Aufruf:
  1. Artefakt auflösen (.js direkt, .ts bei Bedarf kompilieren)
  2. Bootstrap-Skript mit eingebetteter Eingabe schreiben
  3. ``node`` starten, Umgebung geschichtet: Host < Aufrufer < Funktion
  4. stdout/stderr sammeln (gedeckelt), auf Ende oder Timeout warten
  5. Ergebnis-Umschlag aus stdout herauslösen

Fehler des Hosts (Artefakt fehlt, Kompilierung scheitert, Node nicht
startbar) werden als ``ExecutionResult`` mit Exit-Code 1 gemeldet,
nie als Exception.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fnhost.config import FnHostConfig
from fnhost.core.bootstrap import ResultMarkers, encode_input, render_bootstrap
from fnhost.core.dependencies import DependencyResolver
from fnhost.core.errors import CompilationError, ExecutionError, FnHostError, ValidationError
from fnhost.core.store import ArtifactStore, validate_function_name
from fnhost.models import Language
from fnhost.utils.logging import get_logger

log = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124

# Nach Prozessende: maximale Wartezeit, bis die Pipes leer gelesen sind
_DRAIN_TIMEOUT = 2.0
_READ_CHUNK = 65536


@dataclass
class ExecutionResult:
    """Ergebnis eines Funktionsaufrufs."""

    output: str = ""
    error: str = ""
    exit_code: int = 0
    result: Any = None
    timed_out: bool = False
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
        }
        if self.result is not None:
            data["result"] = self.result
        return data


class _Capture:
    """Sammelt einen Ausgabestrom bis zu einer Byte-Grenze.

    Bei Überlauf bleiben Anfang und Ende erhalten, da der
    Ergebnis-Umschlag immer am Ende von stdout steht.
    """

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self.head = bytearray()
        self.tail = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self._limit - len(self.head)
        if room > 0:
            self.head += chunk[:room]
            chunk = chunk[room:]
        if not chunk:
            return
        self.truncated = True
        self.tail += chunk
        if len(self.tail) > self._limit:
            del self.tail[: len(self.tail) - self._limit]

    def text(self) -> str:
        head = self.head.decode("utf-8", errors="replace")
        if not self.truncated:
            return head
        tail = self.tail.decode("utf-8", errors="replace")
        return f"{head}\n[... output truncated ...]\n{tail}"


async def _pump(reader: asyncio.StreamReader | None, capture: _Capture) -> None:
    if reader is None:
        return
    while True:
        chunk = await reader.read(_READ_CHUNK)
        if not chunk:
            return
        capture.feed(chunk)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Beendet den Kindprozess hart und sammelt ihn ein."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(proc.wait(), timeout=5.0)


def _exit_code(returncode: int | None) -> int:
    """Signal-Abbrüche (negativ) werden wie in der Shell zu 128+N."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


class ExecutionEngine:
    """Führt Funktionen isoliert in je einem ``node``-Prozess aus.

    Aufrufe sind voneinander unabhängig und dürfen parallel laufen.
    Nur die Kompilierung zur Laufzeit wird pro Funktion serialisiert.
    """

    def __init__(
        self,
        config: FnHostConfig,
        store: ArtifactStore,
        resolver: DependencyResolver,
    ) -> None:
        self._config = config
        self._store = store
        self._resolver = resolver
        self._compile_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Artefakt-Auflösung
    # ------------------------------------------------------------------

    async def resolve_artifact(self, name: str) -> Path:
        """Liefert die ausführbare .js-Datei einer Funktion.

        TypeScript wird kompiliert, wenn keine Ausgabe existiert oder die
        Quelle neuer ist. Die Quelle bleibt bei Fehlern erhalten.

        Raises:
            ExecutionError: Funktion existiert nicht.
            CompilationError: Kompilierung fehlgeschlagen.
        """
        validate_function_name(name)
        source = self._store.resolve_source(name)
        if source is None:
            raise ExecutionError(f"Function {name} not found", error_code="FUNCTION_NOT_FOUND")
        if Language.from_extension(source.suffix) is Language.JAVASCRIPT:
            return source

        lock = self._compile_locks.setdefault(name, asyncio.Lock())
        async with lock:
            compiled = self._store.compiled_path(name)
            if compiled.exists() and compiled.stat().st_mtime >= source.stat().st_mtime:
                return compiled
            return await self._store.compile(source, remove_source_on_failure=False)

    def _build_env(self, name: str, env: dict[str, str] | None) -> dict[str, str]:
        """Schichtet Host-, Aufrufer- und Funktionsumgebung.

        Raises:
            ValidationError: Name oder Wert ist als Umgebungsvariable unzulässig.
        """
        layered = {str(k): str(v) for k, v in (env or {}).items()}
        layered.update(self._store.get_env(name))
        for key, value in layered.items():
            if not key or "=" in key or "\x00" in key or "\x00" in value:
                raise ValidationError(
                    f"Invalid environment variable {key!r}",
                    error_code="INVALID_ENVIRONMENT",
                )

        merged = dict(os.environ)
        merged.update(layered)

        node_modules = self._resolver.node_modules_dir(name)
        if node_modules.is_dir():
            existing = merged.get("NODE_PATH")
            merged["NODE_PATH"] = (
                f"{node_modules}{os.pathsep}{existing}" if existing else str(node_modules)
            )
        return merged

    # ------------------------------------------------------------------
    # Ausführung
    # ------------------------------------------------------------------

    async def execute(
        self,
        name: str,
        input: Any = None,
        *,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Führt eine Funktion einmal aus.

        Args:
            name: Funktionsname.
            input: JSON-serialisierbare Eingabe (None → ``{}``).
            env: Zusätzliche Umgebungsvariablen des Aufrufers.
            timeout_ms: Zeitlimit, sonst ``runtime.default_timeout_ms``.

        Returns:
            ExecutionResult. Timeout → Exit-Code 124.
        """
        timeout_ms = timeout_ms or self._config.runtime.default_timeout_ms
        invocation = uuid.uuid4().hex[:12]

        try:
            artifact = await self.resolve_artifact(name)
            payload_json = encode_input({} if input is None else input)
            process_env = self._build_env(name, env)
        except CompilationError as exc:
            log.warning("execution_compile_failed", function=name, invocation=invocation)
            diagnostics = exc.diagnostics
            message = f"{exc.message}\n{diagnostics}" if diagnostics else exc.message
            return ExecutionResult(error=message, exit_code=1)
        except FnHostError as exc:
            log.warning("execution_rejected", function=name, invocation=invocation, error=exc.message)
            return ExecutionResult(error=exc.message, exit_code=1)
        except (TypeError, ValueError) as exc:
            return ExecutionResult(error=f"Input is not JSON-serializable: {exc}", exit_code=1)

        markers = ResultMarkers()
        node_modules = self._resolver.node_modules_dir(name)
        script = self._config.tmp_dir / f"{name}_{uuid.uuid4().hex}.cjs"
        try:
            self._config.tmp_dir.mkdir(parents=True, exist_ok=True)
            script.write_text(
                render_bootstrap(
                    artifact,
                    payload_json,
                    markers,
                    deps_dir=node_modules.parent if node_modules.is_dir() else None,
                ),
                encoding="utf-8",
            )
            log.info(
                "execution_start",
                function=name,
                invocation=invocation,
                artifact=str(artifact),
                timeout_ms=timeout_ms,
            )
            started = time.monotonic()
            result = await self._run(script, process_env, markers, timeout_ms)
            log.info(
                "execution_done",
                function=name,
                invocation=invocation,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return result
        except (OSError, ValueError) as exc:
            log.error("execution_start_failed", function=name, invocation=invocation, error=str(exc))
            return ExecutionResult(error=f"Failed to start Node.js runtime: {exc}", exit_code=1)
        finally:
            script.unlink(missing_ok=True)

    async def _run(
        self,
        script: Path,
        env: dict[str, str],
        markers: ResultMarkers,
        timeout_ms: int,
    ) -> ExecutionResult:
        limit = self._config.runtime.max_output_bytes
        stdout_capture = _Capture(limit)
        stderr_capture = _Capture(limit)

        proc = await asyncio.create_subprocess_exec(
            self._config.runtime.node_binary,
            str(script),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(self._store.functions_dir),
        )
        readers = [
            asyncio.create_task(_pump(proc.stdout, stdout_capture)),
            asyncio.create_task(_pump(proc.stderr, stderr_capture)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_ms / 1000)
        except TimeoutError:
            timed_out = True
            await _kill(proc)
        except BaseException:
            # Abbruch des Aufrufers (z. B. Shutdown): kein Kindprozess bleibt zurück
            for task in readers:
                task.cancel()
            await _kill(proc)
            raise
        finally:
            _, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()

        output, envelope = markers.split(stdout_capture.text())
        stderr = stderr_capture.text().strip()
        truncated = stdout_capture.truncated or stderr_capture.truncated

        if timed_out:
            log.warning("execution_timeout", script=script.name, timeout_ms=timeout_ms)
            message = f"Function execution timed out after {timeout_ms} ms"
            return ExecutionResult(
                output=output.strip(),
                error=f"{message}\n{stderr}" if stderr else message,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                truncated=truncated,
            )

        result: Any = None
        error = stderr
        if envelope is not None:
            if envelope.get("ok"):
                result = envelope.get("value")
            elif not error:
                error = str(envelope.get("error", ""))

        return ExecutionResult(
            output=output.strip(),
            error=error,
            exit_code=_exit_code(proc.returncode),
            result=result,
            truncated=truncated,
        )
