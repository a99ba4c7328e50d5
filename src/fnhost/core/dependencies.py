"""Dependency-Resolver: npm-Abhängigkeiten erkennen und installieren.

Zwei Strategien zur Erkennung (explizit schlägt heuristisch):

  1. Manifest im Doc-Kommentar::

         /**
          * @dependencies { "left-pad": "1.3.0" }
          */

  2. Scan nach ``require("x")``, ``import ... from "x"``, ``import("x")``.
     Nicht auflösbare Versionen werden zu ``"latest"``.

Installiert wird pro Funktion in ``<home>/deps/<name>/node_modules``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import shutil
from pathlib import Path
from typing import Any

import yaml

from fnhost.config import FnHostConfig
from fnhost.core.errors import DependencyInstallError
from fnhost.utils.logging import get_logger

log = get_logger(__name__)

LATEST = "latest"

# Node.js-Standardbibliothek -- taucht nie als Abhängigkeit auf
NODE_BUILTINS: frozenset[str] = frozenset({
    "assert", "async_hooks", "buffer", "child_process", "cluster", "console",
    "constants", "crypto", "dgram", "diagnostics_channel", "dns", "domain",
    "events", "fs", "http", "http2", "https", "inspector", "module", "net",
    "os", "path", "perf_hooks", "process", "punycode", "querystring",
    "readline", "repl", "stream", "string_decoder", "sys", "timers",
    "tls", "trace_events", "tty", "url", "util", "v8", "vm", "wasi",
    "worker_threads", "zlib",
})

_DOC_COMMENT = re.compile(r"/\*\*(.*?)\*/", re.DOTALL)
_MANIFEST = re.compile(r"@dependencies\s*(\{[^}]*\})", re.DOTALL)
_COMMENT_DECORATION = re.compile(r"^\s*\*\s?", re.MULTILINE)

_SPECIFIER_PATTERNS: tuple[re.Pattern[str], ...] = (
    # require("x")
    re.compile(r"""\brequire\s*\(\s*['"]([^'"\s]+)['"]\s*\)"""),
    # dynamic import("x")
    re.compile(r"""\bimport\s*\(\s*['"]([^'"\s]+)['"]\s*\)"""),
    # import x from "x" / import {a} from "x" / export * from "x"
    re.compile(r"""\b(?:import|export)\s[^'";]*?\bfrom\s*['"]([^'"\s]+)['"]"""),
    # import "x"
    re.compile(r"""\bimport\s+['"]([^'"\s]+)['"]"""),
)


# ============================================================================
# Erkennung
# ============================================================================


def _parse_manifest(body: str) -> dict[str, str] | None:
    """Parst den ``{...}``-Block eines @dependencies-Tags."""
    parsed: Any
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(body)
        except yaml.YAMLError as exc:
            log.warning("dependency_manifest_invalid", error=str(exc))
            return None
    if not isinstance(parsed, dict):
        log.warning("dependency_manifest_not_a_mapping", manifest=body[:200])
        return None
    return {str(k): LATEST if v is None else str(v) for k, v in parsed.items()}


def _find_manifest(code: str) -> dict[str, str] | None:
    for match in _DOC_COMMENT.finditer(code):
        comment = _COMMENT_DECORATION.sub("", match.group(1))
        manifest = _MANIFEST.search(comment)
        if manifest:
            return _parse_manifest(manifest.group(1))
    return None


def package_name(specifier: str) -> str | None:
    """Reduziert einen Import-Specifier auf den npm-Paketnamen.

    ``lodash/fp`` → ``lodash``, ``@scope/pkg/sub`` → ``@scope/pkg``.
    Relative Pfade, ``node:``-Specifier und Builtins → None.
    """
    if not specifier or specifier.startswith((".", "/", "node:", "file:", "http:", "https:")):
        return None
    parts = specifier.split("/")
    if specifier.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = "/".join(parts[:2])
    else:
        name = parts[0]
    if name in NODE_BUILTINS:
        return None
    return name


def extract_dependencies(code: str) -> dict[str, str]:
    """Ermittelt die Abhängigkeiten einer Funktionsquelle.

    Ein gültiges Manifest ist maßgeblich und wird unverändert zurückgegeben.
    Ohne Manifest werden Imports gescannt (Version ``"latest"``).
    """
    manifest = _find_manifest(code)
    if manifest is not None:
        return manifest

    dependencies: dict[str, str] = {}
    for pattern in _SPECIFIER_PATTERNS:
        for match in pattern.finditer(code):
            name = package_name(match.group(1))
            if name and name not in dependencies:
                dependencies[name] = LATEST
    return dependencies


# ============================================================================
# Installation
# ============================================================================


class DependencyResolver:
    """Erkennt und installiert npm-Abhängigkeiten pro Funktion.

    Installationen für denselben Funktionsnamen laufen serialisiert.
    """

    def __init__(self, config: FnHostConfig) -> None:
        self._config = config
        self.deps_dir = config.deps_dir
        self._locks: dict[str, asyncio.Lock] = {}

    def install_dir(self, name: str) -> Path:
        return self.deps_dir / name

    def node_modules_dir(self, name: str) -> Path:
        return self.install_dir(name) / "node_modules"

    def extract(self, code: str) -> dict[str, str]:
        return extract_dependencies(code)

    def remove(self, name: str) -> bool:
        directory = self.install_dir(name)
        if not directory.exists():
            return False
        shutil.rmtree(directory, ignore_errors=True)
        log.info("dependencies_removed", function=name)
        return True

    async def install_dependencies(self, name: str, dependencies: dict[str, str]) -> Path | None:
        """Installiert Abhängigkeiten in ein isoliertes Verzeichnis.

        Ein Exit-Code ungleich 0 wird toleriert, solange ``node_modules``
        danach existiert (npm meldet auch reine Warnungen so).

        Returns:
            Installationsverzeichnis, oder None wenn nichts zu tun war.

        Raises:
            DependencyInstallError: Installation fehlgeschlagen und kein
                ``node_modules`` vorhanden.
        """
        if not dependencies:
            return None

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            return await self._install(name, dependencies)

    async def _install(self, name: str, dependencies: dict[str, str]) -> Path:
        directory = self.install_dir(name)
        directory.mkdir(parents=True, exist_ok=True)
        package_json = {
            "name": name.lower(),
            "version": "1.0.0",
            "private": True,
            "dependencies": dependencies,
        }
        (directory / "package.json").write_text(json.dumps(package_json, indent=2), encoding="utf-8")

        cmd = list(self._config.dependencies.install_command)
        log.info("dependency_install_start", function=name, dependencies=dependencies, command=" ".join(cmd))

        tail: list[str] = []
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DependencyInstallError(
                f"Package manager could not be started: {exc}",
                details={"function": name, "dependencies": dependencies},
            ) from exc

        assert proc.stdout is not None and proc.stderr is not None
        streams = asyncio.gather(
            self._stream(name, "stdout", proc.stdout, tail),
            self._stream(name, "stderr", proc.stderr, tail),
            proc.wait(),
        )
        try:
            await asyncio.wait_for(streams, timeout=float(self._config.dependencies.timeout_seconds))
        except TimeoutError:
            proc.kill()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            raise DependencyInstallError(
                f"Dependency installation timed out after {self._config.dependencies.timeout_seconds}s",
                details={"function": name, "dependencies": dependencies, "output": "\n".join(tail)},
            ) from None

        node_modules = self.node_modules_dir(name)
        if proc.returncode != 0:
            if node_modules.is_dir():
                log.warning("dependency_install_nonzero_exit", function=name, exit_code=proc.returncode)
            else:
                log.error("dependency_install_failed", function=name, exit_code=proc.returncode)
                raise DependencyInstallError(
                    f"Dependency installation failed with exit code {proc.returncode}",
                    details={
                        "function": name,
                        "dependencies": dependencies,
                        "exit_code": proc.returncode,
                        "output": "\n".join(tail),
                    },
                )

        log.info("dependency_install_done", function=name, path=str(directory))
        return directory

    @staticmethod
    async def _stream(
        name: str,
        stream_name: str,
        reader: asyncio.StreamReader,
        tail: list[str],
        keep: int = 50,
    ) -> None:
        """Leitet Ausgabezeilen des Paketmanagers ins Log weiter."""
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # Zeile länger als der Stream-Puffer, der Puffer ist bereits verworfen
                raw = b"[... output line too long ...]\n"
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            del tail[:-keep]
            if stream_name == "stderr":
                log.warning("dependency_install_output", function=name, stream=stream_name, line=line)
            else:
                log.info("dependency_install_output", function=name, stream=stream_name, line=line)
