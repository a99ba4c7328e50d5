"""Bootstrap-Skript für einen einzelnen Funktionsaufruf.

Das Skript wird pro Aufruf erzeugt und von ``node`` ausgeführt. Es

  1. lädt das Artefakt (``require``, bei ES-Modulen ``import()``),
  2. sucht den Einstiegspunkt: default-Export, ``handler``, ``main``,
  3. dekodiert die Eingabe aus kompaktem JSON,
  4. ruft die Funktion auf und wartet ein Promise ab,
  5. schreibt das Ergebnis als JSON-Umschlag zwischen zwei Markerzeilen
     auf stdout (``{"ok":true,"value":...}`` bzw. ``{"ok":false,"error":...}``),
  6. löst Module zuerst im funktionseigenen Dependency-Verzeichnis auf.

Die Marker enthalten eine Nonce pro Aufruf, damit Benutzerausgaben sie
weder fälschen noch zufällig treffen können.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

ENTRY_POINTS = ("default", "handler", "main")


def encode_input(payload: Any) -> str:
    """Kanonische, kompakte JSON-Kodierung der Eingabe."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


@dataclass(frozen=True)
class ResultMarkers:
    """Markerzeilen, die den Ergebnis-Umschlag auf stdout einrahmen."""

    nonce: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def begin(self) -> str:
        return f"__FNHOST_RESULT_BEGIN_{self.nonce}__"

    @property
    def end(self) -> str:
        return f"__FNHOST_RESULT_END_{self.nonce}__"

    def split(self, stdout: str) -> tuple[str, dict[str, Any] | None]:
        """Trennt Benutzerausgabe und Ergebnis-Umschlag.

        Returns:
            (stdout ohne Ergebnisbereich, dekodierter Umschlag oder None)
        """
        start = stdout.rfind(self.begin)
        if start == -1:
            return stdout, None
        stop = stdout.find(self.end, start)
        if stop == -1:
            return stdout[:start], None

        payload = stdout[start + len(self.begin):stop].strip()
        remainder = stdout[:start] + stdout[stop + len(self.end):]
        try:
            envelope = json.loads(payload)
        except json.JSONDecodeError:
            return remainder, None
        if not isinstance(envelope, dict):
            return remainder, None
        return remainder, envelope


_BOOTSTRAP_BODY = r"""
const Module = require('module');
const path = require('path');
const { pathToFileURL } = require('url');

if (DEPS_DIR) {
  const originalResolveFilename = Module._resolveFilename;
  Module._resolveFilename = function (request, parent, isMain, options) {
    if (!request.startsWith('.') && !path.isAbsolute(request)) {
      try {
        return originalResolveFilename.call(this, request, parent, isMain, { ...options, paths: [DEPS_DIR] });
      } catch (err) {
        // not installed per function, fall back to global resolution
      }
    }
    return originalResolveFilename.call(this, request, parent, isMain, options);
  };
}

function emit(envelope, exitCode) {
  let payload;
  try {
    payload = JSON.stringify(envelope);
  } catch (err) {
    payload = JSON.stringify({ ok: false, error: 'Result is not JSON-serializable: ' + err.message });
    exitCode = 1;
  }
  process.stdout.write('\n' + RESULT_BEGIN + '\n' + payload + '\n' + RESULT_END + '\n', () => {
    process.exit(exitCode);
  });
}

function fail(err) {
  const text = err && err.stack ? err.stack : String(err);
  process.stderr.write(text + '\n');
  emit({ ok: false, error: text }, 1);
}

process.on('uncaughtException', fail);
process.on('unhandledRejection', fail);

async function loadArtifact() {
  try {
    return require(ARTIFACT);
  } catch (err) {
    if (err && (err.code === 'ERR_REQUIRE_ESM' || err.code === 'ERR_REQUIRE_ASYNC_MODULE')) {
      return import(pathToFileURL(ARTIFACT).href);
    }
    throw err;
  }
}

const CANDIDATES = [
  (mod) => (typeof mod === 'function' ? mod : mod && mod.default),
  (mod) => mod && mod.handler,
  (mod) => mod && mod.main,
];

function findEntryPoint(mod) {
  for (const candidate of CANDIDATES) {
    const fn = candidate(mod);
    if (typeof fn === 'function') {
      return fn;
    }
  }
  return null;
}

(async () => {
  const mod = await loadArtifact();
  const entryPoint = findEntryPoint(mod);
  if (!entryPoint) {
    throw new Error('No executable entry point found (tried default export, handler, main)');
  }
  const input = JSON.parse(INPUT_JSON);
  const value = await entryPoint(input);
  emit({ ok: true, value: value }, 0);
})().catch(fail);
"""


def render_bootstrap(
    artifact: Path,
    payload_json: str,
    markers: ResultMarkers,
    deps_dir: Path | None = None,
) -> str:
    """Erzeugt den Quelltext des Bootstrap-Skripts.

    Alle eingebetteten Werte werden als JSON-Literale geschrieben, was
    in JavaScript gültige String-Literale ergibt.
    """
    header = "\n".join([
        "'use strict';",
        f"const ARTIFACT = {json.dumps(str(artifact))};",
        f"const DEPS_DIR = {json.dumps(str(deps_dir) if deps_dir else None)};",
        f"const RESULT_BEGIN = {json.dumps(markers.begin)};",
        f"const RESULT_END = {json.dumps(markers.end)};",
        f"const INPUT_JSON = {json.dumps(payload_json)};",
    ])
    return header + "\n" + _BOOTSTRAP_BODY
