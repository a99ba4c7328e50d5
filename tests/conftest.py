"""
fnhost · Shared Test-Fixtures.

Alle Tests nutzen ein temporäres Verzeichnis statt ~/.fnhost/.
Compiler und Paketmanager werden durch kleine Python-Skripte ersetzt,
Tests mit echtem Node.js werden ohne ``node`` übersprungen.
"""

from __future__ import annotations

import logging
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest
import structlog

from fnhost.config import FnHostConfig, ensure_directory_structure

if TYPE_CHECKING:
    from pathlib import Path

# Ersetzt ``tsc``: kopiert die Quelle nach --outDir, "SYNTAX_ERROR" → Fehler
FAKE_COMPILER = textwrap.dedent("""\
    import pathlib
    import sys

    args = sys.argv[1:]
    out_dir = pathlib.Path(args[args.index("--outDir") + 1])
    source = pathlib.Path(args[-1])
    text = source.read_text(encoding="utf-8")
    if "SYNTAX_ERROR" in text:
        print(f"{source.name}(1,1): error TS1005: ';' expected.")
        sys.exit(2)
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / (source.stem + ".js")).write_text(text, encoding="utf-8")
    """)

# Ersetzt ``npm install``: legt für jede Abhängigkeit ein Minimal-Paket an.
# "fail-me" → Exit 1 ohne node_modules, "warn-only" → Exit 1 mit node_modules,
# "long-line" → eine Ausgabezeile über dem Stream-Limit
FAKE_NPM = textwrap.dedent("""\
    import json
    import pathlib
    import sys
    import time

    manifest = json.loads(pathlib.Path("package.json").read_text(encoding="utf-8"))
    deps = manifest.get("dependencies", {})
    if "slow-pkg" in deps:
        time.sleep(30)
    if "long-line" in deps:
        print("x" * 200_000)
    if "fail-me" in deps:
        print("npm ERR! 404 Not Found - fail-me", file=sys.stderr)
        sys.exit(1)
    for name, version in deps.items():
        pkg = pathlib.Path("node_modules") / name
        pkg.mkdir(parents=True, exist_ok=True)
        (pkg / "package.json").write_text(json.dumps({"name": name, "main": "index.js"}))
        (pkg / "index.js").write_text(
            "module.exports = (s) => 'pkg:" + name + ":' + s;\\n"
        )
        print(f"added {name}@{version}")
    if "warn-only" in deps:
        print("npm WARN deprecated warn-only", file=sys.stderr)
        sys.exit(1)
    """)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Setzt structlog/logging nach Tests zurück, die setup_logging() aufrufen."""
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def tmp_fnhost_home(tmp_path: Path) -> Path:
    """Temporäres fnhost-Home-Verzeichnis."""
    return tmp_path / ".fnhost"


@pytest.fixture
def fake_compiler(tmp_path: Path) -> list[str]:
    script = tmp_path / "fake_tsc.py"
    script.write_text(FAKE_COMPILER, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def fake_npm(tmp_path: Path) -> list[str]:
    script = tmp_path / "fake_npm.py"
    script.write_text(FAKE_NPM, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def config(tmp_fnhost_home: Path, fake_compiler: list[str], fake_npm: list[str]) -> FnHostConfig:
    """FnHostConfig mit temporärem Home und Fake-Toolchain."""
    return FnHostConfig(
        home=tmp_fnhost_home,
        runtime={"default_timeout_ms": 10_000},
        compiler={"command": fake_compiler},
        dependencies={"install_command": fake_npm},
    )


@pytest.fixture
def initialized_config(config: FnHostConfig) -> FnHostConfig:
    """FnHostConfig mit erstellter Verzeichnisstruktur."""
    ensure_directory_structure(config)
    return config
