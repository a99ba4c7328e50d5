"""
fnhost · Entry Point.

Usage: fnhost init
       fnhost upload ./report.ts
       fnhost run report --input '{"limit": 10}'
       fnhost schedules add --function report --cron "*/5 * * * *"
       fnhost serve
       python -m fnhost
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Any

from fnhost import __version__
from fnhost.core.errors import FnHostError, ValidationError


def _pairs(values: list[str] | None) -> dict[str, str]:
    """``["K=V", ...]`` → dict. Der Wert ist alles nach dem ersten ``=``."""
    result: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValidationError(f"Expected KEY=VALUE, got '{item}'", error_code="INVALID_ARGUMENT")
        result[key] = value
    return result


def _json_arg(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON input: {exc}", error_code="INVALID_JSON") from exc


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="fnhost",
        description="fnhost · Function host for JavaScript/TypeScript with cron scheduling",
    )
    parser.add_argument("--version", action="version", version=f"fnhost v{__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: ~/.fnhost/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Verzeichnisstruktur erstellen")
    commands.add_parser("list", help="Gespeicherte Funktionen auflisten")

    upload = commands.add_parser("upload", help="Funktion hochladen (.js/.ts)")
    upload.add_argument("file", type=Path)

    delete = commands.add_parser("delete", help="Funktion löschen")
    delete.add_argument("name")

    analyze = commands.add_parser("analyze", help="Abhängigkeiten neu ermitteln und installieren")
    analyze.add_argument("name")

    run = commands.add_parser("run", help="Funktion einmal ausführen")
    run.add_argument("name")
    run.add_argument("--input", default=None, help="Eingabe als JSON")
    run.add_argument("--env", nargs="*", default=None, metavar="KEY=VALUE")
    run.add_argument("--timeout", type=int, default=None, metavar="MS")

    env = commands.add_parser("env", help="Umgebungsvariablen einer Funktion")
    env_commands = env.add_subparsers(dest="env_command", required=True)
    env_get = env_commands.add_parser("get")
    env_get.add_argument("name")
    env_set = env_commands.add_parser("set", help="Ersetzt alle Variablen der Funktion")
    env_set.add_argument("name")
    env_set.add_argument("pairs", nargs="*", metavar="KEY=VALUE")

    schedules = commands.add_parser("schedules", help="Zeitpläne verwalten")
    sched_commands = schedules.add_subparsers(dest="schedules_command", required=True)
    sched_commands.add_parser("list")

    sched_add = sched_commands.add_parser("add")
    sched_add.add_argument("--function", required=True, dest="function_name")
    sched_add.add_argument("--cron", required=True, dest="cron_expression")
    sched_add.add_argument("--input", default=None, help="Eingabe als JSON")
    sched_add.add_argument("--description", default=None)
    sched_add.add_argument("--inactive", action="store_true", help="Inaktiv anlegen")

    sched_update = sched_commands.add_parser("update")
    sched_update.add_argument("id")
    sched_update.add_argument("--function", default=None, dest="function_name")
    sched_update.add_argument("--cron", default=None, dest="cron_expression")
    sched_update.add_argument("--input", default=None, help="Eingabe als JSON")
    sched_update.add_argument("--description", default=None)
    state = sched_update.add_mutually_exclusive_group()
    state.add_argument("--active", action="store_true", default=None)
    state.add_argument("--inactive", action="store_false", dest="active", default=None)

    for command in ("delete", "activate", "deactivate", "trigger"):
        sub = sched_commands.add_parser(command)
        sub.add_argument("id")

    commands.add_parser("serve", help="Scheduler starten und bis zum Abbruch laufen")

    return parser.parse_args(argv)


# ============================================================================
# Kommandos
# ============================================================================


async def _serve(config: Any, manager: Any, log: Any) -> int:
    from fnhost.cron.engine import Scheduler

    scheduler = Scheduler(config, manager.engine)
    armed = await scheduler.start()
    log.info("fnhost_ready", schedules=armed, home=str(config.home))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
    log.info("fnhost_shutdown")
    return 0


def _schedules(args: argparse.Namespace, config: Any, manager: Any) -> int:
    from fnhost.cron.engine import Scheduler

    scheduler = Scheduler(config, manager.engine)
    command = args.schedules_command

    if command == "list":
        _print([s.to_api() for s in scheduler.list()])
        return 0

    if command == "add":
        schedule = scheduler.add({
            "functionName": args.function_name,
            "cronExpression": args.cron_expression,
            "input": _json_arg(args.input),
            "active": not args.inactive,
            "description": args.description,
        })
        _print(schedule.to_api())
        return 0

    if command == "update":
        changes: dict[str, Any] = {
            "functionName": args.function_name,
            "cronExpression": args.cron_expression,
            "description": args.description,
            "active": args.active,
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        if args.input is not None:
            changes["input"] = _json_arg(args.input)
        updated = scheduler.update(args.id, changes)
        if updated is None:
            _print({"error": f"Schedule {args.id} not found", "code": "SCHEDULE_NOT_FOUND"})
            return 1
        _print(updated.to_api())
        return 0

    if command == "trigger":
        result = asyncio.run(scheduler.trigger_now(args.id))
        if result is None:
            _print({"error": f"Schedule {args.id} not found", "code": "SCHEDULE_NOT_FOUND"})
            return 1
        _print(result.to_api())
        return result.exit_code

    handlers = {
        "delete": scheduler.delete,
        "activate": scheduler.activate,
        "deactivate": scheduler.deactivate,
    }
    found = handlers[command](args.id)
    _print({"success": found, "id": args.id})
    return 0 if found else 1


def _dispatch(args: argparse.Namespace, config: Any, created: list[str], log: Any) -> int:
    from fnhost.core.functions import FunctionManager

    manager = FunctionManager(config)
    command = args.command

    if command == "init":
        log.info("init_complete", paths_created=len(created))
        _print({"home": str(config.home), "created": created})
        return 0

    if command == "list":
        _print([artifact.to_api() for artifact in manager.list()])
        return 0

    if command == "upload":
        data = args.file.read_bytes()
        report = asyncio.run(manager.upload(args.file.name, data))
        _print(report.to_api())
        return 0

    if command == "delete":
        removed = manager.delete(args.name)
        _print({"success": removed, "name": args.name})
        return 0 if removed else 1

    if command == "analyze":
        report = asyncio.run(manager.analyze(args.name))
        _print(report.to_api())
        return 0 if report.success else 1

    if command == "run":
        result = asyncio.run(manager.execute(
            args.name,
            _json_arg(args.input),
            env=_pairs(args.env),
            timeout_ms=args.timeout,
        ))
        _print(result)
        return int(result["exitCode"])

    if command == "env":
        if args.env_command == "get":
            _print(manager.get_env(args.name))
        else:
            manager.set_env(args.name, _pairs(args.pairs))
            _print({"success": True, "name": args.name})
        return 0

    if command == "schedules":
        return _schedules(args, config, manager)

    if command == "serve":
        return asyncio.run(_serve(config, manager, log))

    raise ValidationError(f"Unknown command: {command}")


def main(argv: list[str] | None = None) -> int:
    """Haupteintrittspunkt für fnhost."""
    args = parse_args(argv)

    # 1. Konfiguration laden
    from fnhost.config import ensure_directory_structure, load_config

    config = load_config(args.config)

    # 2. Verzeichnisstruktur sicherstellen
    created = ensure_directory_structure(config)

    # 3. Logging initialisieren
    from fnhost.utils.logging import get_logger, setup_logging

    log_level = args.log_level or config.logging.level
    setup_logging(
        level=log_level,
        log_dir=config.logs_dir,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )
    log = get_logger("fnhost")
    log.debug("fnhost_starting", version=__version__, home=str(config.home), command=args.command)

    for path in created:
        log.info("created_path", path=path)

    try:
        return _dispatch(args, config, created, log)
    except FnHostError as exc:
        log.error("command_failed", command=args.command, code=exc.error_code, error=exc.message)
        _print(exc.to_dict())
        return 1
    except OSError as exc:
        log.error("command_failed", command=args.command, error=str(exc))
        _print({"error": str(exc), "code": "OS_ERROR"})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
