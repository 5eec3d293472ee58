"""Command line entry points for running and checking a Chicken Cams host."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Sequence

from .config import ConfigManager, Registry
from .devices import is_stable_source, source_present
from .events import CameraEventLog
from .supervision import CameraSupervisor
from .version import APP_VERSION

DEFAULT_CONFIG_PATH = Path("data/registry.json")
CONFIG_ENV = "CHICKENCAMS_CONFIG"

logger = logging.getLogger(__name__)


def default_config_path() -> Path:
    value = os.environ.get(CONFIG_ENV)
    return Path(value) if value else DEFAULT_CONFIG_PATH


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``chicken-cams`` command."""

    parser = argparse.ArgumentParser(
        prog="chicken-cams",
        description="Camera fleet supervisor and recording server",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Registry file (default: ${CONFIG_ENV} or {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API with camera supervision.")
    serve.add_argument("--host", default=None, help="Override the listen address.")
    serve.add_argument("--port", type=int, default=None, help="Override the listen port.")
    serve.add_argument(
        "--no-supervise",
        action="store_true",
        help="Serve recordings and downloads without starting capture workers.",
    )

    subparsers.add_parser("supervise", help="Run camera supervision without the HTTP API.")

    check = subparsers.add_parser("check", help="Validate the registry and host tooling.")
    check.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def check_registry(registry: Registry) -> dict[str, object]:
    """Inspect tooling and camera sources, returning a report."""

    ffmpeg = registry.recordings.ffmpeg
    ffmpeg_path = shutil.which(ffmpeg)
    capture = registry.capture_command
    capture_ok = capture.is_file() and os.access(capture, os.X_OK)
    cameras: list[dict[str, object]] = []
    problems: list[str] = []
    if ffmpeg_path is None:
        problems.append(f"{ffmpeg} not found on PATH; downloads will fail.")
    if not capture_ok:
        problems.append(f"Capture command {capture} is missing or not executable.")
    for index, camera in enumerate(registry.cameras):
        stable = is_stable_source(camera)
        present = source_present(camera)
        host, port = camera.destination(registry.defaults, index)
        cameras.append(
            {
                "id": camera.id,
                "enabled": camera.enabled,
                "source": camera.descriptor,
                "stable": stable,
                "present": present,
                "destination": f"{host}:{port}",
            }
        )
        if camera.enabled and not stable:
            problems.append(
                f"Camera {camera.id} uses unstable source {camera.descriptor!r}; "
                "it will not be started."
            )
        elif camera.enabled and not present:
            problems.append(f"Camera {camera.id} source {camera.descriptor!r} is not present.")
    return {
        "ffmpeg": ffmpeg_path,
        "capture_command": str(capture),
        "capture_command_ok": capture_ok,
        "cameras": cameras,
        "problems": problems,
        "ok": not problems,
    }


def _print_report(report: dict[str, Any]) -> None:
    print(f"ffmpeg: {report['ffmpeg'] or 'missing'}")
    status = "ok" if report["capture_command_ok"] else "missing"
    print(f"capture command: {report['capture_command']} ({status})")
    cameras = report.get("cameras") or []
    if not cameras:
        print("No cameras configured.")
    for entry in cameras:
        flags = []
        if not entry["enabled"]:
            flags.append("disabled")
        flags.append("stable" if entry["stable"] else "UNSTABLE")
        flags.append("present" if entry["present"] else "absent")
        summary = ", ".join(flags)
        print(f"- {entry['id']}: {entry['source']} -> {entry['destination']} [{summary}]")
    problems = report.get("problems") or []
    if problems:
        print("Problems:")
        for problem in problems:
            print(f"  * {problem}")


async def _supervise(config_manager: ConfigManager) -> None:
    registry = config_manager.get_registry()
    supervisor = CameraSupervisor(
        config_manager.get_registry,
        event_log=CameraEventLog(registry.events_path),
    )
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-POSIX loops
            pass
    supervisor.start()
    logger.info("Supervising %d camera(s); press Ctrl+C to stop", len(registry.cameras))
    try:
        await stop_event.wait()
    finally:
        await supervisor.aclose()


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config_path = args.config or default_config_path()
    try:
        config_manager = ConfigManager(config_path)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.command == "check":
        report = check_registry(config_manager.get_registry())
        if args.json:
            json.dump(report, sys.stdout)
            sys.stdout.write("\n")
        else:
            _print_report(report)
        return 0 if report["ok"] else 1

    if args.command == "supervise":
        try:
            asyncio.run(_supervise(config_manager))
        except KeyboardInterrupt:  # pragma: no cover - interactive use
            pass
        return 0

    import uvicorn

    from .app import create_app

    registry = config_manager.get_registry()
    app = create_app(config_path, start_supervisor=not args.no_supervise)
    uvicorn.run(
        app,
        host=args.host or registry.server.host,
        port=args.port or registry.server.port,
        log_level=args.log_level.lower(),
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``chicken-cams`` console script."""

    return run(argv)


__all__ = ["build_parser", "check_registry", "default_config_path", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
