"""Command-line interface for the VPN user synchronisation service."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv() or __name__ != "__main__":
        return

    venv_dir = Path(__file__).resolve().parent / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


_bootstrap_virtualenv()

from vpnsync.config import SyncSettings, load_settings
from vpnsync.directory import Directory
from vpnsync.errors import AlreadySyncing, ServiceUnavailable

logger = logging.getLogger("vpnsync.main")

KNOWN_COMMANDS = {"serve", "sync", "status", "init-db"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $VPNSYNC_CONFIG or config/vpnsync.yaml)",
    )

    parser = argparse.ArgumentParser(description="VPN access server user synchronisation")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", parents=[common], help="Initialise the user directory database")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP API and scheduler")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the API (default: 8080)")
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    sync_parser = subparsers.add_parser("sync", parents=[common], help="Run a single full synchronisation")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the actions without changing the access server",
    )
    sync_parser.add_argument(
        "--delete-orphaned",
        action="store_true",
        help="Remove access server users that have no eligible directory user",
    )

    subparsers.add_parser("status", parents=[common], help="Compare the directory with the access server")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load(args: argparse.Namespace) -> SyncSettings:
    config_path = Path(args.config).expanduser() if getattr(args, "config", None) else None
    return load_settings(config_path)


def _initialise_database(settings: SyncSettings) -> Directory:
    directory = Directory(settings.database_path)
    directory.initialize()
    logger.info("Directory database initialised at %s", settings.database_path)
    return directory


def _serve(
    settings: SyncSettings,
    directory: Directory,
    *,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from vpnsync.application import build_service, create_application
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting synchronisation API on %s://%s:%s", protocol, host, port)

    service = build_service(settings, directory=directory)
    app = create_application(settings, service=service)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False))


def _report_unavailable(exc: ServiceUnavailable) -> None:
    print(f"Synchronisation failed: {exc}", file=sys.stderr)
    print(exc.guidance, file=sys.stderr)
    if exc.partial_run is not None:
        _print_json(exc.partial_run.to_dict())


def _run_sync(settings: SyncSettings, directory: Directory, *, dry_run: bool, delete_orphaned: bool) -> int:
    from vpnsync.application import build_service

    service = build_service(settings, directory=directory)
    try:
        result = service.full_sync(dry_run=dry_run, delete_orphaned=delete_orphaned)
    except ServiceUnavailable as exc:
        _report_unavailable(exc)
        return 1
    except AlreadySyncing as exc:
        print(str(exc), file=sys.stderr)
        return 1

    _print_json(result.to_dict())
    return 0 if result.run.status == "succeeded" else 2


def _show_status(settings: SyncSettings, directory: Directory) -> int:
    from vpnsync.application import build_service

    service = build_service(settings, directory=directory)
    try:
        report = service.status()
    except ServiceUnavailable as exc:
        _report_unavailable(exc)
        return 1
    _print_json(report.to_dict())
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    try:
        settings = _load(args)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    directory = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            settings,
            directory,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "sync":
        return _run_sync(
            settings,
            directory,
            dry_run=args.dry_run,
            delete_orphaned=args.delete_orphaned,
        )
    elif args.command == "status":
        return _show_status(settings, directory)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
