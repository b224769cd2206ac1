#!/usr/bin/env python3
"""rtexport CLI - export examinations from a DICOM archive and manage anonymization keys."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from rtexport.exceptions import AnonymizationError, ConfigError
from rtexport.services.anonymization import AnonymizationKeyStore
from rtexport.services.export.models import ExportOutcome, ExportProgress, ExportRequest
from rtexport.services.export.orchestrator import ExportOrchestrator
from rtexport.services.export.session import CancellationToken, ExportSession
from rtexport.settings import Settings, settings
from rtexport.utils.logger import logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

SETTINGS_TEMPLATE = """# rtexport configuration file

# Remote archive (query/retrieve SCP)
remote_aet = "ARCHIVE"
remote_host = "127.0.0.1"
remote_port = 104

# Local storage SCP, the C-MOVE destination known to the archive
local_aet = "RTEXPORT"
local_port = 11112

# Export
export_root = "./export"
export_examination = true
export_structure = true
export_plan = true
export_dose = true
export_registrations = false
registration_ct = true
registration_mr = true
registration_pet = true
registration_cbct = false

# Anonymization
anonymize = false
# anonymization_key_path = "./export/AnonymizationKey.json"
anonymization_salt = "change-this-salt"
"""

DATA_TYPE_FLAGS = {
    "examination": "export_examination",
    "structure": "export_structure",
    "plan": "export_plan",
    "dose": "export_dose",
    "registrations": "export_registrations",
}


def init_project(path: str) -> None:
    """Write a settings.toml template in the specified directory."""
    project_path = Path(path).resolve()
    project_path.mkdir(parents=True, exist_ok=True)

    settings_file = project_path / "settings.toml"
    if settings_file.exists():
        logger.warning(f"Settings file already exists: {settings_file}")
        return
    settings_file.write_text(SETTINGS_TEMPLATE)
    logger.info(f"Created settings file: {settings_file}")


def load_requests(path: Path) -> list[ExportRequest]:
    """Load export requests from a JSON file holding a list of requests.

    Raises:
        ConfigError: If the file cannot be read or does not validate
    """
    try:
        return TypeAdapter(list[ExportRequest]).validate_json(path.read_bytes())
    except OSError as e:
        raise ConfigError(f"Cannot read export requests {path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Invalid export requests in {path}: {e}") from e


def build_settings(args: argparse.Namespace) -> Settings:
    """Apply command line overrides on top of configured settings."""
    overrides: dict[str, Any] = {}
    if args.export_root:
        overrides["export_root"] = args.export_root
    if args.anonymize:
        overrides["anonymize"] = True
    if args.key_file:
        overrides["anonymization_key_path"] = args.key_file
    for name in args.only or []:
        for flag in DATA_TYPE_FLAGS.values():
            overrides.setdefault(flag, False)
        overrides[DATA_TYPE_FLAGS[name]] = True
    if not overrides:
        return settings
    return Settings(**overrides)


def print_progress(progress: ExportProgress) -> None:
    item = "..." if progress.item_percent < 0 else f"{progress.item_percent:3d}%"
    logger.info(
        f"[{progress.overall_percent:3d}% | {item}] {progress.status}"
        + (f" - {progress.detail}" if progress.detail else "")
    )


async def run_export(requests: list[ExportRequest], config: Settings) -> ExportOutcome:
    """Run the export, cancelling cooperatively on SIGINT/SIGTERM."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop
            pass

    session = ExportSession.from_settings(config, cancel_token=token)
    orchestrator = ExportOrchestrator.from_settings(
        config, session=session, progress=print_progress
    )
    report = await orchestrator.run(requests)

    logger.info(
        f"Outcome: {report.outcome.value}; {report.items_exported}/{report.items_total} exported, "
        f"{report.items_skipped} skipped, {report.transfers_failed}/{report.transfers_attempted} "
        "transfers failed"
    )
    if report.error:
        logger.error(report.error)
    return report.outcome


def export_command(args: argparse.Namespace) -> int:
    config = build_settings(args)
    try:
        requests = load_requests(Path(args.requests))
        outcome = asyncio.run(run_export(requests, config))
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_FAILED

    match outcome:
        case ExportOutcome.COMPLETED:
            return EXIT_OK
        case ExportOutcome.CANCELLED:
            return EXIT_CANCELLED
        case _:
            return EXIT_FAILED


def key_command(args: argparse.Namespace) -> int:
    key_path = Path(args.key_file) if args.key_file else settings.get_key_path()
    store = AnonymizationKeyStore(key_path, salt=settings.anonymization_salt)

    try:
        if args.key_command == "list":
            mappings = store.mappings()
            if not mappings:
                logger.info(f"No mappings in {key_path}")
            for original, token in sorted(mappings.items()):
                print(f"{original}\t{token}")
        elif args.key_command == "set":
            store.set_mapping(args.original, args.token)
            store.save()
            logger.info(f"Mapped {args.original} -> {args.token}")
        elif args.key_command == "remove":
            if not store.remove_mapping(args.original):
                logger.error(f"No mapping for {args.original}")
                return EXIT_FAILED
            store.save()
            logger.info(f"Removed mapping for {args.original}")
        elif args.key_command == "token":
            print(store.get_or_create_token(args.original))
        else:
            logger.error("Missing key subcommand")
            return EXIT_FAILED
    except AnonymizationError as e:
        logger.error(str(e))
        return EXIT_FAILED
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtexport",
        description="Export radiotherapy examinations from a DICOM archive via C-FIND/C-MOVE",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Write a settings.toml template")
    init_parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Directory for settings.toml (default: current directory)",
    )

    # export command
    export_parser = subparsers.add_parser("export", help="Export examinations")
    export_parser.add_argument("requests", help="JSON file with a list of export requests")
    export_parser.add_argument("--export-root", default=None, help="Root folder of the export")
    export_parser.add_argument("--anonymize", action="store_true", help="Anonymize patients")
    export_parser.add_argument("--key-file", default=None, help="Anonymization key file")
    export_parser.add_argument(
        "--only",
        action="append",
        choices=sorted(DATA_TYPE_FLAGS),
        help="Export only these data types (repeatable)",
    )

    # key command
    key_parser = subparsers.add_parser("key", help="Anonymization key management")
    key_parser.add_argument("--key-file", default=None, help="Anonymization key file")
    key_subparsers = key_parser.add_subparsers(dest="key_command")
    key_subparsers.add_parser("list", help="List mappings")
    key_set = key_subparsers.add_parser("set", help="Set a mapping")
    key_set.add_argument("original", help="Original patient ID")
    key_set.add_argument("token", help="Anonymized ID")
    key_remove = key_subparsers.add_parser("remove", help="Remove a mapping")
    key_remove.add_argument("original", help="Original patient ID")
    key_token = key_subparsers.add_parser("token", help="Print (and persist) a patient's token")
    key_token.add_argument("original", help="Original patient ID")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        init_project(args.path)
        return EXIT_OK
    if args.command == "export":
        return export_command(args)
    if args.command == "key":
        return key_command(args)

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
