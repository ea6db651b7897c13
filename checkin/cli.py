"""
Check-in Engine - CLI

Usage:
    # Run a batch from a CSV export of the request sheet
    checkin run --input requests.csv

    # Same, against a fixture registry instead of the live service
    checkin run --input requests.csv --fixture fixtures/sample.yaml

    # Excel exports are often GBK
    checkin run --input requests.csv --encoding gbk

    # Personnel usage and ledger size
    checkin status

    # Import the older JSON checkpoint files
    checkin import-legacy --nurse nurses.json --physician doctors.json \\
        --caregiver caregivers.json --ledger successful_users.json

    # Status API for a dashboard
    checkin serve --port 8080

Exit codes: 0 all requests ok, 1 some requests failed, 2 fatal initialization error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from checkin.allocator import PersonnelAllocator
from checkin.config import Settings, load_settings
from checkin.errors import (
    CheckpointCorrupt,
    ConfigError,
    IntakeError,
    PersistenceFailure,
    PreflightFailed,
)
from checkin.intake import read_csv
from checkin.logging import configure_logging
from checkin.progress import WebhookSink
from checkin.remote import http_registry
from checkin.store import CheckpointStore, import_legacy
from checkin.types import Role

logger = logging.getLogger("checkin.cli")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def _registry(settings: Settings, fixture: str | None):
    if fixture:
        from fixtures.registry import FixtureRegistry
        return FixtureRegistry.from_yaml(fixture)
    return http_registry(settings)


def cmd_run(args, settings: Settings) -> int:
    """Run one batch."""
    from checkin.runner import execute_run

    intake = read_csv(args.input, encoding=args.encoding or settings.intake.encoding)
    for rejected in intake.rejected:
        print(f"  skipped row {rejected.line}: {rejected.reason}", file=sys.stderr)
    if not intake.requests:
        print("Error: no usable requests in input", file=sys.stderr)
        return EXIT_FATAL

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  CHECK-IN RUN: {len(intake.requests)} requests", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    sink = WebhookSink(args.webhook, progress_every=args.webhook_every) if args.webhook else None
    registry = _registry(settings, args.fixture)
    try:
        with CheckpointStore(settings.storage.checkpoint_path) as store:
            result = execute_run(
                settings, intake.requests, registry, store,
                sink=sink,
                check=not args.no_preflight,
                export=not args.no_report,
            )
    except PreflightFailed as e:
        print("\n  ✗ PREFLIGHT FAILED", file=sys.stderr)
        for issue in e.issues:
            print(f"    - {issue}", file=sys.stderr)
        return EXIT_FATAL
    finally:
        close = getattr(registry, "close", None)
        if close:
            close()
        if sink is not None:
            sink.flush()

    summary = result.summary
    counts = summary.statistics.counts()
    print(f"\n  Run:       {summary.run_id}", file=sys.stderr)
    print(f"  Total:     {counts['total']}", file=sys.stderr)
    print(f"  Succeeded: {counts['succeeded']}", file=sys.stderr)
    print(f"  Skipped:   {counts['skipped']}", file=sys.stderr)
    print(f"  Failed:    {counts['failed']}", file=sys.stderr)
    print(f"  Elapsed:   {summary.elapsed_seconds:.1f}s", file=sys.stderr)
    if summary.cancelled:
        print("  (cancelled)", file=sys.stderr)
    for failure in summary.failures:
        print(f"    ✗ {failure.request_id}: {failure.reason}", file=sys.stderr)
    if result.report_path:
        print(f"  Report:    {result.report_path}", file=sys.stderr)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, ensure_ascii=False, indent=2)

    return EXIT_OK if counts["failed"] == 0 else EXIT_FAILURES


def cmd_status(args, settings: Settings) -> int:
    """Show personnel usage and ledger size."""
    with CheckpointStore(settings.storage.checkpoint_path) as store:
        allocator = PersonnelAllocator(store, settings.limits())
        status = {
            "checkpoint": settings.storage.checkpoint_path,
            "ledger_size": store.ledger_size(),
            "personnel": allocator.stats(),
        }
    if args.json:
        print(json.dumps(status, ensure_ascii=False, indent=2))
        return EXIT_OK

    print(f"\n  Checkpoint: {status['checkpoint']}")
    print(f"  Completed:  {status['ledger_size']}")
    for role, stats in status["personnel"].items():
        print(f"  {role:<10} total {stats['total']:>3}  available {stats['available']:>3}  "
              f"used {stats['used_capacity']}/{stats['total_capacity']}")
    return EXIT_OK


def cmd_import_legacy(args, settings: Settings) -> int:
    """Import JSON checkpoint files from the previous tool."""
    role_files = {
        Role.NURSE: args.nurse,
        Role.PHYSICIAN: args.physician,
        Role.CAREGIVER: args.caregiver,
    }
    if not any(role_files.values()) and not args.ledger:
        print("Error: nothing to import", file=sys.stderr)
        return EXIT_FATAL
    with CheckpointStore(settings.storage.checkpoint_path) as store:
        imported = import_legacy(store, role_files, args.ledger)
    for key, count in imported.items():
        print(f"  {key:<10} {count}")
    return EXIT_OK


def cmd_serve(args, settings: Settings) -> int:
    """Run the status API."""
    import uvicorn

    from api.server import create_app

    registry_factory = None
    if args.fixture:
        from fixtures.registry import FixtureRegistry
        fixture = args.fixture
        registry_factory = lambda _settings: FixtureRegistry.from_yaml(fixture)  # noqa: E731

    app = create_app(settings, registry_factory=registry_factory)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.logging.level.lower())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="checkin",
        description="Check-in Engine - resumable batch registration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Config YAML (default: CHECKIN_CONFIG_PATH or checkin.yaml)")
    parser.add_argument("--env", default="", help="Config overlay profile (default: CHECKIN_ENV)")
    parser.add_argument("--db", default="", help="Checkpoint database path (overrides storage.checkpoint_path)")
    parser.add_argument("--log-level", default="", help="Override logging.level")

    subs = parser.add_subparsers(dest="command", help="Command")

    run_p = subs.add_parser("run", help="Run a batch of registrations")
    run_p.add_argument("--input", "-i", required=True, help="CSV export of the request sheet")
    run_p.add_argument("--encoding", help="Input file encoding, e.g. gbk (default: intake.encoding)")
    run_p.add_argument("--fixture", help="Fixture registry YAML instead of the live service")
    run_p.add_argument("--webhook", help="POST progress events to this URL")
    run_p.add_argument("--webhook-every", type=int, default=1, help="Send every Nth progress event")
    run_p.add_argument("--no-preflight", action="store_true", help="Skip the preflight check")
    run_p.add_argument("--no-report", action="store_true", help="Do not write the run report")
    run_p.add_argument("--output", "-o", help="Save run summary JSON")

    status_p = subs.add_parser("status", help="Show personnel usage and ledger size")
    status_p.add_argument("--json", action="store_true")

    import_p = subs.add_parser("import-legacy", help="Import older JSON checkpoint files")
    import_p.add_argument("--nurse", help="Nurse [{id, count}] JSON")
    import_p.add_argument("--physician", help="Physician [{id, count}] JSON")
    import_p.add_argument("--caregiver", help="Caregiver [{id, count}] JSON")
    import_p.add_argument("--ledger", help="Completed names JSON array")

    serve_p = subs.add_parser("serve", help="Run the status API")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8080)
    serve_p.add_argument("--fixture", help="Fixture registry YAML instead of the live service")

    return parser


COMMANDS = {
    "run": cmd_run,
    "status": cmd_status,
    "import-legacy": cmd_import_legacy,
    "serve": cmd_serve,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_FATAL

    try:
        settings = load_settings(args.config, env=args.env)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL
    if args.db:
        settings.storage.checkpoint_path = args.db
    if args.log_level:
        settings.logging.level = args.log_level

    problems = settings.validate()
    if problems:
        for problem in problems:
            print(f"Config error: {problem}", file=sys.stderr)
        return EXIT_FATAL

    configure_logging(level=settings.logging.level, fmt=settings.logging.format,
                      file=settings.logging.file)

    try:
        return COMMANDS[args.command](args, settings)
    except (CheckpointCorrupt, ConfigError, IntakeError, PersistenceFailure, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
