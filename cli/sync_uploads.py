"""Command line interface for the MeetSync upload queue."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from meetsync.function import DatabaseError
from meetsync.function.core.logging_setup import configure_logging
from meetsync.main import MeetingSyncService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect and drive the MeetSync Google Drive upload queue.",
    )
    parser.add_argument(
        "--db",
        help="Path to the MeetSync SQLite database (defaults to the user data directory).",
    )
    parser.add_argument(
        "--settings",
        help="Path to app_settings.json (defaults to the user config directory).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable DEBUG logging.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    enqueue = subparsers.add_parser("enqueue", help="Queue a meeting and upload it now.")
    enqueue.add_argument("meeting_id", type=int, help="Meeting id to upload.")

    subparsers.add_parser("drain", help="Recover interrupted items and upload everything pending.")
    subparsers.add_parser("status", help="Print the queue status as JSON.")

    integrity = subparsers.add_parser(
        "check-integrity", help="Report meetings whose upload status is inconsistent."
    )
    integrity.add_argument(
        "--repair",
        action="store_true",
        help="Reset anomalous meetings to pending and upload them again.",
    )

    subparsers.add_parser(
        "health-check",
        help="Retry old failures, reset stalled uploads and report orphaned recordings.",
    )
    subparsers.add_parser(
        "reconcile",
        help="Match recording files on disk with their recorded paths.",
    )
    subparsers.add_parser("auth", help="Run the Google Drive browser sign-in.")
    return parser


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.debug)
    try:
        service = MeetingSyncService(
            settings_path=Path(args.settings) if args.settings else None,
            db_path=args.db,
            background=False,
            use_eel=False,
        )
    except DatabaseError as exc:
        print(f"Failed to open database: {exc}", file=sys.stderr)
        return 1

    if args.command == "enqueue":
        added = service.enqueue_upload(args.meeting_id)
        print("Queued." if added else "Nothing queued (already uploaded, queued or unknown).")
    elif args.command == "drain":
        summary = service.bootstrap()
        print(f"Reset {len(summary['reset'])} interrupted item(s); queued {len(summary['enqueued'])} meeting(s).")
    elif args.command == "check-integrity":
        report = service.check_integrity(repair=args.repair)
        _print_json(report)
        if report["anomalies"] and not args.repair:
            return 3
        return 0
    elif args.command == "health-check":
        _print_json(service.run_health_check())
        return 0
    elif args.command == "reconcile":
        _print_json(service.run_reconciliation())
        return 0
    elif args.command == "auth":
        try:
            _print_json(service.authenticate())
        except ValueError as exc:
            print(f"Authentication failed: {exc}", file=sys.stderr)
            return 1
        return 0

    status = service.queue_status()
    _print_json(status)
    if status["authRequired"]:
        print("Google Drive authentication is required: run the 'auth' command.", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
