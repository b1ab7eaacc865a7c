"""tentmap CLI — command-line interface for the marker map and vote tally.

Usage:
    tentmap status
    tentmap create-marker --type encampment --lat 37.77 --lng -122.42 --tent-count 4
    tentmap vote --marker <id> --voter alice --choice yes
    tentmap process-votes
    tentmap news --limit 5
    tentmap stats
    tentmap delete-after 2026-01-20
    tentmap reset-database --yes
    tentmap trigger-voting https://example.org/processVotes
    tentmap serve
    tentmap schedule
    tentmap check-invariants
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests

from tentmap.config import DEFAULT_CONFIG_DIR, Settings
from tentmap.logging_config import setup_logging
from tentmap.models.marker import MarkerType
from tentmap.service import TentMapService

logger = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> tuple[Settings, TentMapService]:
    settings = Settings.from_config_dir(args.config)
    if args.db is not None:
        settings = dataclasses.replace(settings, db_path=args.db)
    setup_logging(settings.log_level, settings.log_file)
    return settings, TentMapService.from_settings(settings)


def _fail(errors: list[str]) -> int:
    print(f"Failed: {'; '.join(errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    _, service = _load(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_create_marker(args: argparse.Namespace) -> int:
    _, service = _load(args)
    attributes: dict = {}
    if args.side is not None:
        attributes["sideOfStreet"] = args.side
    if args.tent_count is not None:
        attributes["tentCount"] = args.tent_count
    if args.incident_type is not None:
        attributes["incidentType"] = args.incident_type
    if args.incident_time is not None:
        attributes["incidentDateTime"] = args.incident_time

    result = service.create_marker(
        marker_type=MarkerType(args.type),
        latitude=args.lat,
        longitude=args.lng,
        attributes=attributes,
        marker_id=args.id,
    )
    if result.success:
        print(f"Created marker: {result.data['marker_id']} ({result.data['status']})")
        return 0
    return _fail(result.errors)


def cmd_vote(args: argparse.Namespace) -> int:
    _, service = _load(args)
    result = service.submit_vote(args.marker, args.voter, args.choice)
    if result.success:
        print(
            f"Vote recorded on {args.marker}: "
            f"yes={result.data['votes_yes']} no={result.data['votes_no']}"
        )
        return 0
    return _fail(result.errors)


def cmd_process_votes(args: argparse.Namespace) -> int:
    _, service = _load(args)
    result = service.process_votes()
    print(json.dumps(result.data, indent=2))
    return 0 if result.success else 1


def cmd_news(args: argparse.Namespace) -> int:
    _, service = _load(args)
    for record in service.list_news(args.limit):
        print(f"{record.created_at:%Y-%m-%d %H:%M} {record.title}: {record.message}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    _, service = _load(args)
    print(json.dumps(service.stats(), indent=2))
    return 0


def cmd_delete_after(args: argparse.Namespace) -> int:
    try:
        cutoff = datetime.strptime(args.date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return _fail([f"Invalid date format {args.date!r}. Use YYYY-MM-DD"])
    _, service = _load(args)
    result = service.delete_markers_created_after(cutoff)
    if result.success:
        print(f"Deleted {result.data['deleted']} markers")
        return 0
    return _fail(result.errors)


def cmd_reset_database(args: argparse.Namespace) -> int:
    if not args.yes:
        return _fail(["Refusing to delete all data without --yes"])
    _, service = _load(args)
    result = service.reset_database()
    if result.success:
        for table, count in result.data["deleted"].items():
            print(f"Deleted {count} documents from {table}")
        return 0
    return _fail(result.errors)


def cmd_trigger_voting(args: argparse.Namespace) -> int:
    """POST to a deployed /processVotes endpoint and print the outcome."""
    try:
        response = requests.post(args.url, json={}, timeout=args.timeout)
    except requests.RequestException as e:
        return _fail([f"Request failed: {e}"])
    if not response.ok:
        return _fail([f"HTTP error! status: {response.status_code}"])

    result = response.json()
    print("Voting update completed:")
    print(f"  Markers processed: {result.get('processed')}")
    print(f"  Markers added: {result.get('added')}")
    print(f"  Markers removed: {result.get('removed')}")
    print(f"  Votes cleared: {result.get('votesCleared')}")
    print(f"  Timestamp: {result.get('timestamp')}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from tentmap.api import create_app

    settings, service = _load(args)
    app = create_app(service=service)
    uvicorn.run(
        app,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_config=None,
    )
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    from tentmap.scheduler import build_scheduler

    settings, service = _load(args)
    scheduler = build_scheduler(service, settings)
    logger.info("Scheduler active: '%s' (%s)", settings.schedule, settings.timezone)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Verify that every marker's counters match its ledger entries."""
    _, service = _load(args)
    try:
        errors = service.check_consistency()
    except ValueError as e:
        errors = [f"Corrupt marker data: {e}"]
    if errors:
        for error in errors:
            print(f"  {error}", file=sys.stderr)
        print(f"Invariant check FAILED ({len(errors)} problems)", file=sys.stderr)
        return 1
    print("Invariant check passed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tentmap",
        description="tentmap: street report map and daily vote tally",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Override the SQLite database path",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show system status")

    # create-marker
    p_create = sub.add_parser("create-marker", help="Report a new marker")
    p_create.add_argument("--type", required=True, choices=[t.value for t in MarkerType])
    p_create.add_argument("--lat", required=True, type=float, help="Latitude")
    p_create.add_argument("--lng", required=True, type=float, help="Longitude")
    p_create.add_argument("--id", help="Marker ID (default: generated)")
    p_create.add_argument("--side", help="Side of street (rv)")
    p_create.add_argument("--tent-count", type=int, help="Number of tents (encampment)")
    p_create.add_argument("--incident-type", help="Incident type (incident)")
    p_create.add_argument("--incident-time", help="Incident time, ISO-8601 (incident)")

    # vote
    p_vote = sub.add_parser("vote", help="Vote on whether a marker is still there")
    p_vote.add_argument("--marker", required=True, help="Marker ID")
    p_vote.add_argument("--voter", required=True, help="Voter identity")
    p_vote.add_argument("--choice", required=True, choices=["yes", "no"])

    sub.add_parser("process-votes", help="Run the vote tally now")

    p_news = sub.add_parser("news", help="Show recent tally summaries")
    p_news.add_argument("--limit", type=int, default=5)

    sub.add_parser("stats", help="Show database statistics")

    p_del = sub.add_parser("delete-after", help="Delete markers created after a date")
    p_del.add_argument("date", help="Cutoff date, YYYY-MM-DD (UTC)")

    p_reset = sub.add_parser("reset-database", help="Delete all markers, votes, and news")
    p_reset.add_argument("--yes", action="store_true", help="Confirm deletion")

    p_trig = sub.add_parser("trigger-voting", help="Call a deployed /processVotes endpoint")
    p_trig.add_argument("url", help="Endpoint URL")
    p_trig.add_argument("--timeout", type=float, default=60.0)

    p_serve = sub.add_parser("serve", help="Run the HTTP trigger")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)

    sub.add_parser("schedule", help="Run the tally on the configured schedule")

    sub.add_parser("check-invariants", help="Check counters against the vote ledger")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "create-marker": cmd_create_marker,
        "vote": cmd_vote,
        "process-votes": cmd_process_votes,
        "news": cmd_news,
        "stats": cmd_stats,
        "delete-after": cmd_delete_after,
        "reset-database": cmd_reset_database,
        "trigger-voting": cmd_trigger_voting,
        "serve": cmd_serve,
        "schedule": cmd_schedule,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
