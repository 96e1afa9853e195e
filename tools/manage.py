#!/usr/bin/env python3
"""
DocVerify Management CLI

Operator commands for the verification cache:
- init-db: Create the PostgreSQL tables and indexes
- sync-status: Show listener checkpoints and unprocessed events
- sync-once: Process every available ledger event, then exit
- reprocess-events: Re-apply projections for unprocessed log entries
- resolve-pending: Settle pending_confirmation records from LedgerB
- verify: Print the proof bundle for a hash or certificate id
- export-events: Export the event log to JSON
- health-check: Check store and ledger connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage sync-status
    python -m tools.manage resolve-pending --stale-minutes 60
    python -m tools.manage verify --certificate-id CERT-20260101-ABC123
"""

import argparse
import json
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docverify.db.config import DatabaseConfig, StoreDriver, get_store_driver  # noqa: E402
from docverify.wiring import Services, build_services  # noqa: E402


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(args, services: Services):
    """Apply schema.sql to the configured database."""
    if get_store_driver() == StoreDriver.MEMORY:
        print("In-memory store configured; nothing to initialize.")
        return 0

    config = DatabaseConfig.from_env()
    print(f"Applying schema to {config.to_url(include_password=False)}...")
    services.store.apply_schema()
    print("[OK] Schema applied")
    return 0


def cmd_sync_status(args, services: Services):
    """Show checkpoint state per ledger."""
    status = services.sync_engine.get_sync_status()
    if args.json:
        _print_json(status)
        return 0

    print("=== Sync Status ===\n")
    for source, info in status["sources"].items():
        print(f"{source}:")
        print(f"  Last synced block: {info['last_synced_block']}")
        print(f"  Last synced at:    {info['last_synced_at'] or 'never'}")
        print(f"  Checkpoint status: {info['checkpoint_status'] or 'none'}")
        if info["error_message"]:
            print(f"  Last error:        {info['error_message']}")
        print(f"  Unprocessed:       {info['unprocessed']}")
    return 0


def cmd_sync_once(args, services: Services):
    """Catch up with both ledgers from the checkpoints."""
    summary = services.sync_engine.catch_up(timeout=args.timeout)
    for source, counts in summary.items():
        details = ", ".join(f"{k}={v}" for k, v in counts.items())
        print(f"{source}: {details}")
    return 0


def cmd_reprocess_events(args, services: Services):
    """Re-dispatch event log entries whose projection failed."""
    summary = services.sync_engine.reprocess_unprocessed()
    print(f"Reprocessed: {summary['processed']}")
    print(f"Still failing: {summary['failed']}")
    return 1 if summary["failed"] else 0


def cmd_resolve_pending(args, services: Services):
    """Settle pending_confirmation records by asking LedgerB."""
    stale_after = timedelta(minutes=args.stale_minutes) if args.stale_minutes else None
    summary = services.orchestrator.resolve_pending(stale_after=stale_after)
    print(f"Verified: {summary['verified']}")
    print(f"Failed:   {summary['failed']}")
    print(f"Pending:  {summary['pending']}")
    return 0


def cmd_verify(args, services: Services):
    """Print the live proof bundle for a document."""
    verifier = services.verifier
    if args.certificate_id:
        bundle = verifier.verify_by_certificate_id(args.certificate_id)
    else:
        bundle = verifier.verify_by_hash(args.hash)
    _print_json(bundle.model_dump(mode="json"))
    return 0 if bundle.verified else 1


def cmd_export_events(args, services: Services):
    """Export the event log to a JSON file."""
    entries = services.store.list_events()
    export_data = [entry.model_dump(mode="json") for entry in entries]

    output_file = args.output or "event_log_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(entries)} events to {output_file}")
    return 0


def cmd_health_check(args, services: Services):
    """Run comprehensive health checks."""
    print("=== DocVerify Health Check ===\n")

    print("Store:")
    print(f"  Type: {type(services.store).__name__}")
    try:
        counts = services.store.ping()
        print(f"  Status: [OK] {counts['records']} records, {counts['events']} events")
    except Exception as e:
        print(f"  Status: [FAIL] {e}")
        return 1

    print("\nSync:")
    for source, info in services.sync_engine.get_sync_status()["sources"].items():
        state = info["checkpoint_status"] or "no checkpoint"
        marker = "[OK]" if state in ("active", "no checkpoint") else "[WARN]"
        print(f"  {source}: {marker} {state} (block {info['last_synced_block']})")

    print("\n=== Health Check Complete ===")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="DocVerify Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create database tables")

    p_status = subparsers.add_parser("sync-status", help="Show sync checkpoints")
    p_status.add_argument("--json", action="store_true", help="Print raw JSON")

    p_once = subparsers.add_parser("sync-once", help="Process available ledger events and exit")
    p_once.add_argument("--timeout", type=float, default=0.0, help="Wait per event (seconds)")

    subparsers.add_parser("reprocess-events", help="Re-apply failed projections")

    p_resolve = subparsers.add_parser("resolve-pending", help="Settle pending records from LedgerB")
    p_resolve.add_argument(
        "--stale-minutes",
        type=int,
        default=0,
        help="Mark pending records with no anchor older than this as failed",
    )

    p_verify = subparsers.add_parser("verify", help="Verify a document on both ledgers")
    target = p_verify.add_mutually_exclusive_group(required=True)
    target.add_argument("--hash", help="Document hash (0x-prefixed or bare hex)")
    target.add_argument("--certificate-id", help="Certificate id (CERT-YYYYMMDD-XXXXXX)")

    p_export = subparsers.add_parser("export-events", help="Export the event log to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: event_log_export.json)")

    subparsers.add_parser("health-check", help="Run comprehensive health checks")

    return parser


def main(argv=None, services: Services = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "sync-status": cmd_sync_status,
        "sync-once": cmd_sync_once,
        "reprocess-events": cmd_reprocess_events,
        "resolve-pending": cmd_resolve_pending,
        "verify": cmd_verify,
        "export-events": cmd_export_events,
        "health-check": cmd_health_check,
    }

    owned = services is None
    services = services or build_services()
    try:
        return commands[args.command](args, services) or 0
    finally:
        if owned:
            services.close()


if __name__ == "__main__":
    sys.exit(main())
