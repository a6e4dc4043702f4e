"""
blocklog Management CLI

Commands for operating the ledger:
- init-store: Create tables/indexes for the configured store
- record-event: Append one event
- list-events: Show the newest entries
- verify-chain: Verify chain integrity
- repair-chain: Recompute hash fields from a trusted anchor (dry run unless --apply)
- export-entries: Export all entries to JSON
- verify-export: Verify an exported JSON file offline
- verify-journal: Verify the signed repair journal
- generate-journal-key: Generate an Ed25519 keypair for the journal

Usage:
    blocklog-manage <command> [options]

Examples:
    blocklog-manage verify-chain
    blocklog-manage repair-chain --start-id 42
    blocklog-manage repair-chain --start-id 42 --apply --operator alice

Exit codes:
    0 - OK
    1 - Chain or journal INVALID, or the append failed
    2 - Precondition or usage error
"""

import argparse
import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from .core import (
    AppendError,
    AuditLedger,
    CanonicalSerializationError,
    ChainForkError,
    ChainVerifier,
    JournalError,
    RepairAbortedError,
    RepairJournal,
    RepairPreconditionError,
    Signer,
    VerificationReport,
)
from .db.store import InMemoryLedgerStore, StoreError
from .observability import setup_logging
from .schemas import EntryFilter, LedgerEntry
from .shared_ledger import LedgerConfig, create_ledger, create_store

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_PRECONDITION = 2

EXPORT_FORMAT_VERSION = 1


def _ledger() -> AuditLedger:
    return create_ledger(LedgerConfig.from_env())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_report(report: VerificationReport) -> None:
    """Print a human-readable verification report."""
    print()
    print("=" * 60)
    print("  CHAIN VERIFICATION")
    print("=" * 60)
    print(f"  Entries checked: {report.total_checked}")
    print(f"  Head id:         {report.head_id}")
    if report.valid:
        print("  Result:          [OK] VALID")
    else:
        print("  Result:          [FAIL] INVALID")
        print(f"  First invalid:   {report.first_invalid_id}")
        print(f"  Violation:       {report.violation}")
        print(f"  Expected:        {report.expected}")
        print(f"  Actual:          {report.actual}")
    print("=" * 60)


# ============================================================
# COMMANDS
# ============================================================

def cmd_init_store(args):
    """Create the configured store (schema is created on connect)."""
    config = LedgerConfig.from_env()
    store = create_store(config)
    print(f"[OK] {type(store).__name__} ready ({store.count()} entries)")
    store.close()
    return EXIT_OK


def cmd_record_event(args):
    """Append one event."""
    details = None
    if args.details:
        try:
            # Decimal keeps fractional values canonical (floats are rejected)
            details = json.loads(args.details, parse_float=Decimal)
        except json.JSONDecodeError as e:
            print(f"[FAIL] --details is not valid JSON: {e}", file=sys.stderr)
            return EXIT_PRECONDITION

    ledger = _ledger()
    try:
        sequence_id = ledger.record_event(
            args.action,
            actor_name=args.actor,
            target_type=args.target_type,
            target_name=args.target_name,
            details=details,
        )
    except (ValueError, CanonicalSerializationError) as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return EXIT_PRECONDITION
    except ChainForkError as e:
        print(f"[WARN] Event recorded as entry {e.sequence_id}, but the chain needs repair "
              f"from {e.repair_from_id}", file=sys.stderr)
        return EXIT_INVALID
    except AppendError as e:
        print(f"[FAIL] Event NOT recorded: {e}", file=sys.stderr)
        return EXIT_INVALID

    entry = ledger.get_entry(sequence_id)
    print(f"[OK] Recorded entry {sequence_id}")
    if entry is not None:
        print(f"  Block hash: {entry.block_hash}")
    return EXIT_OK


def cmd_list_events(args):
    """Show the newest entries."""
    ledger = _ledger()
    filters = EntryFilter(action=args.action, actor_name=args.actor, target_type=args.target_type)
    entries, total = ledger.list_events(filters=filters, limit=args.limit, offset=args.offset)

    if args.json:
        _print_json({
            "total": total,
            "logs": [e.to_public_dict() for e in entries],
        })
        return EXIT_OK

    print(f"{total} matching entries")
    for e in entries:
        target = f"{e.target_type or '-'}:{e.target_name or '-'}"
        print(f"  #{e.sequence_id:<6} {e.timestamp}  {e.action:<22} {e.actor_name or '-':<16} "
              f"{target}  {e.block_hash[:16]}...")
    return EXIT_OK


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    ledger = _ledger()
    try:
        report = ledger.verify_chain(
            start_id=args.start_id,
            expected_prev_hash=args.expected_prev_hash,
        )
    except ValueError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return EXIT_PRECONDITION

    if args.json:
        _print_json(report.to_dict())
    else:
        print_report(report)
    return EXIT_OK if report.valid else EXIT_INVALID


def cmd_repair_chain(args):
    """Recompute hash fields from start_id onward."""
    ledger = _ledger()
    try:
        report = ledger.repair_chain(
            args.start_id,
            dry_run=not args.apply,
            operator=args.operator,
        )
    except RepairPreconditionError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return EXIT_PRECONDITION
    except RepairAbortedError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        if e.failed_id is not None:
            print(f"  Failed at entry {e.failed_id}; {e.applied_count} change(s) were written",
                  file=sys.stderr)
        return EXIT_INVALID

    if args.json:
        _print_json(report.to_dict())
        return EXIT_OK

    mode = "DRY RUN" if report.dry_run else "APPLIED"
    print(f"Repair from entry {report.start_id} [{mode}]")
    if not report.anchor_verified:
        print(f"  [WARN] Anchor entry {report.start_id - 1} does not verify itself")
    print(f"  Entries examined: {report.blocks_examined}")
    print(f"  Entries changed:  {len(report.blocks_changed)}")
    for change in report.blocks_changed:
        print(f"    #{change.id}: {change.old_hash[:16]}... -> {change.new_hash[:16]}...")
    if report.dry_run and report.blocks_changed:
        print("\n  Re-run with --apply to write these changes.")
    elif not report.dry_run:
        print(f"  Applied: {report.applied_count} change(s) (journal record {report.journal_record})")
    return EXIT_OK


def cmd_export_entries(args):
    """Export all entries to a JSON file, oldest first."""
    ledger = _ledger()
    store = ledger.store

    entries = []
    after = 0
    while True:
        page = store.read_after(after, 500)
        if not page:
            break
        entries.extend(e.to_public_dict() for e in page)
        after = page[-1].sequence_id

    export_data = {
        "format_version": EXPORT_FORMAT_VERSION,
        "entry_count": len(entries),
        "head_hash": entries[-1]["block_hash"] if entries else None,
        "entries": entries,
    }

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(entries)} entries to {output_file}")
    return EXIT_OK


def _load_export(path: Path) -> list[LedgerEntry]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Export must be a JSON object")
    if data.get("format_version") != EXPORT_FORMAT_VERSION:
        raise ValueError(f"Unsupported export format: {data.get('format_version')!r}")
    entries = []
    for item in data.get("entries", []):
        item = dict(item)
        item["sequence_id"] = item.pop("id")
        entries.append(LedgerEntry.model_validate(item))
    return entries


def cmd_verify_export(args):
    """Verify an exported file without touching any store."""
    try:
        entries = _load_export(Path(args.file))
        store = InMemoryLedgerStore.from_entries(entries)
    except (OSError, ValueError, KeyError, AttributeError, TypeError, StoreError) as e:
        print(f"[FAIL] Cannot read export: {e}", file=sys.stderr)
        return EXIT_PRECONDITION

    report = ChainVerifier(store).verify()
    if args.json:
        _print_json(report.to_dict())
    else:
        print_report(report)
    return EXIT_OK if report.valid else EXIT_INVALID


def cmd_verify_journal(args):
    """Verify the signed repair journal."""
    path = Path(args.path) if args.path else RepairJournal.from_env().path
    if not path.exists():
        print(f"[FAIL] Journal not found: {path}", file=sys.stderr)
        return EXIT_PRECONDITION

    try:
        result = RepairJournal(path).verify(public_key=args.public_key)
    except JournalError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return EXIT_PRECONDITION

    if args.json:
        _print_json(result.to_dict())
    elif result.valid:
        print(f"[OK] Journal verified: {result.records_checked} records")
    else:
        print(f"[FAIL] Journal broken at record {result.first_invalid_seq}: {result.reason}")
    return EXIT_OK if result.valid else EXIT_INVALID


def cmd_generate_journal_key(args):
    """Generate an Ed25519 keypair for signing the repair journal."""
    private_key, public_key = Signer.generate_keypair()
    print("Set these environment variables (keep the private key SECRET):")
    print(f"BLOCKLOG_JOURNAL_PRIVATE_KEY={private_key}")
    print(f"BLOCKLOG_JOURNAL_PUBLIC_KEY={public_key}")
    return EXIT_OK


# ============================================================
# PARSER
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blocklog-manage",
        description="blocklog Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-store", help="Create the configured store")

    p_record = subparsers.add_parser("record-event", help="Append one event")
    p_record.add_argument("--action", required=True, help="Action tag, e.g. domain_register")
    p_record.add_argument("--actor", help="Actor display name")
    p_record.add_argument("--target-type", help="Target type, e.g. domain")
    p_record.add_argument("--target-name", help="Target name")
    p_record.add_argument("--details", help="Details as a JSON object")

    p_list = subparsers.add_parser("list-events", help="Show the newest entries")
    p_list.add_argument("--action", help="Filter by action")
    p_list.add_argument("--actor", help="Filter by actor name")
    p_list.add_argument("--target-type", help="Filter by target type")
    p_list.add_argument("--limit", type=int, default=50, help="Max entries (1-100)")
    p_list.add_argument("--offset", type=int, default=0, help="Entries to skip")
    p_list.add_argument("--json", action="store_true", help="JSON output")

    p_verify = subparsers.add_parser("verify-chain", help="Verify ledger chain integrity")
    p_verify.add_argument("--start-id", type=int, help="First entry to verify")
    p_verify.add_argument("--expected-prev-hash", help="Trusted prev_hash for --start-id")
    p_verify.add_argument("--json", action="store_true", help="JSON output")

    p_repair = subparsers.add_parser(
        "repair-chain",
        help="Recompute hash fields from a trusted anchor (dry run unless --apply)"
    )
    p_repair.add_argument("--start-id", type=int, required=True,
                          help="First entry to repair; entry start-id - 1 is the anchor")
    p_repair.add_argument("--apply", action="store_true", help="Write the changes")
    p_repair.add_argument("--operator", help="Who is running the repair (journaled)")
    p_repair.add_argument("--json", action="store_true", help="JSON output")

    p_export = subparsers.add_parser("export-entries", help="Export all entries to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    p_vexport = subparsers.add_parser("verify-export", help="Verify an exported file offline")
    p_vexport.add_argument("file", help="Export file")
    p_vexport.add_argument("--json", action="store_true", help="JSON output")

    p_journal = subparsers.add_parser("verify-journal", help="Verify the repair journal")
    p_journal.add_argument("--path", help="Journal file (default: BLOCKLOG_JOURNAL_PATH)")
    p_journal.add_argument("--public-key", help="Require every record to be signed by this key")
    p_journal.add_argument("--json", action="store_true", help="JSON output")

    subparsers.add_parser("generate-journal-key", help="Generate a journal signing keypair")

    return parser


COMMANDS = {
    "init-store": cmd_init_store,
    "record-event": cmd_record_event,
    "list-events": cmd_list_events,
    "verify-chain": cmd_verify_chain,
    "repair-chain": cmd_repair_chain,
    "export-entries": cmd_export_entries,
    "verify-export": cmd_verify_export,
    "verify-journal": cmd_verify_journal,
    "generate-journal-key": cmd_generate_journal_key,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_PRECONDITION

    setup_logging()
    return COMMANDS[args.command](args) or EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
