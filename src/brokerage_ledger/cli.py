"""Command-line interface for Brokerage Ledger."""

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path

from brokerage_ledger import __version__
from brokerage_ledger.config import get_settings
from brokerage_ledger.container import Container
from brokerage_ledger.domain.deltas import ExcludeDelta
from brokerage_ledger.domain.value_objects import Thoroughness, ValidationStatus
from brokerage_ledger.exceptions import BrokerageLedgerError
from brokerage_ledger.logging_config import configure_logging
from brokerage_ledger.services.categorization import WindowStatus
from brokerage_ledger.services.transaction_builder import describe_rows


def get_default_db_path() -> Path:
    """Get the default database path in user's home directory."""
    return Path.home() / ".brokerage_ledger" / "ledger.db"


def _db_path(args: argparse.Namespace) -> Path:
    return Path(args.database) if args.database else get_default_db_path()


def create_container(db_path: Path) -> Container:
    settings = get_settings().model_copy(update={"sqlite_path": db_path})
    return Container(settings=settings)


def _open(args: argparse.Namespace) -> Container | None:
    db_path = _db_path(args)
    if not db_path.exists():
        print(f"Error: Database not found at {db_path}")
        print("Run 'brokerage-ledger init' to create a new database")
        return None
    return create_container(db_path)


def read_csv_rows(path: Path) -> list[dict[str, str]]:
    """Read an already-tokenized export; blank lines and unnamed columns are dropped."""
    records: list[dict[str, str]] = []
    with path.open(newline="", encoding="utf-8-sig") as handle:
        for record in csv.DictReader(handle):
            row = {
                key.strip(): (value or "").strip()
                for key, value in record.items()
                if key is not None
            }
            if any(row.values()):
                records.append(row)
    return records


def parse_row_spec(spec: str) -> list[int]:
    """Parse '3,5,10-12' into [3, 5, 10, 11, 12]."""
    numbers: set[int] = set()
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, _, end = part.partition("-")
            low, high = int(start), int(end)
            if low > high:
                raise ValueError(f"Invalid row range: {part}")
            numbers.update(range(low, high + 1))
        else:
            numbers.add(int(part))
    if not numbers or min(numbers) < 1:
        raise ValueError(f"Invalid row list: {spec}")
    return sorted(numbers)


def _format_rows(rows: list[int], limit: int = 20) -> str:
    shown = ", ".join(str(n) for n in rows[:limit])
    if len(rows) > limit:
        shown += f", ... ({len(rows) - limit} more)"
    return shown


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize a new database."""
    db_path = _db_path(args)

    if db_path.exists() and not args.force:
        print(f"Database already exists at {db_path}")
        print("Use --force to reinitialize (WARNING: will delete existing data)")
        return 1

    if db_path.exists() and args.force:
        db_path.unlink()

    with create_container(db_path) as container:
        container.database  # noqa: B018 - creates the schema
    print(f"Initialized database at {db_path}")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(f"brokerage-ledger {__version__}")
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    """Create a ledger session for one account."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.create_session(
                args.name,
                args.institution or container.settings.default_institution,
                account_name=args.account or "",
            )
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
    print(f"Session created: {session.id}")
    print(f"  Name: {session.name}")
    print(f"  Institution: {session.institution}")
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    """List ledger sessions."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        sessions = container.store.list_sessions()
    if not sessions:
        print("No sessions")
        return 0
    for session in sessions:
        stats = session.statistics
        print(
            f"{session.name} [{session.status.value}] {session.institution}: "
            f"{stats.total_rows} rows, {stats.transaction_count} transactions, "
            f"{stats.uncovered_rows} uncovered"
        )
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Append rows from a CSV export to a session."""
    file_path = Path(args.file)
    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        return 1

    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
            records = read_csv_rows(file_path)
            result = container.ledger_service.import_rows(
                session, records, source_file=file_path.name
            )
        except (BrokerageLedgerError, csv.Error, UnicodeDecodeError) as e:
            print(f"Error: {e}")
            return 1

    print(f"Imported {len(result.appended)} rows from {file_path.name}")
    if result.appended:
        print(f"  Row numbers: {result.first_row}-{result.last_row}")
    if result.skipped:
        print(f"  Skipped {result.skipped} previously imported rows")
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    """Group and build transactions for every uncovered row."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
            summary = container.ledger_service.build(session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1

    print(f"Groups: {summary.group_count}")
    print(f"Transactions built: {len(summary.built)}")
    print(f"Rows covered: {summary.rows_covered}")
    if summary.rejected:
        print(f"Rejected groups: {len(summary.rejected)}")
        for result in summary.rejected:
            assert result.rejection is not None
            print(
                f"  rows {_format_rows(result.group.row_numbers)}: "
                f"{result.rejection.rejection.value} - {result.rejection.message}"
            )
    for conflict in summary.conflicts:
        print(f"  conflict: {conflict}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show session statistics."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
        stats = session.recompute_statistics()
        runs = container.store.list_runs(session.id)

    print(f"Session: {session.name} ({session.id})")
    print(f"  Institution: {session.institution}")
    print(f"  Status: {session.status.value}")
    if session.error_message:
        print(f"  Message: {session.error_message}")
    print(f"  Rows: {stats.total_rows}")
    print(f"  Transactions: {stats.transaction_count} ({stats.unbalanced_count} unbalanced)")
    print(f"  Covered rows: {stats.covered_rows}")
    print(f"  Excluded rows: {stats.excluded_rows}")
    print(f"  Uncovered rows: {stats.uncovered_rows}")
    print(f"  Cursor: {session.cursor}")
    if runs:
        last = runs[-1]
        outcome = last.outcome.value if last.outcome else "incomplete"
        print(
            f"  Last reconciliation: {outcome}, {last.fixes_applied} fixes applied, "
            f"max discrepancy {last.final_max_discrepancy}"
        )
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate the session ledger; exit 1 when critical."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
        report = container.ledger_service.validate(session)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        coverage = report.coverage
        print(f"Status: {report.status.value}")
        print(
            f"Coverage: {coverage.covered_rows}/{coverage.total_rows} covered, "
            f"{len(coverage.excluded_rows)} excluded"
        )
        if coverage.missing_rows:
            print(f"  Missing rows: {_format_rows(coverage.missing_rows)}")
        for row, owners in sorted(coverage.duplicate_rows.items()):
            print(f"  Row {row} owned by: {', '.join(str(owner) for owner in owners)}")
        print(f"Balance: {len(report.balance.unbalanced)} unbalanced")
        for item in report.balance.unbalanced:
            print(
                f"  {item.transaction_id} (rows {_format_rows(item.row_numbers)}): "
                f"off by {item.difference}"
            )
        if report.running_balance.has_balance_column:
            print(
                f"Running balance: {len(report.running_balance.mismatches)} of "
                f"{report.running_balance.checkpoints_checked} checkpoints mismatch"
            )
            for checkpoint in report.running_balance.mismatches:
                print(
                    f"  Row {checkpoint.row_number} ({checkpoint.checkpoint_date}): "
                    f"source {checkpoint.source_balance}, "
                    f"calculated {checkpoint.calculated_balance}"
                )
        if report.positions.negative:
            print(f"Negative positions: {len(report.positions.negative)}")
            for position in report.positions.negative:
                print(
                    f"  {position.asset_symbol} {position.quantity} after "
                    f"{position.transaction_id} ({position.transaction_date})"
                )
        if report.settlement.unpaired:
            print(f"Unpaired settlement rows: {len(report.settlement.unpaired)}")
            for item in report.settlement.unpaired:
                print(f"  {item.transaction_id}: rows {_format_rows(item.row_numbers)}")
    return 1 if report.status == ValidationStatus.CRITICAL else 0


def cmd_exclude(args: argparse.Namespace) -> int:
    """Mark rows as non-transactional."""
    try:
        rows = parse_row_spec(args.rows)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
        delta = ExcludeDelta(row_numbers=tuple(rows), reason=args.reason)
        result = asyncio.run(container.review_engine.review([delta], session))

    outcome = result.outcomes[0]
    if not outcome.applied:
        print(f"Error: {outcome.error}")
        return 1
    print(f"Excluded rows: {_format_rows(rows)}")
    print(f"Uncovered rows remaining: {result.statistics.uncovered_rows}")
    return 0


def cmd_uncovered(args: argparse.Namespace) -> int:
    """Gap analysis: uncovered rows and unbalanced transactions."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
        gaps = container.ledger_service.gap_analysis(session)
        reader = container.reader
        rows = session.rows_for(gaps.uncovered_rows)

    if gaps.is_clean:
        print("No gaps: every row is covered or excluded")
        return 0
    print(f"Uncovered rows: {len(gaps.uncovered_rows)}")
    for line in describe_rows(rows[: args.limit], reader):
        print(f"  {line}")
    if len(rows) > args.limit:
        print(f"  ... {len(rows) - args.limit} more")
    if gaps.unbalanced_transactions:
        print(f"Unbalanced transactions: {len(gaps.unbalanced_transactions)}")
        for txn_id in gaps.unbalanced_transactions:
            print(f"  {txn_id}")
    if gaps.duplicate_rows:
        print(f"Rows with duplicate coverage: {_format_rows(sorted(gaps.duplicate_rows))}")
    return 0


async def _close_client(service: object) -> None:
    aclose = getattr(service, "aclose", None)
    if aclose is not None:
        await aclose()


def cmd_categorize(args: argparse.Namespace) -> int:
    """Send uncovered rows to the categorization service window by window."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1

        async def run() -> list:
            try:
                return await container.categorization_runner.run(session)
            finally:
                await _close_client(container.categorizer)

        outcomes = asyncio.run(run())

    committed = [o for o in outcomes if o.status == WindowStatus.COMMITTED]
    final = outcomes[-1]
    print(f"Windows committed: {len(committed)}")
    print(f"Transactions created: {sum(len(o.committed) for o in committed)}")
    print(f"Proposals rejected: {sum(len(o.rejections) for o in outcomes)}")
    print(f"Result: {final.status.value} (cursor at row {final.cursor})")
    if final.error:
        print(f"Error: {final.error}")
    return 0 if final.status == WindowStatus.COMPLETE else 1


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Run iterative reconciliation against the source balances."""
    container = _open(args)
    if container is None:
        return 1
    with container:
        try:
            session = container.ledger_service.get_session(args.session)
        except BrokerageLedgerError as e:
            print(f"Error: {e.message}")
            return 1
        thoroughness = Thoroughness(args.thoroughness) if args.thoroughness else None

        async def run():
            try:
                return await container.reconciliation_engine.reconcile(session, thoroughness)
            finally:
                await _close_client(container.investigator)

        result = asyncio.run(run())

    assert result.outcome is not None
    print(f"Outcome: {result.outcome.value}")
    print(f"Iterations: {result.iterations}")
    print(f"Checkpoints: {len(result.checkpoints)}")
    print(f"Fixes applied: {result.fixes_applied}")
    print(f"Discrepancies resolved: {result.discrepancies_resolved}")
    print(
        f"Max discrepancy: {result.initial_max_discrepancy} -> {result.final_max_discrepancy}"
    )
    if result.pending_fixes:
        print(f"Fixes awaiting manual review: {len(result.pending_fixes)}")
        for fix in result.pending_fixes:
            print(f"  [{fix.confidence:.2f}] {fix.description}")
    outstanding = result.outstanding
    if outstanding:
        print(f"Unresolved discrepancies: {len(outstanding)}")
        for discrepancy in outstanding:
            line = (
                f"  [{discrepancy.severity.value}] {discrepancy.discrepancy_type.value} "
                f"rows {_format_rows(discrepancy.affected_rows)}"
            )
            if discrepancy.difference is not None:
                line += f", difference {discrepancy.difference}"
            if discrepancy.transaction_ids:
                line += f", transactions {', '.join(str(t) for t in discrepancy.transaction_ids)}"
            print(line)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="brokerage-ledger",
        description="Brokerage Ledger - double-entry ledgers from brokerage exports",
    )
    parser.add_argument(
        "--database",
        "-d",
        help="Path to SQLite database file",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init", help="Initialize a new database")
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Force reinitialization (deletes existing data)",
    )
    init_parser.set_defaults(func=cmd_init)

    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    create_parser = subparsers.add_parser("create", help="Create a ledger session")
    create_parser.add_argument("name", help="Session name")
    create_parser.add_argument(
        "--institution", "-i", default=None, help="Institution (fidelity, schwab, coinbase)"
    )
    create_parser.add_argument("--account", "-a", default=None, help="Account name")
    create_parser.set_defaults(func=cmd_create)

    sessions_parser = subparsers.add_parser("sessions", help="List ledger sessions")
    sessions_parser.set_defaults(func=cmd_sessions)

    import_parser = subparsers.add_parser("import", help="Append rows from a CSV export")
    import_parser.add_argument("session", help="Session name or id")
    import_parser.add_argument("file", help="CSV file to import")
    import_parser.set_defaults(func=cmd_import)

    build_parser = subparsers.add_parser("build", help="Build transactions from rows")
    build_parser.add_argument("session", help="Session name or id")
    build_parser.set_defaults(func=cmd_build)

    status_parser = subparsers.add_parser("status", help="Show session status")
    status_parser.add_argument("session", help="Session name or id")
    status_parser.set_defaults(func=cmd_status)

    validate_parser = subparsers.add_parser("validate", help="Validate a session ledger")
    validate_parser.add_argument("session", help="Session name or id")
    validate_parser.add_argument("--json", action="store_true", help="Print JSON report")
    validate_parser.set_defaults(func=cmd_validate)

    exclude_parser = subparsers.add_parser("exclude", help="Exclude non-transactional rows")
    exclude_parser.add_argument("session", help="Session name or id")
    exclude_parser.add_argument("rows", help="Row numbers, e.g. 3,5,10-12")
    exclude_parser.add_argument("--reason", "-r", required=True, help="Why the rows are excluded")
    exclude_parser.set_defaults(func=cmd_exclude)

    uncovered_parser = subparsers.add_parser("uncovered", help="Show coverage gaps")
    uncovered_parser.add_argument("session", help="Session name or id")
    uncovered_parser.add_argument("--limit", type=int, default=50, help="Rows to list")
    uncovered_parser.set_defaults(func=cmd_uncovered)

    categorize_parser = subparsers.add_parser(
        "categorize", help="Categorize uncovered rows via the collaborator service"
    )
    categorize_parser.add_argument("session", help="Session name or id")
    categorize_parser.set_defaults(func=cmd_categorize)

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Reconcile against source balances"
    )
    reconcile_parser.add_argument("session", help="Session name or id")
    reconcile_parser.add_argument(
        "--thoroughness",
        "-t",
        choices=[t.value for t in Thoroughness],
        default=None,
        help="Context window around each discrepancy",
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging()
    result: int = args.func(args)
    return result


if __name__ == "__main__":
    sys.exit(main())
