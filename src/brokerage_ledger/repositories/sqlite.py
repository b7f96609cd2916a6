"""SQLite implementations of repository interfaces."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from uuid import UUID

from brokerage_ledger.domain.assets import Asset
from brokerage_ledger.domain.coverage import CoverageIndex
from brokerage_ledger.domain.reconciliation import (
    Discrepancy,
    Investigation,
    ProposedFix,
    ReconciliationRun,
)
from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession, SessionStatistics
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import JournalEntry, Transaction
from brokerage_ledger.domain.value_objects import (
    AccountClass,
    DiscrepancyType,
    ReconciliationOutcome,
    SessionStatus,
    Severity,
    TransactionKind,
)
from brokerage_ledger.exceptions import InvalidPayloadError
from brokerage_ledger.logging_config import get_logger
from brokerage_ledger.repositories.interfaces import (
    AssetRepository,
    ExclusionRepository,
    LedgerStore,
    ReconciliationRunRepository,
    SessionRepository,
    SourceRowRepository,
    TransactionRepository,
)
from brokerage_ledger.schemas import fix_to_dict, parse_fix

logger = get_logger(__name__)


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _str_or_none(value: object | None) -> str | None:
    return str(value) if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteDatabase:
    """SQLite database connection manager."""

    def __init__(
        self, path: str | Path = ":memory:", check_same_thread: bool = True
    ) -> None:
        self._path = str(path)
        self._check_same_thread = check_same_thread
        self._connection: sqlite3.Connection | None = None
        self._transaction_depth = 0

    @property
    def path(self) -> str:
        return self._path

    def get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                self._path, check_same_thread=self._check_same_thread
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group repository writes into one commit; roll back on error."""
        conn = self.get_connection()
        self._transaction_depth += 1
        try:
            yield conn
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                conn.rollback()
            raise
        else:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                conn.commit()

    def commit(self) -> None:
        """Commit unless an enclosing transaction() will do it."""
        if self._transaction_depth == 0:
            self.get_connection().commit()

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def initialize(self) -> None:
        """Create all database tables."""
        conn = self.get_connection()
        conn.executescript(
            """
            -- Ledger sessions
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                institution TEXT NOT NULL,
                account_name TEXT NOT NULL DEFAULT '',
                cursor INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                error_message TEXT,
                statistics TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Source rows (immutable once stored)
            CREATE TABLE IF NOT EXISTS source_rows (
                session_id TEXT NOT NULL,
                row_number INTEGER NOT NULL,
                source_file TEXT NOT NULL DEFAULT '',
                file_row_number INTEGER NOT NULL DEFAULT 0,
                fields TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                PRIMARY KEY (session_id, row_number),
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_source_rows_hash ON source_rows(session_id, content_hash);

            -- Transactions
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                kind TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                source_rows TEXT NOT NULL,
                low_confidence INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_transactions_session ON transactions(session_id, transaction_date);

            -- Journal entries
            CREATE TABLE IF NOT EXISTS journal_entries (
                id TEXT PRIMARY KEY,
                transaction_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                account_class TEXT NOT NULL,
                account_name TEXT NOT NULL,
                debit_amount TEXT,
                credit_amount TEXT,
                quantity TEXT,
                quantity_unit TEXT,
                asset_id TEXT,
                asset_symbol TEXT,
                source_rows TEXT NOT NULL,
                source_amount TEXT,
                memo TEXT NOT NULL DEFAULT '',
                FOREIGN KEY (transaction_id) REFERENCES transactions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_journal_entries_txn ON journal_entries(transaction_id);

            -- Rows excluded as non-transactional
            CREATE TABLE IF NOT EXISTS excluded_rows (
                session_id TEXT NOT NULL,
                row_number INTEGER NOT NULL,
                reason TEXT NOT NULL,
                PRIMARY KEY (session_id, row_number),
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            -- Assets
            CREATE TABLE IF NOT EXISTS assets (
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            -- Reconciliation audit trail
            CREATE TABLE IF NOT EXISTS reconciliation_runs (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                max_iterations INTEGER NOT NULL,
                outcome TEXT,
                iterations INTEGER NOT NULL,
                checkpoint_count INTEGER NOT NULL,
                fixes_applied INTEGER NOT NULL,
                discrepancies_resolved INTEGER NOT NULL,
                initial_max_discrepancy TEXT NOT NULL,
                final_max_discrepancy TEXT NOT NULL,
                pending_fixes TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS discrepancies (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                discrepancy_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                description TEXT NOT NULL,
                affected_rows TEXT NOT NULL,
                start_date TEXT,
                end_date TEXT,
                expected_value TEXT,
                actual_value TEXT,
                transaction_ids TEXT NOT NULL,
                is_resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT,
                resolved_by_fix_id TEXT,
                FOREIGN KEY (run_id) REFERENCES reconciliation_runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS investigations (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                discrepancy_id TEXT NOT NULL,
                hypothesis TEXT NOT NULL,
                evidence_analysis TEXT NOT NULL DEFAULT '',
                uncertainties TEXT NOT NULL,
                needs_more_data INTEGER NOT NULL DEFAULT 0,
                proposed_fixes TEXT NOT NULL,
                model TEXT NOT NULL DEFAULT '',
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                was_applied INTEGER NOT NULL DEFAULT 0,
                applied_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES reconciliation_runs(id) ON DELETE CASCADE
            );
            """
        )
        conn.commit()


class SQLiteSessionRepository(SessionRepository):
    """Stores session headers; rows and transactions live in their own tables."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, session: LedgerSession) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO sessions (id, name, institution, account_name, cursor, status,
                                  error_message, statistics, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(session.id),
                session.name,
                session.institution,
                session.account_name,
                session.cursor,
                session.status.value,
                session.error_message,
                json.dumps(session.statistics.__dict__),
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
            ),
        )
        self._db.commit()

    def get(self, session_id: UUID) -> LedgerSession | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM sessions WHERE id = ?", (str(session_id),)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def get_by_name(self, name: str) -> LedgerSession | None:
        conn = self._db.get_connection()
        row = conn.execute("SELECT * FROM sessions WHERE name = ?", (name,)).fetchone()
        return self._row_to_session(row) if row else None

    def list_all(self) -> Iterable[LedgerSession]:
        conn = self._db.get_connection()
        rows = conn.execute("SELECT * FROM sessions ORDER BY created_at").fetchall()
        return [self._row_to_session(row) for row in rows]

    def update(self, session: LedgerSession) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            UPDATE sessions
            SET name = ?, institution = ?, account_name = ?, cursor = ?, status = ?,
                error_message = ?, statistics = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                session.name,
                session.institution,
                session.account_name,
                session.cursor,
                session.status.value,
                session.error_message,
                json.dumps(session.statistics.__dict__),
                session.updated_at.isoformat(),
                str(session.id),
            ),
        )
        self._db.commit()

    def delete(self, session_id: UUID) -> None:
        conn = self._db.get_connection()
        conn.execute("DELETE FROM sessions WHERE id = ?", (str(session_id),))
        self._db.commit()

    def _row_to_session(self, row: sqlite3.Row) -> LedgerSession:
        return LedgerSession(
            id=UUID(row["id"]),
            name=row["name"],
            institution=row["institution"],
            account_name=row["account_name"],
            cursor=row["cursor"],
            status=SessionStatus(row["status"]),
            error_message=row["error_message"],
            statistics=SessionStatistics(**json.loads(row["statistics"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class SQLiteSourceRowRepository(SourceRowRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add_many(self, session_id: UUID, rows: Iterable[SourceRow]) -> None:
        conn = self._db.get_connection()
        conn.executemany(
            """
            INSERT INTO source_rows (session_id, row_number, source_file,
                                     file_row_number, fields, content_hash)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    str(session_id),
                    row.row_number,
                    row.source_file,
                    row.file_row_number,
                    json.dumps(dict(row.fields)),
                    row.content_hash,
                )
                for row in rows
            ],
        )
        self._db.commit()

    def list_by_session(self, session_id: UUID) -> list[SourceRow]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM source_rows WHERE session_id = ? ORDER BY row_number",
            (str(session_id),),
        ).fetchall()
        return [
            SourceRow(
                row_number=row["row_number"],
                fields=json.loads(row["fields"]),
                source_file=row["source_file"],
                file_row_number=row["file_row_number"],
            )
            for row in rows
        ]


class SQLiteTransactionRepository(TransactionRepository):
    """SQLite implementation of TransactionRepository."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, session_id: UUID, txn: Transaction) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO transactions (id, session_id, transaction_date, kind, description,
                                      source_rows, low_confidence, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(txn.id),
                str(session_id),
                txn.transaction_date.isoformat(),
                txn.kind.value,
                txn.description,
                json.dumps(txn.source_row_numbers),
                1 if txn.low_confidence else 0,
                txn.created_at.isoformat(),
            ),
        )
        for position, entry in enumerate(txn.entries):
            conn.execute(
                """
                INSERT INTO journal_entries (id, transaction_id, position, account_class,
                                             account_name, debit_amount, credit_amount,
                                             quantity, quantity_unit, asset_id, asset_symbol,
                                             source_rows, source_amount, memo)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(entry.id),
                    str(txn.id),
                    position,
                    entry.account_class.value,
                    entry.account_name,
                    _str_or_none(entry.debit_amount),
                    _str_or_none(entry.credit_amount),
                    _str_or_none(entry.quantity),
                    entry.quantity_unit,
                    _str_or_none(entry.asset_id),
                    entry.asset_symbol,
                    json.dumps(entry.source_row_numbers),
                    _str_or_none(entry.source_amount),
                    entry.memo,
                ),
            )
        self._db.commit()

    def get(self, txn_id: UUID) -> Transaction | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (str(txn_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_transaction(row)

    def list_by_session(self, session_id: UUID) -> list[Transaction]:
        conn = self._db.get_connection()
        rows = conn.execute(
            """
            SELECT * FROM transactions WHERE session_id = ?
            ORDER BY transaction_date, created_at
            """,
            (str(session_id),),
        ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def delete(self, txn_id: UUID) -> None:
        conn = self._db.get_connection()
        conn.execute("DELETE FROM journal_entries WHERE transaction_id = ?", (str(txn_id),))
        conn.execute("DELETE FROM transactions WHERE id = ?", (str(txn_id),))
        self._db.commit()

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        conn = self._db.get_connection()
        entry_rows = conn.execute(
            "SELECT * FROM journal_entries WHERE transaction_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        entries = [
            JournalEntry(
                id=UUID(e["id"]),
                account_class=AccountClass(e["account_class"]),
                account_name=e["account_name"],
                debit_amount=_dec(e["debit_amount"]),
                credit_amount=_dec(e["credit_amount"]),
                quantity=_dec(e["quantity"]),
                quantity_unit=e["quantity_unit"],
                asset_id=UUID(e["asset_id"]) if e["asset_id"] else None,
                asset_symbol=e["asset_symbol"],
                source_row_numbers=json.loads(e["source_rows"]),
                source_amount=_dec(e["source_amount"]),
                memo=e["memo"],
            )
            for e in entry_rows
        ]
        return Transaction(
            id=UUID(row["id"]),
            transaction_date=date.fromisoformat(row["transaction_date"]),
            entries=entries,
            source_row_numbers=json.loads(row["source_rows"]),
            kind=TransactionKind(row["kind"]),
            description=row["description"],
            low_confidence=bool(row["low_confidence"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class SQLiteExclusionRepository(ExclusionRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, session_id: UUID, row_number: int, reason: str) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT OR IGNORE INTO excluded_rows (session_id, row_number, reason)
            VALUES (?, ?, ?)
            """,
            (str(session_id), row_number, reason),
        )
        self._db.commit()

    def list_by_session(self, session_id: UUID) -> dict[int, str]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT row_number, reason FROM excluded_rows WHERE session_id = ?",
            (str(session_id),),
        ).fetchall()
        return {row["row_number"]: row["reason"] for row in rows}


class SQLiteAssetRepository(AssetRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, asset: Asset) -> None:
        conn = self._db.get_connection()
        conn.execute(
            "INSERT INTO assets (id, symbol, created_at) VALUES (?, ?, ?)",
            (str(asset.id), asset.symbol, asset.created_at.isoformat()),
        )
        self._db.commit()

    def get(self, asset_id: UUID) -> Asset | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM assets WHERE id = ?", (str(asset_id),)
        ).fetchone()
        return self._row_to_asset(row) if row else None

    def get_by_symbol(self, symbol: str) -> Asset | None:
        conn = self._db.get_connection()
        row = conn.execute("SELECT * FROM assets WHERE symbol = ?", (symbol,)).fetchone()
        return self._row_to_asset(row) if row else None

    def list_all(self) -> Iterable[Asset]:
        conn = self._db.get_connection()
        rows = conn.execute("SELECT * FROM assets ORDER BY symbol").fetchall()
        return [self._row_to_asset(row) for row in rows]

    def _row_to_asset(self, row: sqlite3.Row) -> Asset:
        return Asset(
            id=UUID(row["id"]),
            symbol=row["symbol"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class SQLiteReconciliationRunRepository(ReconciliationRunRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, run: ReconciliationRun) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO reconciliation_runs (id, session_id, max_iterations, outcome, iterations,
                                             checkpoint_count, fixes_applied,
                                             discrepancies_resolved, initial_max_discrepancy,
                                             final_max_discrepancy, pending_fixes,
                                             started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(run.id),
                str(run.session_id),
                run.max_iterations,
                run.outcome.value if run.outcome else None,
                run.iterations,
                len(run.checkpoints),
                run.fixes_applied,
                run.discrepancies_resolved,
                str(run.initial_max_discrepancy),
                str(run.final_max_discrepancy),
                json.dumps([fix_to_dict(fix) for fix in run.pending_fixes]),
                run.started_at.isoformat(),
                run.completed_at.isoformat() if run.completed_at else None,
            ),
        )
        for d in run.discrepancies:
            conn.execute(
                """
                INSERT INTO discrepancies (id, run_id, discrepancy_type, severity, description,
                                           affected_rows, start_date, end_date, expected_value,
                                           actual_value, transaction_ids, is_resolved,
                                           resolved_at, resolved_by_fix_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(d.id),
                    str(run.id),
                    d.discrepancy_type.value,
                    d.severity.value,
                    d.description,
                    json.dumps(d.affected_rows),
                    d.start_date.isoformat() if d.start_date else None,
                    d.end_date.isoformat() if d.end_date else None,
                    _str_or_none(d.expected_value),
                    _str_or_none(d.actual_value),
                    json.dumps([str(t) for t in d.transaction_ids]),
                    1 if d.is_resolved else 0,
                    d.resolved_at.isoformat() if d.resolved_at else None,
                    _str_or_none(d.resolved_by_fix_id),
                ),
            )
        for inv in run.investigations:
            conn.execute(
                """
                INSERT INTO investigations (id, run_id, discrepancy_id, hypothesis,
                                            evidence_analysis, uncertainties, needs_more_data,
                                            proposed_fixes, model, input_tokens, output_tokens,
                                            duration_ms, was_applied, applied_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(inv.id),
                    str(run.id),
                    str(inv.discrepancy_id),
                    inv.hypothesis,
                    inv.evidence_analysis,
                    json.dumps(inv.uncertainties),
                    1 if inv.needs_more_data else 0,
                    json.dumps([fix_to_dict(fix) for fix in inv.proposed_fixes]),
                    inv.model,
                    inv.input_tokens,
                    inv.output_tokens,
                    inv.duration_ms,
                    1 if inv.was_applied else 0,
                    inv.applied_at.isoformat() if inv.applied_at else None,
                    inv.created_at.isoformat(),
                ),
            )
        self._db.commit()

    def get(self, run_id: UUID) -> ReconciliationRun | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM reconciliation_runs WHERE id = ?", (str(run_id),)
        ).fetchone()
        return self._row_to_run(row) if row else None

    def list_by_session(self, session_id: UUID) -> list[ReconciliationRun]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM reconciliation_runs WHERE session_id = ? ORDER BY started_at",
            (str(session_id),),
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def _row_to_run(self, row: sqlite3.Row) -> ReconciliationRun:
        conn = self._db.get_connection()
        run = ReconciliationRun(
            id=UUID(row["id"]),
            session_id=UUID(row["session_id"]),
            max_iterations=row["max_iterations"],
            outcome=ReconciliationOutcome(row["outcome"]) if row["outcome"] else None,
            iterations=row["iterations"],
            fixes_applied=row["fixes_applied"],
            discrepancies_resolved=row["discrepancies_resolved"],
            initial_max_discrepancy=Decimal(row["initial_max_discrepancy"]),
            final_max_discrepancy=Decimal(row["final_max_discrepancy"]),
            pending_fixes=self._load_fixes(row["pending_fixes"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )
        for d in conn.execute(
            "SELECT * FROM discrepancies WHERE run_id = ?", (row["id"],)
        ).fetchall():
            run.discrepancies.append(
                Discrepancy(
                    id=UUID(d["id"]),
                    discrepancy_type=DiscrepancyType(d["discrepancy_type"]),
                    severity=Severity(d["severity"]),
                    description=d["description"],
                    affected_rows=json.loads(d["affected_rows"]),
                    start_date=date.fromisoformat(d["start_date"]) if d["start_date"] else None,
                    end_date=date.fromisoformat(d["end_date"]) if d["end_date"] else None,
                    expected_value=_dec(d["expected_value"]),
                    actual_value=_dec(d["actual_value"]),
                    transaction_ids=[UUID(t) for t in json.loads(d["transaction_ids"])],
                    is_resolved=bool(d["is_resolved"]),
                    resolved_at=_dt(d["resolved_at"]),
                    resolved_by_fix_id=(
                        UUID(d["resolved_by_fix_id"]) if d["resolved_by_fix_id"] else None
                    ),
                )
            )
        for inv in conn.execute(
            "SELECT * FROM investigations WHERE run_id = ? ORDER BY created_at", (row["id"],)
        ).fetchall():
            run.investigations.append(
                Investigation(
                    id=UUID(inv["id"]),
                    discrepancy_id=UUID(inv["discrepancy_id"]),
                    hypothesis=inv["hypothesis"],
                    evidence_analysis=inv["evidence_analysis"],
                    uncertainties=json.loads(inv["uncertainties"]),
                    needs_more_data=bool(inv["needs_more_data"]),
                    proposed_fixes=self._load_fixes(inv["proposed_fixes"]),
                    model=inv["model"],
                    input_tokens=inv["input_tokens"],
                    output_tokens=inv["output_tokens"],
                    duration_ms=inv["duration_ms"],
                    was_applied=bool(inv["was_applied"]),
                    applied_at=_dt(inv["applied_at"]),
                    created_at=datetime.fromisoformat(inv["created_at"]),
                )
            )
        return run

    def _load_fixes(self, payload: str) -> list[ProposedFix]:
        fixes: list[ProposedFix] = []
        for raw in json.loads(payload):
            try:
                fix = parse_fix(raw)
            except InvalidPayloadError as exc:
                logger.warning("stored_fix_unreadable", fix_id=raw.get("id"), reason=exc.message)
                continue
            fix.id = UUID(raw["id"])
            fix.is_applied = bool(raw.get("isApplied"))
            fixes.append(fix)
        return fixes


class SQLiteLedgerStore(LedgerStore):
    """LedgerStore composed from the SQLite repositories.

    Sessions returned by ``list_sessions`` carry headers only; use
    ``load_session`` for rows, transactions and coverage.
    """

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database
        self.sessions = SQLiteSessionRepository(database)
        self.rows = SQLiteSourceRowRepository(database)
        self.transactions = SQLiteTransactionRepository(database)
        self.exclusions = SQLiteExclusionRepository(database)
        self.runs = SQLiteReconciliationRunRepository(database)

    def create_session(self, session: LedgerSession) -> None:
        with self._db.transaction():
            self.sessions.add(session)
            if session.rows:
                self.rows.add_many(session.id, session.rows)
            for txn in session.transactions.values():
                self.transactions.add(session.id, txn)
            for row_number, reason in session.coverage.excluded.items():
                self.exclusions.add(session.id, row_number, reason)

    def load_session(self, session_id: UUID) -> LedgerSession | None:
        header = self.sessions.get(session_id)
        return self._hydrate(header) if header else None

    def find_session(self, name: str) -> LedgerSession | None:
        header = self.sessions.get_by_name(name)
        return self._hydrate(header) if header else None

    def list_sessions(self) -> list[LedgerSession]:
        return list(self.sessions.list_all())

    def _hydrate(self, header: LedgerSession) -> LedgerSession:
        transactions = self.transactions.list_by_session(header.id)
        excluded = self.exclusions.list_by_session(header.id)
        session = LedgerSession(
            id=header.id,
            name=header.name,
            institution=header.institution,
            account_name=header.account_name,
            rows=self.rows.list_by_session(header.id),
            transactions={txn.id: txn for txn in transactions},
            coverage=CoverageIndex.from_transactions(transactions, excluded),
            cursor=header.cursor,
            status=header.status,
            error_message=header.error_message,
            statistics=header.statistics,
            created_at=header.created_at,
            updated_at=header.updated_at,
        )
        return session

    def commit(self, session: LedgerSession, changes: ChangeSet) -> None:
        with self._db.transaction():
            if changes.rows:
                self.rows.add_many(session.id, changes.rows)
            for txn_id in changes.removed:
                self.transactions.delete(txn_id)
            for txn in changes.added:
                self.transactions.add(session.id, txn)
            for row_number, reason in changes.excluded.items():
                self.exclusions.add(session.id, row_number, reason)
            self.sessions.update(session)
        logger.debug(
            "session_committed",
            session_id=str(session.id),
            added=len(changes.added),
            removed=len(changes.removed),
            excluded=len(changes.excluded),
            rows=len(changes.rows),
        )

    def save_run(self, run: ReconciliationRun) -> None:
        with self._db.transaction():
            self.runs.add(run)

    def list_runs(self, session_id: UUID) -> list[ReconciliationRun]:
        return self.runs.list_by_session(session_id)
