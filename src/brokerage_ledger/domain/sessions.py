"""Ledger sessions: one account's rows, transactions and coverage.

A session is the unit of serialization. Every mutation goes through the
session so coverage and statistics never drift from the transaction set.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

from brokerage_ledger.domain.coverage import CoverageIndex
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import Transaction
from brokerage_ledger.domain.value_objects import SessionStatus
from brokerage_ledger.exceptions import SessionBusyError, TransactionNotFoundError
from brokerage_ledger.logging_config import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class SessionStatistics:
    total_rows: int = 0
    transaction_count: int = 0
    balanced_count: int = 0
    unbalanced_count: int = 0
    covered_rows: int = 0
    excluded_rows: int = 0
    uncovered_rows: int = 0


@dataclass
class ChangeSet:
    """Mutations made to a session that still have to be persisted."""

    added: list[Transaction] = field(default_factory=list)
    removed: list[UUID] = field(default_factory=list)
    excluded: dict[int, str] = field(default_factory=dict)
    rows: list[SourceRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.excluded or self.rows)

    def record_added(self, transaction: Transaction) -> None:
        self.added.append(transaction)

    def record_removed(self, transaction_id: UUID) -> None:
        # A transaction created and removed within one batch never reaches storage
        for index, txn in enumerate(self.added):
            if txn.id == transaction_id:
                del self.added[index]
                return
        self.removed.append(transaction_id)


@dataclass
class LedgerSession:
    name: str
    institution: str = "fidelity"
    account_name: str = ""
    id: UUID = field(default_factory=uuid4)
    rows: list[SourceRow] = field(default_factory=list)
    transactions: dict[UUID, Transaction] = field(default_factory=dict)
    coverage: CoverageIndex = field(default_factory=CoverageIndex)
    cursor: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    error_message: str | None = None
    statistics: SessionStatistics = field(default_factory=SessionStatistics)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        self.rows.sort(key=lambda row: row.row_number)
        self._row_index = {row.row_number: row for row in self.rows}

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def row(self, row_number: int) -> SourceRow | None:
        return self._row_index.get(row_number)

    def rows_for(self, row_numbers: Iterable[int]) -> list[SourceRow]:
        return [
            row for number in sorted(set(row_numbers)) if (row := self.row(number))
        ]

    def append_rows(
        self,
        records: Iterable[Mapping[str, str]],
        source_file: str = "",
        skip_existing: bool = True,
    ) -> list[SourceRow]:
        """Append rows, numbering them after the current last row.

        With ``skip_existing`` a record whose content matches a row already
        in the session (a re-imported file) is skipped. Identical records
        within the same batch are kept and logged.
        """
        existing = {row.content_hash for row in self.rows} if skip_existing else set()
        seen_in_batch: set[str] = set()
        appended: list[SourceRow] = []
        skipped = 0
        next_number = self.total_rows + 1
        for file_row_number, record in enumerate(records, start=1):
            row = SourceRow(
                row_number=next_number,
                fields=dict(record),
                source_file=source_file,
                file_row_number=file_row_number,
            )
            digest = row.content_hash
            if digest in existing:
                skipped += 1
                continue
            if digest in seen_in_batch:
                logger.warning(
                    "duplicate_source_row_kept",
                    row_number=next_number,
                    source_file=source_file,
                    file_row_number=file_row_number,
                )
            seen_in_batch.add(digest)
            self.rows.append(row)
            self._row_index[row.row_number] = row
            appended.append(row)
            next_number += 1
        if skipped:
            logger.info(
                "previously_imported_rows_skipped",
                source_file=source_file,
                skipped=skipped,
            )
        self.touch()
        return appended

    def add_transaction(self, transaction: Transaction) -> None:
        """Register coverage and store the transaction.

        Coverage errors propagate and leave the session unchanged.
        """
        self.coverage.register(transaction)
        self.transactions[transaction.id] = transaction
        self.touch()

    def remove_transaction(self, transaction_id: UUID) -> Transaction:
        transaction = self.transactions.pop(transaction_id, None)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        self.coverage.unregister(transaction_id)
        self.touch()
        return transaction

    def get_transaction(self, transaction_id: UUID) -> Transaction | None:
        return self.transactions.get(transaction_id)

    def ordered_transactions(self) -> list[Transaction]:
        return sorted(self.transactions.values(), key=lambda txn: txn.sort_key)

    def uncovered_rows(self) -> list[int]:
        return self.coverage.uncovered_rows(self.total_rows)

    def recompute_statistics(self) -> SessionStatistics:
        balanced = sum(1 for txn in self.transactions.values() if txn.is_balanced)
        covered = self.coverage.covered_row_count
        excluded = self.coverage.excluded_row_count
        self.statistics = SessionStatistics(
            total_rows=self.total_rows,
            transaction_count=len(self.transactions),
            balanced_count=balanced,
            unbalanced_count=len(self.transactions) - balanced,
            covered_rows=covered,
            excluded_rows=excluded,
            uncovered_rows=len(self.uncovered_rows()),
        )
        return self.statistics

    def pause(self, message: str | None = None) -> None:
        self.status = SessionStatus.PAUSED
        self.error_message = message
        self.touch()

    def touch(self) -> None:
        self.updated_at = _utc_now()


class SessionLocks:
    """One asyncio lock per session: a single writer per ledger at a time."""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def lock_for(self, session_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def is_locked(self, session_id: UUID) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, session_id: UUID) -> AsyncIterator[None]:
        async with self.lock_for(session_id):
            yield

    @asynccontextmanager
    async def hold_nowait(self, session_id: UUID) -> AsyncIterator[None]:
        """Like ``hold`` but fails fast when another writer is active."""
        if self.is_locked(session_id):
            raise SessionBusyError(session_id)
        async with self.lock_for(session_id):
            yield
