"""Row ownership tracking.

Every source row is in exactly one state: owned by a transaction, excluded
as non-transactional, or uncovered. ``register`` refuses to let two
transactions own the same row; ``from_transactions`` rebuilds an index from
stored data leniently so existing duplicates can still be reported.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from uuid import UUID

from brokerage_ledger.domain.transactions import Transaction
from brokerage_ledger.exceptions import DuplicateCoverageError, ExcludedRowCoverageError
from brokerage_ledger.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CoverageSnapshot:
    owners: dict[int, frozenset[UUID]]
    excluded: dict[int, str]


class CoverageIndex:
    def __init__(self) -> None:
        self._owners: dict[int, set[UUID]] = {}
        self._rows_by_transaction: dict[UUID, set[int]] = {}
        self._excluded: dict[int, str] = {}

    @classmethod
    def from_transactions(
        cls,
        transactions: Iterable[Transaction],
        excluded: Mapping[int, str] | None = None,
    ) -> "CoverageIndex":
        index = cls()
        for row_number, reason in (excluded or {}).items():
            index._excluded[row_number] = reason
        for txn in transactions:
            index._claim(txn.id, txn.source_row_numbers)
        duplicates = index.duplicate_rows()
        if duplicates:
            logger.warning(
                "duplicate_coverage_loaded",
                rows=sorted(duplicates),
                transaction_count=len(index._rows_by_transaction),
            )
        return index

    def _claim(self, transaction_id: UUID, rows: Iterable[int]) -> None:
        claimed = self._rows_by_transaction.setdefault(transaction_id, set())
        for row_number in rows:
            self._owners.setdefault(row_number, set()).add(transaction_id)
            claimed.add(row_number)

    def register(self, transaction: Transaction) -> None:
        """Record ownership of the transaction's rows.

        Raises:
            DuplicateCoverageError: a row is owned by a different transaction.
            ExcludedRowCoverageError: a row has been excluded.
        Nothing is recorded when either error is raised.
        """
        rows = set(transaction.source_row_numbers)
        conflicts = {
            row: sorted(str(owner) for owner in owners if owner != transaction.id)
            for row in rows
            if (owners := self._owners.get(row)) and owners - {transaction.id}
        }
        if conflicts:
            raise DuplicateCoverageError(transaction.id, conflicts)
        excluded = rows & self._excluded.keys()
        if excluded:
            raise ExcludedRowCoverageError(transaction.id, excluded)
        self._claim(transaction.id, rows)

    def unregister(self, transaction_id: UUID) -> set[int]:
        rows = self._rows_by_transaction.pop(transaction_id, set())
        for row_number in rows:
            owners = self._owners.get(row_number)
            if owners is None:
                continue
            owners.discard(transaction_id)
            if not owners:
                del self._owners[row_number]
        return rows

    def exclude(self, row_numbers: Iterable[int], reason: str) -> list[int]:
        """Mark rows as deliberately non-transactional.

        Owned rows are skipped and logged; already excluded rows keep their
        first reason. Returns the rows newly excluded.
        """
        added: list[int] = []
        skipped: list[int] = []
        for row_number in sorted(set(row_numbers)):
            if self._owners.get(row_number):
                skipped.append(row_number)
                continue
            if row_number in self._excluded:
                continue
            self._excluded[row_number] = reason
            added.append(row_number)
        if skipped:
            logger.warning("exclude_skipped_owned_rows", rows=skipped, reason=reason)
        return added

    def uncovered_rows(self, total_row_count: int) -> list[int]:
        return [
            row
            for row in range(1, total_row_count + 1)
            if not self._owners.get(row) and row not in self._excluded
        ]

    def duplicate_rows(self) -> dict[int, list[UUID]]:
        return {
            row: sorted(owners, key=str)
            for row, owners in self._owners.items()
            if len(owners) > 1
        }

    def owners_of(self, row_number: int) -> frozenset[UUID]:
        return frozenset(self._owners.get(row_number, ()))

    def rows_for(self, transaction_id: UUID) -> set[int]:
        return set(self._rows_by_transaction.get(transaction_id, ()))

    def is_excluded(self, row_number: int) -> bool:
        return row_number in self._excluded

    def exclusion_reason(self, row_number: int) -> str | None:
        return self._excluded.get(row_number)

    @property
    def excluded(self) -> dict[int, str]:
        return dict(self._excluded)

    @property
    def covered_row_count(self) -> int:
        return len(self._owners)

    @property
    def excluded_row_count(self) -> int:
        return len(self._excluded)

    def snapshot(self) -> CoverageSnapshot:
        return CoverageSnapshot(
            owners={row: frozenset(owners) for row, owners in self._owners.items()},
            excluded=dict(self._excluded),
        )
