"""Whole-ledger invariant checks.

The validator is stateless: it reads transactions, rows and coverage and
produces a report with one independent section per check. Every section
lists the specific rows and transaction ids involved, not just counts.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from brokerage_ledger.domain.coverage import CoverageIndex
from brokerage_ledger.domain.reconciliation import BalanceCheckpoint
from brokerage_ledger.domain.source_rows import RowReader, SourceRow
from brokerage_ledger.domain.transactions import ZERO, Transaction
from brokerage_ledger.domain.value_objects import BALANCE_TOLERANCE, ValidationStatus
from brokerage_ledger.services.balances import BalanceCalculator
from brokerage_ledger.services.grouping import SettlementDetector


@dataclass
class CoverageSection:
    total_rows: int
    covered_rows: int
    excluded_rows: list[int] = field(default_factory=list)
    missing_rows: list[int] = field(default_factory=list)
    duplicate_rows: dict[int, list[UUID]] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.missing_rows and not self.duplicate_rows


@dataclass
class UnbalancedTransaction:
    transaction_id: UUID
    debits: Decimal
    credits: Decimal
    row_numbers: list[int]

    @property
    def difference(self) -> Decimal:
        return self.debits - self.credits


@dataclass
class BalanceSection:
    checked: int
    unbalanced: list[UnbalancedTransaction] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.unbalanced


@dataclass
class RunningBalanceSection:
    has_balance_column: bool
    checkpoints_checked: int = 0
    mismatches: list[BalanceCheckpoint] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.mismatches


@dataclass
class NegativePosition:
    asset_symbol: str
    account_name: str
    quantity: Decimal
    transaction_id: UUID
    transaction_date: date


@dataclass
class PositionSection:
    positions: dict[str, Decimal] = field(default_factory=dict)
    negative: list[NegativePosition] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.negative


@dataclass
class UnpairedSettlement:
    transaction_id: UUID
    row_numbers: list[int]


@dataclass
class SettlementSection:
    applicable: bool
    unpaired: list[UnpairedSettlement] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.unpaired


@dataclass
class ValidationReport:
    coverage: CoverageSection
    balance: BalanceSection
    running_balance: RunningBalanceSection
    positions: PositionSection
    settlement: SettlementSection

    @property
    def status(self) -> ValidationStatus:
        if not self.coverage.passed or not self.balance.passed:
            return ValidationStatus.CRITICAL
        if not (
            self.running_balance.passed
            and self.positions.passed
            and self.settlement.passed
        ):
            return ValidationStatus.WARNING
        return ValidationStatus.PASS

    @property
    def issue_count(self) -> int:
        return (
            len(self.coverage.missing_rows)
            + len(self.coverage.duplicate_rows)
            + len(self.balance.unbalanced)
            + len(self.running_balance.mismatches)
            + len(self.positions.negative)
            + len(self.settlement.unpaired)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "issue_count": self.issue_count,
            "coverage": {
                "total_rows": self.coverage.total_rows,
                "covered_rows": self.coverage.covered_rows,
                "excluded_rows": self.coverage.excluded_rows,
                "missing_rows": self.coverage.missing_rows,
                "duplicate_rows": {
                    str(row): [str(t) for t in owners]
                    for row, owners in self.coverage.duplicate_rows.items()
                },
            },
            "balance": {
                "checked": self.balance.checked,
                "unbalanced": [
                    {
                        "transaction_id": str(u.transaction_id),
                        "debits": str(u.debits),
                        "credits": str(u.credits),
                        "difference": str(u.difference),
                        "rows": u.row_numbers,
                    }
                    for u in self.balance.unbalanced
                ],
            },
            "running_balance": {
                "has_balance_column": self.running_balance.has_balance_column,
                "checkpoints_checked": self.running_balance.checkpoints_checked,
                "mismatches": [
                    {
                        "row": c.row_number,
                        "date": c.checkpoint_date.isoformat(),
                        "source_balance": str(c.source_balance),
                        "calculated_balance": str(c.calculated_balance),
                        "difference": str(c.difference),
                    }
                    for c in self.running_balance.mismatches
                ],
            },
            "positions": {
                "positions": {k: str(v) for k, v in self.positions.positions.items()},
                "negative": [
                    {
                        "asset": n.asset_symbol,
                        "account": n.account_name,
                        "quantity": str(n.quantity),
                        "transaction_id": str(n.transaction_id),
                        "date": n.transaction_date.isoformat(),
                    }
                    for n in self.positions.negative
                ],
            },
            "settlement": {
                "applicable": self.settlement.applicable,
                "unpaired": [
                    {"transaction_id": str(u.transaction_id), "rows": u.row_numbers}
                    for u in self.settlement.unpaired
                ],
            },
        }


class Validator:
    def __init__(
        self, reader: RowReader | None = None, tolerance: Decimal = BALANCE_TOLERANCE
    ) -> None:
        self._reader = reader or RowReader()
        self._tolerance = tolerance
        self._balances = BalanceCalculator(self._reader, tolerance)

    @property
    def tolerance(self) -> Decimal:
        return self._tolerance

    def validate(
        self,
        transactions: Sequence[Transaction],
        rows: Sequence[SourceRow],
        coverage: CoverageIndex,
        settlement_detector: SettlementDetector | None = None,
    ) -> ValidationReport:
        return ValidationReport(
            coverage=self.check_coverage(transactions, rows, coverage),
            balance=self.check_balance(transactions),
            running_balance=self.check_running_balance(transactions, rows),
            positions=self.check_positions(transactions),
            settlement=self.check_settlement_pairing(transactions, rows, settlement_detector),
        )

    def check_coverage(
        self,
        transactions: Sequence[Transaction],
        rows: Sequence[SourceRow],
        coverage: CoverageIndex,
    ) -> CoverageSection:
        # Ownership is recomputed from the transactions themselves so an index
        # that drifted from the transaction set cannot hide a duplicate.
        owners: dict[int, list[UUID]] = {}
        for txn in transactions:
            for row_number in txn.source_row_numbers:
                owners.setdefault(row_number, []).append(txn.id)
        for row_number, indexed in coverage.duplicate_rows().items():
            merged = owners.setdefault(row_number, [])
            merged.extend(t for t in indexed if t not in merged)

        excluded = sorted(coverage.excluded)
        excluded_set = set(excluded)
        missing = [
            row.row_number
            for row in rows
            if row.row_number not in owners and row.row_number not in excluded_set
        ]
        duplicates = {
            row: sorted(ids, key=str) for row, ids in sorted(owners.items()) if len(ids) > 1
        }
        return CoverageSection(
            total_rows=len(rows),
            covered_rows=len(owners),
            excluded_rows=excluded,
            missing_rows=missing,
            duplicate_rows=duplicates,
        )

    def check_balance(self, transactions: Sequence[Transaction]) -> BalanceSection:
        unbalanced = [
            UnbalancedTransaction(
                transaction_id=txn.id,
                debits=txn.total_debits,
                credits=txn.total_credits,
                row_numbers=list(txn.source_row_numbers),
            )
            for txn in transactions
            if len(txn.entries) < 2 or abs(txn.imbalance) > self._tolerance
        ]
        return BalanceSection(checked=len(transactions), unbalanced=unbalanced)

    def check_running_balance(
        self, transactions: Sequence[Transaction], rows: Sequence[SourceRow]
    ) -> RunningBalanceSection:
        if not self._reader.has_balance_column(list(rows)):
            return RunningBalanceSection(has_balance_column=False)
        checkpoints = self._balances.build_checkpoints(rows, transactions)
        return RunningBalanceSection(
            has_balance_column=True,
            checkpoints_checked=len(checkpoints),
            mismatches=[c for c in checkpoints if c.has_discrepancy],
        )

    def check_positions(self, transactions: Sequence[Transaction]) -> PositionSection:
        positions: dict[tuple[str, str], Decimal] = {}
        negative: list[NegativePosition] = []
        for txn in sorted(transactions, key=lambda t: t.sort_key):
            touched: set[tuple[str, str]] = set()
            for entry in txn.entries:
                if entry.quantity is None or not entry.asset_symbol:
                    continue
                key = (entry.asset_symbol, entry.account_name)
                positions[key] = positions.get(key, ZERO) + entry.signed_quantity
                touched.add(key)
            for key in sorted(touched):
                if positions[key] < 0:
                    negative.append(
                        NegativePosition(
                            asset_symbol=key[0],
                            account_name=key[1],
                            quantity=positions[key],
                            transaction_id=txn.id,
                            transaction_date=txn.transaction_date,
                        )
                    )
        return PositionSection(
            positions={
                symbol if symbol == account else f"{symbol} ({account})": qty
                for (symbol, account), qty in sorted(positions.items())
            },
            negative=negative,
        )

    def check_settlement_pairing(
        self,
        transactions: Sequence[Transaction],
        rows: Sequence[SourceRow],
        detector: SettlementDetector | None,
    ) -> SettlementSection:
        if detector is None or not detector.uses_settlement_rows:
            return SettlementSection(applicable=False)
        settlement_rows = {
            row.row_number for row in rows if detector.is_settlement_row(row)
        }
        unpaired = [
            UnpairedSettlement(transaction_id=txn.id, row_numbers=list(txn.source_row_numbers))
            for txn in transactions
            if txn.source_row_numbers
            and all(n in settlement_rows for n in txn.source_row_numbers)
        ]
        return SettlementSection(applicable=True, unpaired=unpaired)
