"""Checkpoint construction and discrepancy detection."""

from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal

from brokerage_ledger.domain.reconciliation import BalanceCheckpoint, Discrepancy
from brokerage_ledger.domain.source_rows import RowReader, SourceRow
from brokerage_ledger.domain.transactions import ZERO, Transaction
from brokerage_ledger.domain.value_objects import (
    BALANCE_TOLERANCE,
    DiscrepancyType,
    Severity,
)


class BalanceCalculator:
    """Compares the ledger's running cash balance with source balances.

    The calculated balance at a checkpoint is the sum of cash net effects
    of every transaction dated on or before the checkpoint date.
    """

    def __init__(
        self, reader: RowReader | None = None, tolerance: Decimal = BALANCE_TOLERANCE
    ) -> None:
        self._reader = reader or RowReader()
        self._tolerance = tolerance

    @property
    def tolerance(self) -> Decimal:
        return self._tolerance

    def cash_balance_through(
        self, transactions: Iterable[Transaction], as_of: date
    ) -> Decimal:
        return sum(
            (t.cash_effect for t in transactions if t.transaction_date <= as_of), ZERO
        )

    def build_checkpoints(
        self, rows: Sequence[SourceRow], transactions: Sequence[Transaction]
    ) -> list[BalanceCheckpoint]:
        ordered = sorted(transactions, key=lambda t: t.sort_key)
        candidates = []
        for row in rows:
            balance = self._reader.balance(row)
            row_date = self._reader.date(row)
            if balance is None or row_date is None:
                continue
            candidates.append((row_date, row.row_number, balance))
        candidates.sort()

        checkpoints: list[BalanceCheckpoint] = []
        running = ZERO
        position = 0
        for row_date, row_number, balance in candidates:
            while position < len(ordered) and ordered[position].transaction_date <= row_date:
                running += ordered[position].cash_effect
                position += 1
            checkpoints.append(
                BalanceCheckpoint(
                    checkpoint_date=row_date,
                    row_number=row_number,
                    source_balance=balance,
                    calculated_balance=running,
                    tolerance=self._tolerance,
                )
            )
        return checkpoints

    def find_discrepancies(
        self,
        checkpoints: Sequence[BalanceCheckpoint],
        transactions: Sequence[Transaction],
    ) -> list[Discrepancy]:
        """Detect discrepancies, most severe first."""
        discrepancies: list[Discrepancy] = []

        if checkpoints and checkpoints[0].calculated_balance < 0:
            first = checkpoints[0]
            discrepancies.append(
                Discrepancy(
                    discrepancy_type=DiscrepancyType.MISSING_TRANSACTION,
                    severity=Severity.from_difference(first.calculated_balance),
                    description=(
                        f"Opening calculated balance {first.calculated_balance} is "
                        "negative; a funding transaction is probably missing"
                    ),
                    affected_rows=[first.row_number],
                    start_date=first.checkpoint_date,
                    end_date=first.checkpoint_date,
                    expected_value=first.source_balance,
                    actual_value=first.calculated_balance,
                )
            )

        for checkpoint in checkpoints:
            if not checkpoint.has_discrepancy:
                continue
            discrepancies.append(
                Discrepancy(
                    discrepancy_type=DiscrepancyType.BALANCE_MISMATCH,
                    severity=checkpoint.severity,
                    description=(
                        f"Row {checkpoint.row_number}: source balance "
                        f"{checkpoint.source_balance} vs calculated "
                        f"{checkpoint.calculated_balance}"
                    ),
                    affected_rows=[checkpoint.row_number],
                    start_date=checkpoint.checkpoint_date,
                    end_date=checkpoint.checkpoint_date,
                    expected_value=checkpoint.source_balance,
                    actual_value=checkpoint.calculated_balance,
                )
            )

        for txn in transactions:
            if abs(txn.imbalance) <= self._tolerance:
                continue
            discrepancies.append(
                Discrepancy(
                    discrepancy_type=DiscrepancyType.UNBALANCED_TRANSACTION,
                    severity=Severity.from_difference(txn.imbalance),
                    description=(
                        f"Transaction {txn.id} debits {txn.total_debits} != "
                        f"credits {txn.total_credits}"
                    ),
                    affected_rows=list(txn.source_row_numbers),
                    start_date=txn.transaction_date,
                    end_date=txn.transaction_date,
                    expected_value=txn.total_debits,
                    actual_value=txn.total_credits,
                    transaction_ids=[txn.id],
                )
            )

        for txn in transactions:
            for entry in txn.entries:
                if entry.source_amount is None:
                    continue
                gap = abs(entry.source_amount) - entry.amount
                if abs(gap) <= self._tolerance:
                    continue
                discrepancies.append(
                    Discrepancy(
                        discrepancy_type=DiscrepancyType.INCORRECT_AMOUNT,
                        severity=Severity.from_difference(gap),
                        description=(
                            f"Entry {entry.account_name!r} of transaction {txn.id} "
                            f"records {entry.amount}, source shows "
                            f"{abs(entry.source_amount)}"
                        ),
                        affected_rows=list(entry.source_row_numbers or txn.source_row_numbers),
                        start_date=txn.transaction_date,
                        end_date=txn.transaction_date,
                        expected_value=abs(entry.source_amount),
                        actual_value=entry.amount,
                        transaction_ids=[txn.id],
                    )
                )

        discrepancies.sort(
            key=lambda d: (-d.severity.rank, d.start_date or date.min, d.affected_rows[:1])
        )
        return discrepancies

    @staticmethod
    def max_difference(checkpoints: Iterable[BalanceCheckpoint]) -> Decimal:
        return max((abs(c.difference) for c in checkpoints), default=ZERO)
