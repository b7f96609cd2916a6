"""Builds balanced double-entry transactions.

Two inputs are supported:

- a RowGroup from the SettlementGrouper, classified by ActionClassifier and
  expanded through a fixed template per ActionPattern;
- a TransactionPayload proposed by an external collaborator.

Either way the balance invariant is asserted before anything is returned,
so callers never receive an unbalanced or single-leg transaction.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from brokerage_ledger.domain.assets import normalize_symbol, quantity_unit_for
from brokerage_ledger.domain.deltas import EntryPayload, TransactionPayload
from brokerage_ledger.domain.source_rows import RowReader, SourceRow
from brokerage_ledger.domain.transactions import JournalEntry, Transaction
from brokerage_ledger.domain.value_objects import (
    BALANCE_TOLERANCE,
    CASH_ACCOUNT_NAME,
    DIVIDEND_INCOME,
    FEES_AND_COMMISSIONS,
    INTEREST_EXPENSE,
    INTEREST_INCOME,
    OTHER_EXPENSES,
    OTHER_INCOME,
    OWNER_CONTRIBUTIONS,
    OWNER_WITHDRAWALS,
    TAXES_WITHHELD,
    AccountClass,
    ActionPattern,
    EntrySide,
    TransactionKind,
)
from brokerage_ledger.exceptions import (
    BuildError,
    BuildRejection,
    InsufficientEntriesError,
    InvalidEntryError,
    UnbalancedTransactionError,
)
from brokerage_ledger.logging_config import get_logger
from brokerage_ledger.services.classifier import ActionClassifier
from brokerage_ledger.services.grouping import RowGroup
from brokerage_ledger.services.interfaces import AssetIdentity

logger = get_logger(__name__)

Account = tuple[AccountClass, str]

_LOW_CONFIDENCE = frozenset({ActionPattern.OTHER_TRADE, ActionPattern.OTHER_CASH})

# Cash-only templates: (kind, account on inflow, account on outflow)
_CASH_TEMPLATES: dict[ActionPattern, tuple[TransactionKind, Account, Account]] = {
    ActionPattern.DIVIDEND_CASH: (
        TransactionKind.DIVIDEND,
        (AccountClass.INCOME, DIVIDEND_INCOME),
        (AccountClass.INCOME, DIVIDEND_INCOME),
    ),
    ActionPattern.INTEREST: (
        TransactionKind.INTEREST,
        (AccountClass.INCOME, INTEREST_INCOME),
        (AccountClass.EXPENSE, INTEREST_EXPENSE),
    ),
    ActionPattern.FEE: (
        TransactionKind.FEE,
        (AccountClass.EXPENSE, FEES_AND_COMMISSIONS),
        (AccountClass.EXPENSE, FEES_AND_COMMISSIONS),
    ),
    ActionPattern.TAX: (
        TransactionKind.TAX,
        (AccountClass.EXPENSE, TAXES_WITHHELD),
        (AccountClass.EXPENSE, TAXES_WITHHELD),
    ),
    ActionPattern.TRANSFER_IN: (
        TransactionKind.TRANSFER_IN,
        (AccountClass.EQUITY, OWNER_CONTRIBUTIONS),
        (AccountClass.EQUITY, OWNER_WITHDRAWALS),
    ),
    ActionPattern.TRANSFER_OUT: (
        TransactionKind.TRANSFER_OUT,
        (AccountClass.EQUITY, OWNER_CONTRIBUTIONS),
        (AccountClass.EQUITY, OWNER_WITHDRAWALS),
    ),
    ActionPattern.OTHER_CASH: (
        TransactionKind.OTHER,
        (AccountClass.INCOME, OTHER_INCOME),
        (AccountClass.EXPENSE, OTHER_EXPENSES),
    ),
}


@dataclass
class BuildResult:
    group: RowGroup
    transaction: Transaction | None = None
    rejection: BuildError | None = None

    @property
    def ok(self) -> bool:
        return self.transaction is not None


class TransactionBuilder:
    def __init__(
        self,
        assets: AssetIdentity,
        reader: RowReader | None = None,
        classifier: ActionClassifier | None = None,
        tolerance: Decimal = BALANCE_TOLERANCE,
    ) -> None:
        self._assets = assets
        self._reader = reader or RowReader()
        self._classifier = classifier or ActionClassifier()
        self._tolerance = tolerance

    # ------------------------------------------------------------------
    # Row groups
    # ------------------------------------------------------------------

    def build(self, group: RowGroup) -> BuildResult:
        """Build one group; structural problems become a rejection."""
        try:
            transaction = self._build_group(group)
        except BuildError as exc:
            logger.info(
                "group_rejected",
                rows=group.row_numbers,
                rejection=exc.rejection.value,
                reason=exc.message,
            )
            return BuildResult(group=group, rejection=exc)
        return BuildResult(group=group, transaction=transaction)

    def build_all(self, groups: Iterable[RowGroup]) -> list[BuildResult]:
        return [self.build(group) for group in groups]

    def _build_group(self, group: RowGroup) -> Transaction:
        rows = group.row_numbers
        primary = group.primary_row
        reader = self._reader

        transaction_date = reader.date(primary)
        if transaction_date is None:
            raise BuildError(
                BuildRejection.MISSING_DATE,
                f"Row {primary.row_number} has no parseable date",
                rows,
            )

        action = reader.action(primary)
        symbol = reader.symbol(primary)
        quantity = reader.quantity(primary)
        amount = reader.amount(primary)
        pattern = self._classifier.classify(action, symbol, quantity, amount)

        if amount is None:
            raise BuildError(
                BuildRejection.MISSING_AMOUNT,
                f"Row {primary.row_number} has no amount",
                rows,
            )

        kind, entries = self._apply_template(pattern, symbol, quantity, amount, rows)
        transaction = Transaction(
            transaction_date=transaction_date,
            entries=entries,
            source_row_numbers=rows,
            kind=kind,
            description=reader.description(primary) or action,
            low_confidence=pattern in _LOW_CONFIDENCE,
        )
        self._assert_valid(transaction)
        self._check_settlement_amounts(group, amount)
        if transaction.low_confidence:
            logger.info(
                "unrecognized_action",
                action=action,
                pattern=pattern.value,
                rows=rows,
            )
        return transaction

    def _apply_template(
        self,
        pattern: ActionPattern,
        symbol: str,
        quantity: Decimal | None,
        amount: Decimal,
        rows: list[int],
    ) -> tuple[TransactionKind, list[JournalEntry]]:
        magnitude = abs(amount)

        if pattern == ActionPattern.SETTLEMENT:
            # A lone settlement row has nothing to pair with; validation rejects it
            if amount >= 0:
                cash = JournalEntry.debit(
                    AccountClass.CASH, CASH_ACCOUNT_NAME, magnitude, source_row_numbers=rows
                )
            else:
                cash = JournalEntry.credit(
                    AccountClass.CASH, CASH_ACCOUNT_NAME, magnitude, source_row_numbers=rows
                )
            return TransactionKind.OTHER, [cash]

        if pattern == ActionPattern.OTHER_TRADE:
            pattern = ActionPattern.BUY if amount < 0 else ActionPattern.SELL

        if pattern in (ActionPattern.BUY, ActionPattern.SELL):
            if magnitude == 0:
                raise BuildError(
                    BuildRejection.INVALID_AMOUNT,
                    f"{pattern.value} with zero amount",
                    rows,
                )
            if pattern == ActionPattern.BUY:
                return TransactionKind.BUY, [
                    self._asset_leg(EntrySide.DEBIT, symbol, quantity, magnitude, rows),
                    self._cash_leg(EntrySide.CREDIT, magnitude, rows),
                ]
            return TransactionKind.SELL, [
                self._cash_leg(EntrySide.DEBIT, magnitude, rows),
                self._asset_leg(EntrySide.CREDIT, symbol, quantity, magnitude, rows),
            ]

        if pattern == ActionPattern.DIVIDEND_REINVESTED:
            return TransactionKind.DIVIDEND, [
                self._asset_leg(EntrySide.DEBIT, symbol, quantity, magnitude, rows),
                JournalEntry.credit(
                    AccountClass.INCOME, DIVIDEND_INCOME, magnitude, source_row_numbers=rows
                ),
            ]

        has_shares = bool(symbol) and quantity is not None and quantity != 0
        if pattern == ActionPattern.TRANSFER_IN and has_shares:
            return TransactionKind.TRANSFER_IN, [
                self._asset_leg(EntrySide.DEBIT, symbol, quantity, magnitude, rows),
                JournalEntry.credit(
                    AccountClass.EQUITY, OWNER_CONTRIBUTIONS, magnitude, source_row_numbers=rows
                ),
            ]
        if pattern == ActionPattern.TRANSFER_OUT and has_shares:
            return TransactionKind.TRANSFER_OUT, [
                JournalEntry.debit(
                    AccountClass.EQUITY, OWNER_WITHDRAWALS, magnitude, source_row_numbers=rows
                ),
                self._asset_leg(EntrySide.CREDIT, symbol, quantity, magnitude, rows),
            ]

        kind, inflow, outflow = _CASH_TEMPLATES[pattern]
        if magnitude == 0:
            raise BuildError(
                BuildRejection.INVALID_AMOUNT,
                f"{pattern.value} with zero amount",
                rows,
            )
        if kind in (TransactionKind.TRANSFER_IN, TransactionKind.TRANSFER_OUT):
            kind = TransactionKind.TRANSFER_IN if amount > 0 else TransactionKind.TRANSFER_OUT
        if amount > 0:
            counter_class, counter_name = inflow
            return kind, [
                self._cash_leg(EntrySide.DEBIT, magnitude, rows),
                JournalEntry.credit(counter_class, counter_name, magnitude, source_row_numbers=rows),
            ]
        counter_class, counter_name = outflow
        return kind, [
            JournalEntry.debit(counter_class, counter_name, magnitude, source_row_numbers=rows),
            self._cash_leg(EntrySide.CREDIT, magnitude, rows),
        ]

    def _cash_leg(self, side: EntrySide, amount: Decimal, rows: list[int]) -> JournalEntry:
        if side == EntrySide.DEBIT:
            return JournalEntry.debit(
                AccountClass.CASH, CASH_ACCOUNT_NAME, amount, source_row_numbers=rows
            )
        return JournalEntry.credit(
            AccountClass.CASH, CASH_ACCOUNT_NAME, amount, source_row_numbers=rows
        )

    def _asset_leg(
        self,
        side: EntrySide,
        symbol: str,
        quantity: Decimal | None,
        amount: Decimal,
        rows: list[int],
    ) -> JournalEntry:
        if not symbol.strip():
            raise BuildError(
                BuildRejection.MISSING_SYMBOL, "Asset leg requires a symbol", rows
            )
        if quantity is None or quantity == 0:
            raise BuildError(
                BuildRejection.INVALID_QUANTITY,
                f"Asset leg for {symbol} requires a non-zero quantity",
                rows,
            )
        canonical = normalize_symbol(symbol)
        asset_id = self._assets.resolve(canonical)
        kwargs = {
            "quantity": abs(quantity),
            "quantity_unit": quantity_unit_for(canonical),
            "asset_id": asset_id,
            "asset_symbol": canonical,
            "source_row_numbers": rows,
        }
        if side == EntrySide.DEBIT:
            return JournalEntry.debit(AccountClass.ASSET, canonical, amount, **kwargs)
        return JournalEntry.credit(AccountClass.ASSET, canonical, amount, **kwargs)

    def _check_settlement_amounts(self, group: RowGroup, amount: Decimal) -> None:
        settlement_total = Decimal("0")
        seen = False
        for row in group.settlement_rows:
            if row.row_number == group.primary_row.row_number:
                continue
            value = self._reader.amount(row)
            if value is not None:
                settlement_total += value
                seen = True
        if seen and abs(settlement_total + amount) > self._tolerance:
            logger.warning(
                "settlement_amount_mismatch",
                rows=group.row_numbers,
                trade_amount=str(amount),
                settlement_amount=str(settlement_total),
            )

    def _assert_valid(self, transaction: Transaction) -> None:
        rows = transaction.source_row_numbers
        try:
            transaction.validate()
        except InsufficientEntriesError as exc:
            raise BuildError(BuildRejection.INSUFFICIENT_ENTRIES, exc.message, rows) from exc
        except UnbalancedTransactionError as exc:
            raise BuildError(BuildRejection.UNBALANCED, exc.message, rows) from exc
        if abs(transaction.imbalance) > self._tolerance:
            raise BuildError(
                BuildRejection.UNBALANCED,
                f"Transaction {transaction.id} is off by {transaction.imbalance}",
                rows,
            )

    # ------------------------------------------------------------------
    # External payloads
    # ------------------------------------------------------------------

    def build_from_payload(self, payload: TransactionPayload) -> Transaction:
        """Build a proposed transaction.

        Raises:
            BuildError: the payload has fewer than two legs, does not balance,
                or carries an unusable entry.
        """
        rows = sorted(set(payload.source_rows))
        entries = [self._entry_from_payload(entry, rows) for entry in payload.entries]
        transaction = Transaction(
            transaction_date=payload.transaction_date,
            entries=entries,
            source_row_numbers=rows,
            kind=payload.kind,
            description=payload.description,
        )
        self._assert_valid(transaction)
        return transaction

    def _entry_from_payload(self, payload: EntryPayload, rows: list[int]) -> JournalEntry:
        symbol = payload.asset_symbol
        if not symbol and payload.account_class == AccountClass.ASSET:
            symbol = payload.account_name
        asset_id = None
        unit = payload.quantity_unit
        if symbol:
            symbol = normalize_symbol(symbol)
            asset_id = self._assets.resolve(symbol)
            if unit is None and payload.quantity is not None:
                unit = quantity_unit_for(symbol)

        if payload.source_amount is not None and (
            abs(abs(payload.source_amount) - payload.amount) > self._tolerance
        ):
            logger.warning(
                "entry_amount_differs_from_source",
                account=payload.account_name,
                amount=str(payload.amount),
                source_amount=str(payload.source_amount),
                rows=list(payload.source_rows) or rows,
            )

        sides = (
            {"debit_amount": payload.amount}
            if payload.side == EntrySide.DEBIT
            else {"credit_amount": payload.amount}
        )
        try:
            return JournalEntry(
                account_class=payload.account_class,
                account_name=payload.account_name,
                quantity=abs(payload.quantity) if payload.quantity is not None else None,
                quantity_unit=unit,
                asset_id=asset_id,
                asset_symbol=symbol,
                source_row_numbers=sorted(payload.source_rows) or rows,
                source_amount=payload.source_amount,
                **sides,
            )
        except InvalidEntryError as exc:
            raise BuildError(BuildRejection.INVALID_AMOUNT, exc.message, rows) from exc


def describe_rows(rows: Iterable[SourceRow], reader: RowReader) -> list[str]:
    """One-line renderings of rows for log and report output."""
    return [
        f"#{row.row_number} {reader.date(row) or '?'} {reader.action(row) or '-'} "
        f"{reader.symbol(row) or ''} {reader.amount(row) or ''}".rstrip()
        for row in rows
    ]
