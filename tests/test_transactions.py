"""Tests for journal entries and transactions."""

from datetime import date
from decimal import Decimal

import pytest

from brokerage_ledger.domain.transactions import JournalEntry, Transaction
from brokerage_ledger.domain.value_objects import AccountClass
from brokerage_ledger.exceptions import (
    InsufficientEntriesError,
    InvalidEntryError,
    UnbalancedTransactionError,
)


def cash_debit(amount: str) -> JournalEntry:
    return JournalEntry.debit(AccountClass.CASH, "Cash USD", Decimal(amount))


def income_credit(amount: str) -> JournalEntry:
    return JournalEntry.credit(AccountClass.INCOME, "Interest Income", Decimal(amount))


class TestJournalEntry:
    def test_debit_entry(self):
        entry = cash_debit("10.00")

        assert entry.is_debit
        assert not entry.is_credit
        assert entry.amount == Decimal("10.00")

    def test_entry_needs_exactly_one_side(self):
        with pytest.raises(InvalidEntryError):
            JournalEntry(AccountClass.CASH, "Cash USD")
        with pytest.raises(InvalidEntryError):
            JournalEntry(
                AccountClass.CASH,
                "Cash USD",
                debit_amount=Decimal("1"),
                credit_amount=Decimal("1"),
            )

    def test_negative_amount_is_rejected(self):
        with pytest.raises(InvalidEntryError):
            cash_debit("-5.00")

    def test_net_effect_follows_account_class(self):
        assert cash_debit("10").net_effect == Decimal("10")
        assert income_credit("10").net_effect == Decimal("10")
        assert JournalEntry.credit(AccountClass.CASH, "Cash USD", Decimal("4")).net_effect == (
            Decimal("-4")
        )

    def test_signed_quantity(self):
        bought = JournalEntry.debit(
            AccountClass.ASSET, "SPY", Decimal("100"), quantity=Decimal("2")
        )
        sold = JournalEntry.credit(
            AccountClass.ASSET, "SPY", Decimal("100"), quantity=Decimal("2")
        )

        assert bought.signed_quantity == Decimal("2")
        assert sold.signed_quantity == Decimal("-2")


class TestTransaction:
    def test_source_rows_are_sorted_and_unique(self):
        txn = Transaction(transaction_date=date(2024, 1, 2), source_row_numbers=[5, 3, 5])

        assert txn.source_row_numbers == [3, 5]
        assert txn.first_row == 3
        assert txn.sort_key == (date(2024, 1, 2), 3)

    def test_balanced_transaction_validates(self):
        txn = Transaction(
            transaction_date=date(2024, 1, 31),
            entries=[cash_debit("0.42"), income_credit("0.42")],
            source_row_numbers=[7],
        )

        txn.validate()

        assert txn.is_balanced
        assert txn.total_debits == txn.total_credits == Decimal("0.42")
        assert txn.cash_effect == Decimal("0.42")

    def test_single_entry_raises_insufficient_entries(self):
        txn = Transaction(transaction_date=date(2024, 1, 31), entries=[cash_debit("1")])

        with pytest.raises(InsufficientEntriesError) as exc_info:
            txn.validate()

        assert exc_info.value.context["entry_count"] == 1

    def test_unbalanced_raises(self):
        txn = Transaction(
            transaction_date=date(2024, 1, 31),
            entries=[cash_debit("10.00"), income_credit("9.00")],
        )

        with pytest.raises(UnbalancedTransactionError):
            txn.validate()
        assert txn.imbalance == Decimal("1.00")

    def test_difference_within_tolerance_is_balanced(self):
        txn = Transaction(
            transaction_date=date(2024, 1, 31),
            entries=[cash_debit("10.00"), income_credit("9.995")],
        )

        assert txn.is_balanced
