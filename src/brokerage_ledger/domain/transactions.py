from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from brokerage_ledger.domain.value_objects import (
    BALANCE_TOLERANCE,
    AccountClass,
    TransactionKind,
)
from brokerage_ledger.exceptions import (
    InsufficientEntriesError,
    InvalidEntryError,
    UnbalancedTransactionError,
)

ZERO = Decimal("0")


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class JournalEntry:
    account_class: AccountClass
    account_name: str
    debit_amount: Decimal | None = None
    credit_amount: Decimal | None = None
    id: UUID = field(default_factory=uuid4)
    quantity: Decimal | None = None
    quantity_unit: str | None = None
    asset_id: UUID | None = None
    asset_symbol: str | None = None
    source_row_numbers: list[int] = field(default_factory=list)
    source_amount: Decimal | None = None
    memo: str = ""

    def __post_init__(self) -> None:
        if (self.debit_amount is None) == (self.credit_amount is None):
            raise InvalidEntryError(
                f"Entry for {self.account_name!r} must carry exactly one of "
                "debit or credit",
                context={"entry_id": str(self.id)},
            )
        if self.amount < 0:
            raise InvalidEntryError(
                f"Entry for {self.account_name!r} has a negative amount {self.amount}",
                context={"entry_id": str(self.id)},
            )

    @classmethod
    def debit(
        cls, account_class: AccountClass, account_name: str, amount: Decimal, **kwargs
    ) -> "JournalEntry":
        return cls(account_class, account_name, debit_amount=amount, **kwargs)

    @classmethod
    def credit(
        cls, account_class: AccountClass, account_name: str, amount: Decimal, **kwargs
    ) -> "JournalEntry":
        return cls(account_class, account_name, credit_amount=amount, **kwargs)

    @property
    def is_debit(self) -> bool:
        return self.debit_amount is not None

    @property
    def is_credit(self) -> bool:
        return self.credit_amount is not None

    @property
    def amount(self) -> Decimal:
        if self.debit_amount is not None:
            return self.debit_amount
        return self.credit_amount or ZERO

    @property
    def net_effect(self) -> Decimal:
        """Signed change to the account, positive when the account grows."""
        raw = (self.debit_amount or ZERO) - (self.credit_amount or ZERO)
        return raw if self.account_class.increases_on_debit else -raw

    @property
    def signed_quantity(self) -> Decimal:
        if self.quantity is None:
            return ZERO
        return self.quantity if self.is_debit else -self.quantity


@dataclass
class Transaction:
    transaction_date: date
    entries: list[JournalEntry] = field(default_factory=list)
    source_row_numbers: list[int] = field(default_factory=list)
    kind: TransactionKind = TransactionKind.OTHER
    description: str = ""
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)
    low_confidence: bool = False

    def __post_init__(self) -> None:
        self.source_row_numbers = sorted(set(self.source_row_numbers))

    @property
    def total_debits(self) -> Decimal:
        return sum((e.debit_amount for e in self.entries if e.is_debit), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((e.credit_amount for e in self.entries if e.is_credit), ZERO)

    @property
    def imbalance(self) -> Decimal:
        return self.total_debits - self.total_credits

    @property
    def is_balanced(self) -> bool:
        return abs(self.imbalance) <= BALANCE_TOLERANCE

    def validate(self) -> None:
        if len(self.entries) < 2:
            raise InsufficientEntriesError(self.id, len(self.entries))
        if not self.is_balanced:
            raise UnbalancedTransactionError(
                self.id, str(self.total_debits), str(self.total_credits)
            )

    def add_entry(self, entry: JournalEntry) -> None:
        self.entries.append(entry)

    @property
    def cash_effect(self) -> Decimal:
        """Net change to cash accounts caused by this transaction."""
        return sum(
            (e.net_effect for e in self.entries if e.account_class == AccountClass.CASH),
            ZERO,
        )

    @property
    def first_row(self) -> int:
        return self.source_row_numbers[0] if self.source_row_numbers else 0

    @property
    def sort_key(self) -> tuple[date, int]:
        return (self.transaction_date, self.first_row)
