from decimal import Decimal
from enum import Enum

BALANCE_TOLERANCE = Decimal("0.01")

CASH_ACCOUNT_NAME = "Cash USD"
DIVIDEND_INCOME = "Dividend Income"
INTEREST_INCOME = "Interest Income"
FEES_AND_COMMISSIONS = "Fees & Commissions"
TAXES_WITHHELD = "Taxes Withheld"
OWNER_CONTRIBUTIONS = "Owner Contributions"
OWNER_WITHDRAWALS = "Owner Withdrawals"
OTHER_INCOME = "Other Income"
OTHER_EXPENSES = "Other Expenses"
INTEREST_EXPENSE = "Interest Expense"


class AccountClass(str, Enum):
    ASSET = "asset"
    CASH = "cash"
    INCOME = "income"
    EXPENSE = "expense"
    LIABILITY = "liability"
    EQUITY = "equity"

    @property
    def increases_on_debit(self) -> bool:
        return self in (AccountClass.ASSET, AccountClass.CASH, AccountClass.EXPENSE)


class EntrySide(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class TransactionKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    FEE = "fee"
    INTEREST = "interest"
    TAX = "tax"
    OTHER = "other"

    @classmethod
    def from_label(cls, label: str | None) -> "TransactionKind":
        """Map a free-form type label onto a kind; unknown labels become OTHER."""
        if not label:
            return cls.OTHER
        key = label.strip().lower().replace("-", "_").replace(" ", "_")
        key = _KIND_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


_KIND_ALIASES = {
    "deposit": "transfer_in",
    "transferin": "transfer_in",
    "withdrawal": "transfer_out",
    "transferout": "transfer_out",
    "purchase": "buy",
    "sale": "sell",
}


class ActionPattern(str, Enum):
    """Fixed action templates recognised by the transaction builder."""

    BUY = "buy"
    SELL = "sell"
    DIVIDEND_CASH = "dividend_cash"
    DIVIDEND_REINVESTED = "dividend_reinvested"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    FEE = "fee"
    INTEREST = "interest"
    TAX = "tax"
    OTHER_TRADE = "other_trade"
    OTHER_CASH = "other_cash"
    SETTLEMENT = "settlement"


class DeltaAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXCLUDE = "exclude"


class DiscrepancyType(str, Enum):
    BALANCE_MISMATCH = "balance_mismatch"
    UNBALANCED_TRANSACTION = "unbalanced_transaction"
    MISSING_TRANSACTION = "missing_transaction"
    INCORRECT_AMOUNT = "incorrect_amount"
    DUPLICATE_COVERAGE = "duplicate_coverage"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def from_difference(cls, difference: Decimal) -> "Severity":
        magnitude = abs(difference)
        if magnitude > 1000:
            return cls.CRITICAL
        if magnitude > 100:
            return cls.HIGH
        if magnitude > 10:
            return cls.MEDIUM
        return cls.LOW


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ValidationStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    CRITICAL = "critical"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"
    STALLED = "stalled"


class Thoroughness(str, Enum):
    QUICK = "quick"
    BALANCED = "balanced"
    THOROUGH = "thorough"

    @property
    def context_days(self) -> int:
        return {"quick": 3, "balanced": 7, "thorough": 14}[self.value]


class ReconciliationOutcome(str, Enum):
    RECONCILED = "reconciled"
    STALLED = "stalled"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
