"""Source rows handed over by the upstream CSV tokenizer.

Rows are immutable and globally numbered; the global row number is the unit
of provenance for every transaction and exclusion.
"""

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m/%d/%y", "%m-%d-%Y")
_NUMBER_NOISE = re.compile(r"[\s$,]")


@dataclass(frozen=True)
class SourceRow:
    row_number: int
    fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    source_file: str = ""
    file_row_number: int = 0

    def get(self, column: str | None) -> str:
        if not column:
            return ""
        value = self.fields.get(column)
        return value.strip() if value else ""

    @property
    def content_hash(self) -> str:
        """Stable digest of the row's values in sorted column order."""
        digest = hashlib.sha256()
        for key in sorted(self.fields):
            digest.update(f"{key}={self.fields[key]}\x1f".encode())
        return digest.hexdigest()


def parse_decimal(text: str | None) -> Decimal | None:
    """Parse a money or quantity cell.

    Accepts "$1,234.50", "-12", "+3.5" and accounting negatives "(42.00)".
    Blank cells, "--" placeholders and non-finite values such as "NaN" return
    None.
    """
    if text is None:
        return None
    cleaned = _NUMBER_NOISE.sub("", text)
    if cleaned in ("", "-", "--"):
        return None
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    if negative:
        cleaned = cleaned[1:-1]
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return -value if negative else value


def parse_date(text: str | None) -> date | None:
    """Parse a date cell in US, ISO or ISO-datetime form."""
    if not text:
        return None
    value = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


@dataclass(frozen=True)
class ColumnMap:
    """Names of the columns that carry each semantic field.

    Defaults follow the Fidelity activity export.
    """

    date: str = "Run Date"
    action: str = "Action"
    symbol: str = "Symbol"
    description: str = "Description"
    quantity: str = "Quantity"
    amount: str = "Amount ($)"
    balance: str | None = "Cash Balance ($)"


class RowReader:
    """Typed accessors over a SourceRow using a ColumnMap."""

    def __init__(self, columns: ColumnMap | None = None) -> None:
        self.columns = columns or ColumnMap()

    def action(self, row: SourceRow) -> str:
        return row.get(self.columns.action)

    def symbol(self, row: SourceRow) -> str:
        return row.get(self.columns.symbol)

    def description(self, row: SourceRow) -> str:
        return row.get(self.columns.description)

    def quantity(self, row: SourceRow) -> Decimal | None:
        return parse_decimal(row.get(self.columns.quantity))

    def amount(self, row: SourceRow) -> Decimal | None:
        return parse_decimal(row.get(self.columns.amount))

    def balance(self, row: SourceRow) -> Decimal | None:
        return parse_decimal(row.get(self.columns.balance))

    def date(self, row: SourceRow) -> date | None:
        return parse_date(row.get(self.columns.date))

    def has_balance_column(self, rows: list[SourceRow]) -> bool:
        if not self.columns.balance:
            return False
        return any(self.balance(row) is not None for row in rows)
