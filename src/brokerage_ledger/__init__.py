from brokerage_ledger.domain.coverage import CoverageIndex
from brokerage_ledger.domain.sessions import LedgerSession
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import JournalEntry, Transaction
from brokerage_ledger.domain.value_objects import AccountClass, EntrySide

__all__ = [
    "AccountClass",
    "CoverageIndex",
    "EntrySide",
    "JournalEntry",
    "LedgerSession",
    "SourceRow",
    "Transaction",
]

__version__ = "0.1.0"
