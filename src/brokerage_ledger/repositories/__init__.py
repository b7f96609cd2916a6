from brokerage_ledger.repositories.interfaces import (
    AssetRepository,
    ExclusionRepository,
    LedgerStore,
    ReconciliationRunRepository,
    SessionRepository,
    SourceRowRepository,
    TransactionRepository,
)
from brokerage_ledger.repositories.sqlite import (
    SQLiteAssetRepository,
    SQLiteDatabase,
    SQLiteExclusionRepository,
    SQLiteLedgerStore,
    SQLiteReconciliationRunRepository,
    SQLiteSessionRepository,
    SQLiteSourceRowRepository,
    SQLiteTransactionRepository,
)

__all__ = [
    "AssetRepository",
    "ExclusionRepository",
    "LedgerStore",
    "ReconciliationRunRepository",
    "SessionRepository",
    "SourceRowRepository",
    "TransactionRepository",
    "SQLiteAssetRepository",
    "SQLiteDatabase",
    "SQLiteExclusionRepository",
    "SQLiteLedgerStore",
    "SQLiteReconciliationRunRepository",
    "SQLiteSessionRepository",
    "SQLiteSourceRowRepository",
    "SQLiteTransactionRepository",
]
