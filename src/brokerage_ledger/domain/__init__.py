from brokerage_ledger.domain.assets import Asset
from brokerage_ledger.domain.coverage import CoverageIndex, CoverageSnapshot
from brokerage_ledger.domain.deltas import (
    CreateDelta,
    DeleteDelta,
    Delta,
    EntryPayload,
    ExcludeDelta,
    TransactionPayload,
    UpdateDelta,
)
from brokerage_ledger.domain.reconciliation import (
    BalanceCheckpoint,
    ContextWindow,
    Discrepancy,
    ImpactAnalysis,
    Investigation,
    ProposedFix,
    ReconciliationRun,
)
from brokerage_ledger.domain.sessions import (
    ChangeSet,
    LedgerSession,
    SessionLocks,
    SessionStatistics,
)
from brokerage_ledger.domain.source_rows import ColumnMap, RowReader, SourceRow
from brokerage_ledger.domain.transactions import JournalEntry, Transaction
from brokerage_ledger.domain.value_objects import (
    AccountClass,
    ActionPattern,
    DeltaAction,
    DiscrepancyType,
    EntrySide,
    ReconciliationOutcome,
    SessionStatus,
    Severity,
    Thoroughness,
    TransactionKind,
    ValidationStatus,
)

__all__ = [
    "AccountClass",
    "ActionPattern",
    "Asset",
    "BalanceCheckpoint",
    "ChangeSet",
    "ColumnMap",
    "ContextWindow",
    "CoverageIndex",
    "CoverageSnapshot",
    "CreateDelta",
    "DeleteDelta",
    "Delta",
    "DeltaAction",
    "Discrepancy",
    "DiscrepancyType",
    "EntryPayload",
    "EntrySide",
    "ExcludeDelta",
    "ImpactAnalysis",
    "Investigation",
    "JournalEntry",
    "LedgerSession",
    "ProposedFix",
    "ReconciliationOutcome",
    "ReconciliationRun",
    "RowReader",
    "SessionLocks",
    "SessionStatistics",
    "SessionStatus",
    "Severity",
    "SourceRow",
    "Thoroughness",
    "Transaction",
    "TransactionKind",
    "TransactionPayload",
    "UpdateDelta",
    "ValidationStatus",
]
