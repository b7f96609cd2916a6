from brokerage_ledger.services.asset_registry import AssetRegistry
from brokerage_ledger.services.balances import BalanceCalculator
from brokerage_ledger.services.categorization import (
    CategorizationRunner,
    WindowOutcome,
    WindowStatus,
)
from brokerage_ledger.services.classifier import ActionClassifier
from brokerage_ledger.services.delta_review import (
    DeltaOutcome,
    DeltaReviewEngine,
    ReviewBatchResult,
)
from brokerage_ledger.services.grouping import RowGroup, SettlementGrouper
from brokerage_ledger.services.interfaces import (
    AccountContext,
    AssetIdentity,
    CategorizationService,
    InvestigationService,
)
from brokerage_ledger.services.ledger import LedgerService
from brokerage_ledger.services.reconciliation import ReconciliationEngine
from brokerage_ledger.services.transaction_builder import BuildResult, TransactionBuilder
from brokerage_ledger.services.validator import ValidationReport, Validator

__all__ = [
    "AccountContext",
    "ActionClassifier",
    "AssetIdentity",
    "AssetRegistry",
    "BalanceCalculator",
    "BuildResult",
    "CategorizationRunner",
    "CategorizationService",
    "DeltaOutcome",
    "DeltaReviewEngine",
    "InvestigationService",
    "LedgerService",
    "ReconciliationEngine",
    "ReviewBatchResult",
    "RowGroup",
    "SettlementGrouper",
    "TransactionBuilder",
    "ValidationReport",
    "Validator",
    "WindowOutcome",
    "WindowStatus",
]
