"""Reconciliation artifacts: checkpoints, discrepancies and investigations.

These belong to a single reconciliation run and are persisted with it for
audit.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from brokerage_ledger.domain.deltas import Delta
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import Transaction
from brokerage_ledger.domain.value_objects import (
    BALANCE_TOLERANCE,
    DiscrepancyType,
    ReconciliationOutcome,
    Severity,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class BalanceCheckpoint:
    checkpoint_date: date
    row_number: int
    source_balance: Decimal
    calculated_balance: Decimal
    tolerance: Decimal = BALANCE_TOLERANCE
    id: UUID = field(default_factory=uuid4)

    @property
    def difference(self) -> Decimal:
        return self.source_balance - self.calculated_balance

    @property
    def has_discrepancy(self) -> bool:
        return abs(self.difference) > self.tolerance

    @property
    def severity(self) -> Severity:
        return Severity.from_difference(self.difference)


@dataclass
class Discrepancy:
    discrepancy_type: DiscrepancyType
    severity: Severity
    description: str
    affected_rows: list[int] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    expected_value: Decimal | None = None
    actual_value: Decimal | None = None
    transaction_ids: list[UUID] = field(default_factory=list)
    id: UUID = field(default_factory=uuid4)
    is_resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by_fix_id: UUID | None = None

    @property
    def difference(self) -> Decimal | None:
        if self.expected_value is None or self.actual_value is None:
            return None
        return self.expected_value - self.actual_value

    def resolve(self, fix_id: UUID) -> None:
        self.is_resolved = True
        self.resolved_at = _utc_now()
        self.resolved_by_fix_id = fix_id


@dataclass
class ImpactAnalysis:
    balance_change: Decimal = Decimal("0")
    transactions_created: int = 0
    transactions_modified: int = 0
    transactions_deleted: int = 0
    checkpoints_resolved: list[int] = field(default_factory=list)
    new_discrepancies_risk: str = "low"


@dataclass
class ProposedFix:
    description: str
    confidence: float
    deltas: list[Delta] = field(default_factory=list)
    reasoning: str = ""
    impact: ImpactAnalysis = field(default_factory=ImpactAnalysis)
    supporting_evidence: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    id: UUID = field(default_factory=uuid4)
    is_applied: bool = False


@dataclass
class Investigation:
    discrepancy_id: UUID
    hypothesis: str
    proposed_fixes: list[ProposedFix] = field(default_factory=list)
    evidence_analysis: str = ""
    uncertainties: list[str] = field(default_factory=list)
    needs_more_data: bool = False
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)
    was_applied: bool = False
    applied_at: datetime | None = None

    @property
    def ranked_fixes(self) -> list[ProposedFix]:
        return sorted(self.proposed_fixes, key=lambda fix: fix.confidence, reverse=True)

    def best_fix(self, threshold: float) -> ProposedFix | None:
        """Highest-confidence fix at or above the threshold, if any."""
        ranked = self.ranked_fixes
        if ranked and ranked[0].confidence >= threshold:
            return ranked[0]
        return None

    def mark_applied(self, fix: ProposedFix) -> None:
        fix.is_applied = True
        self.was_applied = True
        self.applied_at = _utc_now()


@dataclass
class ContextWindow:
    start_date: date
    end_date: date
    rows: list[SourceRow] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)


@dataclass
class ReconciliationRun:
    session_id: UUID
    max_iterations: int
    id: UUID = field(default_factory=uuid4)
    outcome: ReconciliationOutcome | None = None
    iterations: int = 0
    checkpoints: list[BalanceCheckpoint] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    investigations: list[Investigation] = field(default_factory=list)
    pending_fixes: list[ProposedFix] = field(default_factory=list)
    fixes_applied: int = 0
    discrepancies_resolved: int = 0
    initial_max_discrepancy: Decimal = Decimal("0")
    final_max_discrepancy: Decimal = Decimal("0")
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime | None = None

    @property
    def unresolved(self) -> list[Discrepancy]:
        return [d for d in self.discrepancies if not d.is_resolved]

    @property
    def outstanding(self) -> list[Discrepancy]:
        """Unresolved discrepancies, the latest detection of each kind and row set."""
        if self.outcome == ReconciliationOutcome.RECONCILED:
            return []
        latest: dict[tuple[DiscrepancyType, tuple[int, ...]], Discrepancy] = {}
        for discrepancy in self.unresolved:
            key = (discrepancy.discrepancy_type, tuple(discrepancy.affected_rows))
            latest.pop(key, None)
            latest[key] = discrepancy
        return list(latest.values())

    def complete(self, outcome: ReconciliationOutcome) -> None:
        self.outcome = outcome
        self.completed_at = _utc_now()
