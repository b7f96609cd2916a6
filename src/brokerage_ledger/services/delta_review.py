"""Application of proposed deltas to a ledger session.

Deltas in a batch are applied in order, each atomically: a delta either
lands completely or is rejected with a reason, and a rejection never rolls
back deltas that already landed. ``update`` is delete-then-create against
the referenced id; if the create half fails the original transaction is
restored, so an update is all-or-nothing as well.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from brokerage_ledger.domain.deltas import (
    CreateDelta,
    DeleteDelta,
    Delta,
    ExcludeDelta,
    UpdateDelta,
)
from brokerage_ledger.domain.sessions import (
    ChangeSet,
    LedgerSession,
    SessionLocks,
    SessionStatistics,
)
from brokerage_ledger.domain.value_objects import DeltaAction
from brokerage_ledger.exceptions import (
    BrokerageLedgerError,
    InvalidDeltaError,
    TransactionNotFoundError,
)
from brokerage_ledger.logging_config import LogContext, get_logger
from brokerage_ledger.repositories.interfaces import LedgerStore
from brokerage_ledger.schemas import parse_delta
from brokerage_ledger.services.transaction_builder import TransactionBuilder

logger = get_logger(__name__)


class DeltaOutcomeStatus(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"


@dataclass
class DeltaOutcome:
    index: int
    action: DeltaAction | None
    status: DeltaOutcomeStatus
    reason: str = ""
    error: str | None = None
    created_transaction_id: UUID | None = None
    removed_transaction_id: UUID | None = None
    row_numbers: list[int] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.status == DeltaOutcomeStatus.APPLIED


@dataclass
class ReviewBatchResult:
    session_id: UUID
    outcomes: list[DeltaOutcome] = field(default_factory=list)
    statistics: SessionStatistics = field(default_factory=SessionStatistics)

    def _count(self, action: DeltaAction) -> int:
        return sum(1 for o in self.outcomes if o.applied and o.action == action)

    @property
    def created(self) -> int:
        return self._count(DeltaAction.CREATE)

    @property
    def updated(self) -> int:
        return self._count(DeltaAction.UPDATE)

    @property
    def deleted(self) -> int:
        return self._count(DeltaAction.DELETE)

    @property
    def excluded(self) -> int:
        return self._count(DeltaAction.EXCLUDE)

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.applied)

    @property
    def failures(self) -> list[DeltaOutcome]:
        return [o for o in self.outcomes if not o.applied]

    @property
    def all_applied(self) -> bool:
        return bool(self.outcomes) and not self.failures


class DeltaReviewEngine:
    def __init__(
        self,
        builder: TransactionBuilder,
        store: LedgerStore | None = None,
        locks: SessionLocks | None = None,
    ) -> None:
        self._builder = builder
        self._store = store
        self._locks = locks or SessionLocks()

    async def review(
        self, deltas: Sequence[Delta], session: LedgerSession
    ) -> ReviewBatchResult:
        """Apply a batch while holding the session's writer lock."""
        async with self._locks.hold(session.id):
            return self.apply(deltas, session)

    def apply_payloads(
        self, payloads: Sequence[Any], session: LedgerSession
    ) -> ReviewBatchResult:
        """Parse raw deltas at the boundary, then apply those that parse.

        Payloads that fail to parse are reported as rejected outcomes at
        their original index.
        """
        parsed: list[tuple[int, Delta]] = []
        rejected: list[DeltaOutcome] = []
        for index, raw in enumerate(payloads):
            try:
                parsed.append((index, parse_delta(raw)))
            except InvalidDeltaError as exc:
                action = raw.get("action") if isinstance(raw, Mapping) else None
                logger.warning("delta_rejected", index=index, reason=exc.message)
                rejected.append(
                    DeltaOutcome(
                        index=index,
                        action=_action_or_none(action),
                        status=DeltaOutcomeStatus.REJECTED,
                        reason=str(raw.get("reason", "")) if isinstance(raw, Mapping) else "",
                        error=exc.message,
                    )
                )
        result = self._apply_indexed(parsed, session)
        result.outcomes = sorted(result.outcomes + rejected, key=lambda o: o.index)
        return result

    def apply(self, deltas: Sequence[Delta], session: LedgerSession) -> ReviewBatchResult:
        return self._apply_indexed(list(enumerate(deltas)), session)

    def _apply_indexed(
        self, deltas: list[tuple[int, Delta]], session: LedgerSession
    ) -> ReviewBatchResult:
        result = ReviewBatchResult(session_id=session.id)
        changes = ChangeSet()
        with LogContext(session_id=str(session.id)):
            for index, delta in deltas:
                outcome = self._apply_one(index, delta, session, changes)
                result.outcomes.append(outcome)
                if outcome.applied:
                    logger.info(
                        "delta_applied",
                        index=index,
                        action=delta.action.value,
                        rows=outcome.row_numbers,
                        reason=delta.reason,
                    )
                else:
                    logger.warning(
                        "delta_rejected",
                        index=index,
                        action=delta.action.value,
                        error=outcome.error,
                    )

            result.statistics = session.recompute_statistics()
            if self._store is not None and not changes.is_empty:
                self._store.commit(session, changes)
            logger.info(
                "delta_batch_applied",
                applied=result.applied_count,
                rejected=len(result.failures),
                transaction_count=result.statistics.transaction_count,
                covered_rows=result.statistics.covered_rows,
            )
        return result

    def _apply_one(
        self, index: int, delta: Delta, session: LedgerSession, changes: ChangeSet
    ) -> DeltaOutcome:
        outcome = DeltaOutcome(
            index=index,
            action=delta.action,
            status=DeltaOutcomeStatus.REJECTED,
            reason=delta.reason,
        )
        try:
            if isinstance(delta, CreateDelta):
                _require_known_rows(session, delta.transaction.source_rows)
                txn = self._builder.build_from_payload(delta.transaction)
                session.add_transaction(txn)
                changes.record_added(txn)
                outcome.created_transaction_id = txn.id
                outcome.row_numbers = list(txn.source_row_numbers)
            elif isinstance(delta, UpdateDelta):
                self._apply_update(delta, session, changes, outcome)
            elif isinstance(delta, DeleteDelta):
                removed = session.remove_transaction(delta.transaction_id)
                changes.record_removed(removed.id)
                outcome.removed_transaction_id = removed.id
                outcome.row_numbers = list(removed.source_row_numbers)
            elif isinstance(delta, ExcludeDelta):
                _require_known_rows(session, delta.row_numbers)
                added = session.coverage.exclude(delta.row_numbers, delta.reason)
                for row_number in added:
                    changes.excluded[row_number] = delta.reason
                outcome.row_numbers = list(delta.row_numbers)
            else:
                raise InvalidDeltaError(f"Unsupported delta {type(delta).__name__}")
        except BrokerageLedgerError as exc:
            outcome.error = exc.message
            return outcome
        outcome.status = DeltaOutcomeStatus.APPLIED
        return outcome

    def _apply_update(
        self,
        delta: UpdateDelta,
        session: LedgerSession,
        changes: ChangeSet,
        outcome: DeltaOutcome,
    ) -> None:
        original = session.get_transaction(delta.transaction_id)
        if original is None:
            raise TransactionNotFoundError(delta.transaction_id)
        _require_known_rows(session, delta.transaction.source_rows)
        # Build first so a bad payload never removes the original
        replacement = self._builder.build_from_payload(delta.transaction)
        session.remove_transaction(original.id)
        try:
            session.add_transaction(replacement)
        except BrokerageLedgerError:
            session.add_transaction(original)
            raise
        changes.record_removed(original.id)
        changes.record_added(replacement)
        outcome.removed_transaction_id = original.id
        outcome.created_transaction_id = replacement.id
        outcome.row_numbers = sorted(
            set(original.source_row_numbers) | set(replacement.source_row_numbers)
        )


def _require_known_rows(session: LedgerSession, row_numbers: Sequence[int]) -> None:
    unknown = sorted(n for n in set(row_numbers) if session.row(n) is None)
    if unknown:
        raise InvalidDeltaError(
            f"Rows {unknown} do not exist in session {session.name!r}",
            context={"row_numbers": unknown},
        )


def _action_or_none(value: Any) -> DeltaAction | None:
    if isinstance(value, str):
        try:
            return DeltaAction(value.strip().lower())
        except ValueError:
            return None
    return None
