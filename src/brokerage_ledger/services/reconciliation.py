"""Iterative reconciliation of a session against its source balances.

A run is a bounded loop of Detect, Investigate and Apply:

- Detect builds a checkpoint from every row that reports a cash balance,
  validates the ledger and collects discrepancies, most severe first.
  Uncovered rows not already named by a balance discrepancy and rows
  claimed by more than one transaction become discrepancies of their own,
  so a ledger with coverage failures never reconciles.
- Investigate sends each unresolved discrepancy with a context window of
  nearby rows and transactions to the investigation service.
- Apply takes the highest-confidence fix at or above the acceptance
  threshold and applies its deltas through the DeltaReviewEngine. Fixes
  below the threshold are kept on the run for a manual decision.

The loop repeats only while fixes are being applied. It ends as
``RECONCILED`` when Detect finds nothing, ``STALLED`` when an iteration
applied no fix, and ``MAX_ITERATIONS_REACHED`` otherwise.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta

from brokerage_ledger.domain.reconciliation import (
    BalanceCheckpoint,
    ContextWindow,
    Discrepancy,
    Investigation,
    ProposedFix,
    ReconciliationRun,
)
from brokerage_ledger.domain.sessions import LedgerSession, SessionLocks
from brokerage_ledger.domain.source_rows import RowReader, SourceRow
from brokerage_ledger.domain.transactions import ZERO, Transaction
from brokerage_ledger.domain.value_objects import (
    DiscrepancyType,
    ReconciliationOutcome,
    Severity,
    Thoroughness,
    ValidationStatus,
)
from brokerage_ledger.exceptions import ExternalServiceError
from brokerage_ledger.logging_config import LogContext, get_logger
from brokerage_ledger.repositories.interfaces import LedgerStore
from brokerage_ledger.services.balances import BalanceCalculator
from brokerage_ledger.services.delta_review import DeltaReviewEngine
from brokerage_ledger.services.grouping import SettlementGrouper
from brokerage_ledger.services.interfaces import InvestigationService
from brokerage_ledger.services.validator import ValidationReport, Validator

logger = get_logger(__name__)


@dataclass
class Detection:
    checkpoints: list[BalanceCheckpoint] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    report: ValidationReport | None = None


class ReconciliationEngine:
    def __init__(
        self,
        investigator: InvestigationService,
        review: DeltaReviewEngine,
        calculator: BalanceCalculator | None = None,
        validator: Validator | None = None,
        store: LedgerStore | None = None,
        locks: SessionLocks | None = None,
        reader: RowReader | None = None,
        grouper: SettlementGrouper | None = None,
        max_iterations: int = 3,
        acceptance_threshold: float = 0.95,
        context_days: int = Thoroughness.BALANCED.context_days,
        max_context_rows: int = 20,
        max_context_transactions: int = 10,
    ) -> None:
        self._investigator = investigator
        self._review = review
        self._reader = reader or RowReader()
        self._calculator = calculator or BalanceCalculator(self._reader)
        self._validator = validator or Validator(self._reader, self._calculator.tolerance)
        self._grouper = grouper or SettlementGrouper(self._reader)
        self._store = store
        self._locks = locks or SessionLocks()
        self._max_iterations = max_iterations
        self._threshold = acceptance_threshold
        self._context_days = context_days
        self._max_rows = max_context_rows
        self._max_transactions = max_context_transactions

    @property
    def acceptance_threshold(self) -> float:
        return self._threshold

    async def reconcile(
        self, session: LedgerSession, thoroughness: Thoroughness | None = None
    ) -> ReconciliationRun:
        """Run the loop under the session lock and store the audit record."""
        context_days = thoroughness.context_days if thoroughness else self._context_days
        run = ReconciliationRun(session_id=session.id, max_iterations=self._max_iterations)
        async with self._locks.hold(session.id):
            with LogContext(session_id=str(session.id), run_id=str(run.id)):
                await self._loop(session, run, context_days)
                if self._store is not None:
                    self._store.save_run(run)
        return run

    async def _loop(
        self, session: LedgerSession, run: ReconciliationRun, context_days: int
    ) -> None:
        detection = self.detect(session)
        run.checkpoints = detection.checkpoints
        run.initial_max_discrepancy = self._calculator.max_difference(detection.checkpoints)
        logger.info(
            "reconciliation_started",
            checkpoints=len(detection.checkpoints),
            discrepancies=len(detection.discrepancies),
            max_discrepancy=str(run.initial_max_discrepancy),
        )

        outcome: ReconciliationOutcome | None = None
        while run.iterations < self._max_iterations:
            if not detection.discrepancies:
                outcome = ReconciliationOutcome.RECONCILED
                break
            run.iterations += 1
            run.discrepancies.extend(detection.discrepancies)
            applied = 0
            for discrepancy in detection.discrepancies:
                investigation = await self._investigate(session, discrepancy, context_days)
                if investigation is None:
                    continue
                run.investigations.append(investigation)
                if self._apply_best_fix(session, run, discrepancy, investigation):
                    applied += 1
            logger.info("reconciliation_iteration", iteration=run.iterations, fixes_applied=applied)
            if applied == 0:
                outcome = ReconciliationOutcome.STALLED
                break
            detection = self.detect(session)
            run.checkpoints = detection.checkpoints

        if outcome is None:
            if detection.discrepancies:
                outcome = ReconciliationOutcome.MAX_ITERATIONS_REACHED
                run.discrepancies.extend(detection.discrepancies)
            else:
                outcome = ReconciliationOutcome.RECONCILED
        run.final_max_discrepancy = self._calculator.max_difference(run.checkpoints)
        run.complete(outcome)
        logger.info(
            "reconciliation_finished",
            outcome=outcome.value,
            iterations=run.iterations,
            fixes_applied=run.fixes_applied,
            pending_fixes=len(run.pending_fixes),
            final_max_discrepancy=str(run.final_max_discrepancy),
        )

    def detect(self, session: LedgerSession) -> Detection:
        transactions = session.ordered_transactions()
        checkpoints = self._calculator.build_checkpoints(session.rows, transactions)
        discrepancies = self._calculator.find_discrepancies(checkpoints, transactions)
        report = self._validator.validate(
            transactions,
            session.rows,
            session.coverage,
            settlement_detector=self._grouper.detector_for(session.institution),
        )
        if report.status != ValidationStatus.PASS:
            logger.info(
                "validation_issues",
                status=report.status.value,
                issues=report.issue_count,
                missing_rows=report.coverage.missing_rows,
                duplicate_rows=sorted(report.coverage.duplicate_rows),
                negative_positions=[
                    str(p.transaction_id) for p in report.positions.negative
                ],
                unpaired_settlements=[
                    str(u.transaction_id) for u in report.settlement.unpaired
                ],
            )
        discrepancies.extend(self._coverage_discrepancies(session, report, discrepancies))
        discrepancies.sort(
            key=lambda d: (-d.severity.rank, d.start_date or date.min, d.affected_rows[:1])
        )
        return Detection(checkpoints=checkpoints, discrepancies=discrepancies, report=report)

    def _coverage_discrepancies(
        self,
        session: LedgerSession,
        report: ValidationReport,
        known: list[Discrepancy],
    ) -> list[Discrepancy]:
        """Uncovered runs of rows and doubly claimed rows as discrepancies.

        Uncovered rows already named by another discrepancy are left to that
        investigation.
        """
        named = {n for d in known for n in d.affected_rows}
        runs: list[list[int]] = []
        for row_number in report.coverage.missing_rows:
            if row_number in named:
                continue
            if runs and runs[-1][-1] == row_number - 1:
                runs[-1].append(row_number)
            else:
                runs.append([row_number])

        found: list[Discrepancy] = []
        for run in runs:
            rows = session.rows_for(run)
            dates = [d for row in rows if (d := self._reader.date(row))]
            total = sum(
                (abs(a) for row in rows if (a := self._reader.amount(row)) is not None),
                ZERO,
            )
            label = f"Row {run[0]}" if len(run) == 1 else f"Rows {run[0]}-{run[-1]}"
            found.append(
                Discrepancy(
                    discrepancy_type=DiscrepancyType.MISSING_TRANSACTION,
                    severity=Severity.from_difference(total),
                    description=f"{label} not covered by any transaction or exclusion",
                    affected_rows=run,
                    start_date=min(dates) if dates else None,
                    end_date=max(dates) if dates else None,
                    expected_value=total,
                    actual_value=ZERO,
                )
            )

        for row_number, owners in report.coverage.duplicate_rows.items():
            row = session.row(row_number)
            row_date = self._reader.date(row) if row is not None else None
            found.append(
                Discrepancy(
                    discrepancy_type=DiscrepancyType.DUPLICATE_COVERAGE,
                    severity=Severity.CRITICAL,
                    description=(
                        f"Row {row_number} claimed by {len(owners)} transactions: "
                        + ", ".join(str(owner) for owner in owners)
                    ),
                    affected_rows=[row_number],
                    start_date=row_date,
                    end_date=row_date,
                    transaction_ids=list(owners),
                )
            )
        return found

    async def _investigate(
        self, session: LedgerSession, discrepancy: Discrepancy, context_days: int
    ) -> Investigation | None:
        context = self.build_context(session, discrepancy, context_days)
        try:
            return await self._investigator.investigate(discrepancy, context)
        except ExternalServiceError as exc:
            logger.warning(
                "investigation_failed",
                discrepancy_id=str(discrepancy.id),
                error=exc.message,
            )
            return None

    def _apply_best_fix(
        self,
        session: LedgerSession,
        run: ReconciliationRun,
        discrepancy: Discrepancy,
        investigation: Investigation,
    ) -> bool:
        fix = self.select_fix(investigation)
        if fix is None:
            run.pending_fixes.extend(investigation.ranked_fixes)
            logger.info(
                "fix_below_threshold",
                discrepancy_id=str(discrepancy.id),
                best_confidence=max(
                    (f.confidence for f in investigation.proposed_fixes), default=None
                ),
                threshold=self._threshold,
            )
            return False

        result = self._review.apply(fix.deltas, session)
        if result.applied_count == 0:
            run.pending_fixes.append(fix)
            logger.warning(
                "fix_rejected",
                discrepancy_id=str(discrepancy.id),
                fix_id=str(fix.id),
                errors=[o.error for o in result.failures],
            )
            return False

        investigation.mark_applied(fix)
        run.fixes_applied += 1
        if result.all_applied:
            discrepancy.resolve(fix.id)
            run.discrepancies_resolved += 1
        else:
            logger.warning(
                "fix_partially_applied",
                fix_id=str(fix.id),
                applied=result.applied_count,
                rejected=len(result.failures),
            )
        logger.info(
            "fix_applied",
            discrepancy_id=str(discrepancy.id),
            fix_id=str(fix.id),
            confidence=fix.confidence,
        )
        return True

    def select_fix(self, investigation: Investigation) -> ProposedFix | None:
        return investigation.best_fix(self._threshold)

    def build_context(
        self, session: LedgerSession, discrepancy: Discrepancy, context_days: int
    ) -> ContextWindow:
        """Rows and transactions within ``context_days`` of the discrepancy.

        The affected rows are always included; the remainder is capped,
        keeping whatever lies closest to the discrepancy.
        """
        affected = session.rows_for(discrepancy.affected_rows)
        anchor_start, anchor_end = self._anchor_dates(session, discrepancy, affected)
        start = anchor_start - timedelta(days=context_days)
        end = anchor_end + timedelta(days=context_days)

        def distance(day: date) -> int:
            if day < anchor_start:
                return (anchor_start - day).days
            if day > anchor_end:
                return (day - anchor_end).days
            return 0

        affected_numbers = {row.row_number for row in affected}
        nearby: list[tuple[int, SourceRow]] = []
        for row in session.rows:
            row_date = self._reader.date(row)
            if row.row_number in affected_numbers or row_date is None:
                continue
            if start <= row_date <= end:
                nearby.append((distance(row_date), row))
        nearby.sort(key=lambda item: (item[0], item[1].row_number))
        room = max(self._max_rows - len(affected), 0)
        rows = affected + [row for _, row in nearby[:room]]
        rows.sort(key=lambda row: row.row_number)

        pinned = set(discrepancy.transaction_ids)
        candidates: list[tuple[int, Transaction]] = []
        for txn in session.ordered_transactions():
            if txn.id in pinned:
                candidates.append((-1, txn))
            elif start <= txn.transaction_date <= end:
                candidates.append((distance(txn.transaction_date), txn))
        candidates.sort(key=lambda item: (item[0], item[1].sort_key))
        transactions = sorted(
            (txn for _, txn in candidates[: self._max_transactions]),
            key=lambda txn: txn.sort_key,
        )
        return ContextWindow(start_date=start, end_date=end, rows=rows, transactions=transactions)

    def _anchor_dates(
        self,
        session: LedgerSession,
        discrepancy: Discrepancy,
        affected: list[SourceRow],
    ) -> tuple[date, date]:
        if discrepancy.start_date is not None:
            return discrepancy.start_date, discrepancy.end_date or discrepancy.start_date
        dates = [d for row in (affected or session.rows) if (d := self._reader.date(row))]
        if not dates:
            today = date.today()
            return today, today
        return min(dates), max(dates)
