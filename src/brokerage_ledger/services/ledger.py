"""Session-level ledger operations: import, build, validate and gap analysis."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from uuid import UUID

from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import Transaction
from brokerage_ledger.exceptions import (
    CoverageError,
    SessionError,
    SessionNotFoundError,
)
from brokerage_ledger.logging_config import LogContext, get_logger
from brokerage_ledger.repositories.interfaces import LedgerStore
from brokerage_ledger.services.grouping import SettlementGrouper
from brokerage_ledger.services.transaction_builder import BuildResult, TransactionBuilder
from brokerage_ledger.services.validator import ValidationReport, Validator

logger = get_logger(__name__)


@dataclass
class ImportResult:
    """Result summary from appending a file to a session."""

    appended: list[SourceRow] = field(default_factory=list)
    skipped: int = 0

    @property
    def first_row(self) -> int | None:
        return self.appended[0].row_number if self.appended else None

    @property
    def last_row(self) -> int | None:
        return self.appended[-1].row_number if self.appended else None


@dataclass
class BuildSummary:
    group_count: int = 0
    built: list[Transaction] = field(default_factory=list)
    rejected: list[BuildResult] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def rows_covered(self) -> int:
        return sum(len(txn.source_row_numbers) for txn in self.built)


@dataclass
class GapReport:
    session_id: UUID
    uncovered_rows: list[int] = field(default_factory=list)
    unbalanced_transactions: list[UUID] = field(default_factory=list)
    duplicate_rows: dict[int, list[UUID]] = field(default_factory=dict)

    @property
    def is_clean(self) -> bool:
        return not (self.uncovered_rows or self.unbalanced_transactions or self.duplicate_rows)


class LedgerService:
    """Builds and checks the ledger of one session at a time."""

    def __init__(
        self,
        store: LedgerStore,
        grouper: SettlementGrouper,
        builder: TransactionBuilder,
        validator: Validator,
    ) -> None:
        self._store = store
        self._grouper = grouper
        self._builder = builder
        self._validator = validator

    def create_session(
        self, name: str, institution: str, account_name: str = ""
    ) -> LedgerSession:
        if self._store.find_session(name) is not None:
            raise SessionError(f"Session {name!r} already exists", context={"name": name})
        session = LedgerSession(
            name=name,
            institution=institution.strip().lower(),
            account_name=account_name,
        )
        self._store.create_session(session)
        logger.info("session_created", session_id=str(session.id), name=name)
        return session

    def get_session(self, ref: str | UUID) -> LedgerSession:
        """Load a session by id or by name.

        Raises:
            SessionNotFoundError: no session matches.
        """
        session = None
        if isinstance(ref, UUID):
            session = self._store.load_session(ref)
        else:
            try:
                session = self._store.load_session(UUID(ref))
            except ValueError:
                session = None
            if session is None:
                session = self._store.find_session(ref)
        if session is None:
            raise SessionNotFoundError(ref)
        return session

    def import_rows(
        self,
        session: LedgerSession,
        records: Iterable[Mapping[str, str]],
        source_file: str = "",
    ) -> ImportResult:
        records = list(records)
        appended = session.append_rows(records, source_file=source_file)
        changes = ChangeSet(rows=list(appended))
        session.recompute_statistics()
        self._store.commit(session, changes)
        result = ImportResult(appended=appended, skipped=len(records) - len(appended))
        logger.info(
            "rows_imported",
            session_id=str(session.id),
            source_file=source_file,
            appended=len(appended),
            skipped=result.skipped,
        )
        return result

    def build(self, session: LedgerSession) -> BuildSummary:
        """Group the uncovered rows, build transactions and register them.

        Rejected groups leave their rows uncovered; all built transactions
        are persisted together.
        """
        summary = BuildSummary()
        changes = ChangeSet()
        with LogContext(session_id=str(session.id)):
            rows = session.rows_for(session.uncovered_rows())
            groups = self._grouper.group(rows, session.institution)
            summary.group_count = len(groups)
            for result in self._builder.build_all(groups):
                if result.transaction is None:
                    summary.rejected.append(result)
                    continue
                try:
                    session.add_transaction(result.transaction)
                except CoverageError as exc:
                    summary.conflicts.append(exc.message)
                    logger.warning("coverage_conflict", error=exc.message)
                    continue
                changes.record_added(result.transaction)
                summary.built.append(result.transaction)
            session.recompute_statistics()
            try:
                self._store.commit(session, changes)
            except Exception:
                for txn in summary.built:
                    session.remove_transaction(txn.id)
                session.recompute_statistics()
                raise
            logger.info(
                "ledger_built",
                groups=summary.group_count,
                built=len(summary.built),
                rejected=len(summary.rejected),
                uncovered_rows=session.statistics.uncovered_rows,
            )
        return summary

    def validate(self, session: LedgerSession) -> ValidationReport:
        report = self._validator.validate(
            session.ordered_transactions(),
            session.rows,
            session.coverage,
            settlement_detector=self._grouper.detector_for(session.institution),
        )
        logger.info(
            "ledger_validated",
            session_id=str(session.id),
            status=report.status.value,
            issues=report.issue_count,
        )
        return report

    def gap_analysis(self, session: LedgerSession) -> GapReport:
        tolerance = self._validator.tolerance
        return GapReport(
            session_id=session.id,
            uncovered_rows=session.uncovered_rows(),
            unbalanced_transactions=[
                txn.id
                for txn in session.ordered_transactions()
                if abs(txn.imbalance) > tolerance
            ],
            duplicate_rows=session.coverage.duplicate_rows(),
        )
