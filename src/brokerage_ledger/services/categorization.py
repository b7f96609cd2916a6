"""Windowed ingestion of rows through the categorization service.

The runner walks a session's uncovered rows in bounded windows. Each step
sends one window to the collaborator, builds and filters the proposals and
commits the survivors in one persistence transaction, then advances the
session cursor. Once the cursor reaches the end, rows the collaborator skipped
behind it are sent again as gap-fill windows before the run completes.

Waiting is the caller's business: a rate-limited step returns ``WAITING``
with ``retry_after`` and ``run`` awaits the supplied ``wait`` callable
before stepping again.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from brokerage_ledger.domain.deltas import TransactionPayload
from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession, SessionLocks
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import Transaction
from brokerage_ledger.domain.value_objects import SessionStatus
from brokerage_ledger.exceptions import (
    BrokerageLedgerError,
    FatalServiceError,
    IngestionStalledError,
    MalformedResponseError,
    TransientServiceError,
)
from brokerage_ledger.logging_config import LogContext, get_logger
from brokerage_ledger.repositories.interfaces import LedgerStore
from brokerage_ledger.schemas import ProposalRejection, parse_proposals
from brokerage_ledger.services.interfaces import AccountContext, CategorizationService
from brokerage_ledger.services.json_repair import parse_response_json
from brokerage_ledger.services.transaction_builder import TransactionBuilder

logger = get_logger(__name__)

WaitCallable = Callable[[float], Awaitable[object]]


class WindowStatus(str, Enum):
    COMMITTED = "committed"
    WAITING = "waiting"
    COMPLETE = "complete"
    STALLED = "stalled"
    PAUSED = "paused"
    FAILED = "failed"


_TERMINAL = frozenset(
    {WindowStatus.COMPLETE, WindowStatus.STALLED, WindowStatus.PAUSED, WindowStatus.FAILED}
)


@dataclass
class WindowOutcome:
    status: WindowStatus
    window: list[int] = field(default_factory=list)
    committed: list[UUID] = field(default_factory=list)
    covered_rows: list[int] = field(default_factory=list)
    rejections: list[ProposalRejection] = field(default_factory=list)
    cursor: int = 0
    retry_after: float | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL


class CategorizationRunner:
    def __init__(
        self,
        categorizer: CategorizationService,
        builder: TransactionBuilder,
        store: LedgerStore | None = None,
        locks: SessionLocks | None = None,
        window_size: int = 30,
        max_retries: int = 5,
        retry_after_seconds: float = 120.0,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self._categorizer = categorizer
        self._builder = builder
        self._store = store
        self._locks = locks or SessionLocks()
        self._window_size = window_size
        self._max_retries = max_retries
        self._retry_after_seconds = retry_after_seconds
        self._retries: dict[UUID, int] = {}
        self._idle_windows: dict[UUID, int] = {}
        self._pause_requested: set[UUID] = set()

    def request_pause(self, session_id: UUID) -> None:
        """Stop the run at the next window boundary."""
        self._pause_requested.add(session_id)

    def next_window(self, session: LedgerSession) -> list[SourceRow]:
        """The next uncovered rows past the cursor, else rows skipped behind it."""
        uncovered = session.uncovered_rows()
        numbers = [n for n in uncovered if n > session.cursor]
        if not numbers and uncovered:
            numbers = uncovered
            logger.info(
                "gap_fill_window", rows=numbers[: self._window_size], cursor=session.cursor
            )
        return session.rows_for(numbers[: self._window_size])

    def account_context(self, session: LedgerSession) -> AccountContext:
        columns: tuple[str, ...] = ()
        if session.rows:
            columns = tuple(session.rows[0].fields.keys())
        return AccountContext(
            account_name=session.account_name or session.name,
            institution=session.institution,
            column_names=columns,
        )

    async def run(
        self, session: LedgerSession, wait: WaitCallable | None = None
    ) -> list[WindowOutcome]:
        """Step until a terminal outcome; resumes paused or stalled sessions."""
        sleep = wait or asyncio.sleep
        if session.status in (SessionStatus.PAUSED, SessionStatus.STALLED):
            session.status = SessionStatus.ACTIVE
            session.error_message = None
        outcomes: list[WindowOutcome] = []
        while True:
            outcome = await self.step(session)
            outcomes.append(outcome)
            if outcome.is_terminal:
                return outcomes
            if outcome.status == WindowStatus.WAITING and outcome.retry_after:
                await sleep(outcome.retry_after)

    async def step(self, session: LedgerSession) -> WindowOutcome:
        async with self._locks.hold(session.id):
            with LogContext(session_id=str(session.id)):
                return await self._step(session)

    async def _step(self, session: LedgerSession) -> WindowOutcome:
        if session.id in self._pause_requested:
            self._pause_requested.discard(session.id)
            session.pause("Paused at window boundary")
            self._persist_header(session)
            logger.info("ingestion_paused", cursor=session.cursor)
            return WindowOutcome(status=WindowStatus.PAUSED, cursor=session.cursor)

        rows = self.next_window(session)
        if not rows:
            session.status = SessionStatus.COMPLETE
            session.recompute_statistics()
            self._persist_header(session)
            logger.info(
                "ingestion_complete",
                cursor=session.cursor,
                uncovered_rows=session.statistics.uncovered_rows,
            )
            return WindowOutcome(status=WindowStatus.COMPLETE, cursor=session.cursor)

        window = [row.row_number for row in rows]
        try:
            text = await self._categorizer.categorize(rows, self.account_context(session))
        except TransientServiceError as exc:
            return self._handle_transient(session, window, exc)
        except FatalServiceError as exc:
            self._retries.pop(session.id, None)
            session.pause(exc.message)
            self._persist_header(session)
            logger.error("categorization_failed", window=window, error=exc.message)
            return WindowOutcome(
                status=WindowStatus.FAILED,
                window=window,
                cursor=session.cursor,
                error=exc.message,
            )
        self._retries.pop(session.id, None)

        rejections: list[ProposalRejection] = []
        try:
            batch = parse_proposals(parse_response_json(text))
        except MalformedResponseError as exc:
            logger.warning("categorization_response_malformed", window=window, error=exc.message)
            rejections.append(ProposalRejection(index=-1, reason=exc.message))
            accepted: list[Transaction] = []
        else:
            rejections.extend(batch.rejections)
            accepted = self._select(session, window, batch.payloads, rejections)

        if not accepted:
            return self._handle_idle(session, window, rejections)
        return self._commit_window(session, window, accepted, rejections)

    def _select(
        self,
        session: LedgerSession,
        window: list[int],
        payloads: list[tuple[int, TransactionPayload]],
        rejections: list[ProposalRejection],
    ) -> list[Transaction]:
        """Build proposals and keep those that claim only free rows."""
        in_window = set(window)
        claimed: set[int] = set()
        accepted: list[Transaction] = []
        for index, payload in payloads:
            rows = set(payload.source_rows)

            def reject(reason: str) -> None:
                logger.warning("proposal_rejected", index=index, rows=sorted(rows), reason=reason)
                rejections.append(
                    ProposalRejection(index=index, reason=reason, row_numbers=sorted(rows))
                )

            unknown = sorted(n for n in rows if session.row(n) is None)
            if unknown:
                reject(f"rows {unknown} do not exist")
                continue
            taken = {n for n in rows if session.coverage.owners_of(n)}
            if taken == rows:
                logger.info("proposal_already_covered", index=index, rows=sorted(rows))
                rejections.append(
                    ProposalRejection(
                        index=index, reason="rows already covered", row_numbers=sorted(rows)
                    )
                )
                continue
            excluded = sorted(n for n in rows if session.coverage.is_excluded(n))
            conflicts = sorted(taken | (rows & claimed))
            if conflicts:
                reject(f"rows {conflicts} are already claimed")
                continue
            if excluded:
                reject(f"rows {excluded} are excluded")
                continue
            outside = sorted(rows - in_window)
            if outside:
                logger.warning("proposal_outside_window", index=index, rows=outside)
            try:
                txn = self._builder.build_from_payload(payload)
            except BrokerageLedgerError as exc:
                reject(exc.message)
                continue
            claimed |= rows
            accepted.append(txn)
        return accepted

    def _commit_window(
        self,
        session: LedgerSession,
        window: list[int],
        accepted: list[Transaction],
        rejections: list[ProposalRejection],
    ) -> WindowOutcome:
        changes = ChangeSet()
        previous_cursor = session.cursor
        added: list[Transaction] = []
        try:
            for txn in accepted:
                session.add_transaction(txn)
                added.append(txn)
                changes.record_added(txn)
            covered = sorted({n for txn in accepted for n in txn.source_row_numbers})
            consumed = [n for n in covered if n in window]
            if consumed:
                session.cursor = max(previous_cursor, consumed[-1])
            session.recompute_statistics()
            if self._store is not None:
                self._store.commit(session, changes)
        except Exception:
            for txn in added:
                session.remove_transaction(txn.id)
            session.cursor = previous_cursor
            session.recompute_statistics()
            raise

        self._idle_windows.pop(session.id, None)
        logger.info(
            "window_committed",
            window=[window[0], window[-1]],
            transactions=len(accepted),
            rejected=len(rejections),
            cursor=session.cursor,
        )
        return WindowOutcome(
            status=WindowStatus.COMMITTED,
            window=window,
            committed=[txn.id for txn in accepted],
            covered_rows=covered,
            rejections=rejections,
            cursor=session.cursor,
        )

    def _handle_transient(
        self, session: LedgerSession, window: list[int], exc: TransientServiceError
    ) -> WindowOutcome:
        attempts = self._retries.get(session.id, 0) + 1
        if attempts > self._max_retries:
            self._retries.pop(session.id, None)
            message = f"Gave up after {self._max_retries} retries: {exc.message}"
            session.pause(message)
            self._persist_header(session)
            logger.error("categorization_retries_exhausted", window=window, error=exc.message)
            return WindowOutcome(
                status=WindowStatus.FAILED,
                window=window,
                cursor=session.cursor,
                error=message,
            )
        self._retries[session.id] = attempts
        retry_after = exc.retry_after if exc.retry_after is not None else self._retry_after_seconds
        logger.warning(
            "categorization_retry_scheduled",
            window=window,
            attempt=attempts,
            max_retries=self._max_retries,
            retry_after=retry_after,
        )
        return WindowOutcome(
            status=WindowStatus.WAITING,
            window=window,
            cursor=session.cursor,
            retry_after=retry_after,
            error=exc.message,
        )

    def _handle_idle(
        self,
        session: LedgerSession,
        window: list[int],
        rejections: list[ProposalRejection],
    ) -> WindowOutcome:
        """A window that covered nothing is retried once, then the run stalls."""
        strikes = self._idle_windows.get(session.id, 0) + 1
        if strikes == 1:
            self._idle_windows[session.id] = strikes
            logger.warning("window_made_no_progress", window=window, rejected=len(rejections))
            return WindowOutcome(
                status=WindowStatus.WAITING,
                window=window,
                rejections=rejections,
                cursor=session.cursor,
                retry_after=0.0,
            )

        self._idle_windows.pop(session.id, None)
        stall = IngestionStalledError(session.id, window)
        session.status = SessionStatus.STALLED
        session.error_message = stall.message
        session.touch()
        session.recompute_statistics()
        self._persist_header(session)
        logger.error("ingestion_stalled", **stall.to_dict())
        return WindowOutcome(
            status=WindowStatus.STALLED,
            window=window,
            rejections=rejections,
            cursor=session.cursor,
            error=stall.message,
        )

    def _persist_header(self, session: LedgerSession) -> None:
        if self._store is not None:
            self._store.commit(session, ChangeSet())
