"""Tests for windowed categorization."""

import asyncio
import json
from typing import Any

import pytest

from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession
from brokerage_ledger.domain.value_objects import SessionStatus
from brokerage_ledger.exceptions import (
    FatalServiceError,
    RateLimitedError,
    TransientServiceError,
)
from brokerage_ledger.repositories.sqlite import SQLiteLedgerStore
from brokerage_ledger.services.categorization import CategorizationRunner, WindowStatus
from brokerage_ledger.services.transaction_builder import TransactionBuilder
from factories import FakeCategorizer, create_payload, deposit_record, spy_purchase_records


def deposit_proposal() -> dict[str, Any]:
    return create_payload([1], "10000.00", description="Funding deposit")


def spy_proposal() -> dict[str, Any]:
    payload = create_payload(
        [2, 3],
        "2019.24",
        debit_account=("asset", "SPY"),
        credit_account=("cash", "Cash USD"),
        txn_date="01/02/2024",
        transactionType="buy",
        description="Bought SPY",
    )
    payload["journalEntries"][0]["quantity"] = "4"
    return payload


def response(*proposals: dict[str, Any], fenced: bool = True) -> str:
    body = json.dumps({"transactions": list(proposals)})
    return f"Here are the transactions:\n```json\n{body}\n```" if fenced else body


class RecordingWait:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.fixture
def ledger_session(session: LedgerSession) -> LedgerSession:
    session.append_rows([deposit_record(), *spy_purchase_records()])
    return session


def runner_for(
    categorizer: FakeCategorizer, builder: TransactionBuilder, **kwargs: Any
) -> CategorizationRunner:
    return CategorizationRunner(categorizer, builder, **kwargs)


class TestRun:
    def test_window_is_committed_then_run_completes(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([response(deposit_proposal(), spy_proposal())])
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session))

        assert [o.status for o in outcomes] == [WindowStatus.COMMITTED, WindowStatus.COMPLETE]
        assert categorizer.calls == [[1, 2, 3]]
        assert len(outcomes[0].committed) == 2
        assert outcomes[0].covered_rows == [1, 2, 3]
        assert ledger_session.cursor == 3
        assert ledger_session.status == SessionStatus.COMPLETE
        assert ledger_session.uncovered_rows() == []

    def test_window_size_bounds_each_request(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer(
            [response(deposit_proposal()), response(spy_proposal())]
        )
        runner = runner_for(categorizer, builder, window_size=1)

        asyncio.run(runner.run(ledger_session))

        assert categorizer.calls == [[1], [2]]
        assert ledger_session.uncovered_rows() == []

    def test_rows_skipped_in_a_window_are_sent_again(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([response(spy_proposal()), response(deposit_proposal())])
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session))

        assert [o.status for o in outcomes] == [
            WindowStatus.COMMITTED,
            WindowStatus.COMMITTED,
            WindowStatus.COMPLETE,
        ]
        assert categorizer.calls == [[1, 2, 3], [1]]
        assert ledger_session.uncovered_rows() == []
        assert ledger_session.cursor == 3
        assert ledger_session.status == SessionStatus.COMPLETE

    def test_skipped_row_without_progress_stalls_instead_of_completing(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([response(spy_proposal())])
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session))

        assert [o.status for o in outcomes] == [
            WindowStatus.COMMITTED,
            WindowStatus.WAITING,
            WindowStatus.STALLED,
        ]
        assert categorizer.calls == [[1, 2, 3], [1], [1]]
        assert ledger_session.uncovered_rows() == [1]
        assert ledger_session.status == SessionStatus.STALLED

    def test_rate_limit_waits_for_retry_after(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer(
            [
                RateLimitedError("slow down", retry_after=7.0),
                response(deposit_proposal(), spy_proposal()),
            ]
        )
        wait = RecordingWait()
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session, wait=wait))

        assert [o.status for o in outcomes] == [
            WindowStatus.WAITING,
            WindowStatus.COMMITTED,
            WindowStatus.COMPLETE,
        ]
        assert wait.waits == [7.0]
        assert categorizer.calls == [[1, 2, 3], [1, 2, 3]]

    def test_transient_error_without_hint_uses_configured_wait(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([TransientServiceError("502"), response()])
        runner = runner_for(categorizer, builder, retry_after_seconds=30.0)

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.status == WindowStatus.WAITING
        assert outcome.retry_after == 30.0

    def test_retries_exhausted_pauses_session(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer(
            [TransientServiceError("502"), TransientServiceError("503")]
        )
        wait = RecordingWait()
        runner = runner_for(categorizer, builder, max_retries=1)

        outcomes = asyncio.run(runner.run(ledger_session, wait=wait))

        assert [o.status for o in outcomes] == [WindowStatus.WAITING, WindowStatus.FAILED]
        assert ledger_session.status == SessionStatus.PAUSED
        assert "Gave up after 1 retries" in (ledger_session.error_message or "")

    def test_fatal_error_pauses_session(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([FatalServiceError("credit balance is too low")])
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session))

        assert outcomes[-1].status == WindowStatus.FAILED
        assert ledger_session.status == SessionStatus.PAUSED
        assert ledger_session.error_message == "credit balance is too low"
        assert ledger_session.transactions == {}

    def test_idle_window_is_retried_once_then_stalls(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer([response(), response()])
        wait = RecordingWait()
        runner = runner_for(categorizer, builder)

        outcomes = asyncio.run(runner.run(ledger_session, wait=wait))

        assert [o.status for o in outcomes] == [WindowStatus.WAITING, WindowStatus.STALLED]
        assert outcomes[0].retry_after == 0.0
        assert wait.waits == []
        assert ledger_session.status == SessionStatus.STALLED
        assert "No coverage progress for rows 1-3" in (ledger_session.error_message or "")

    def test_stalled_session_resumes_on_next_run(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer(
            [response(), response(), response(deposit_proposal(), spy_proposal())]
        )
        runner = runner_for(categorizer, builder)
        asyncio.run(runner.run(ledger_session))

        outcomes = asyncio.run(runner.run(ledger_session))

        assert outcomes[-1].status == WindowStatus.COMPLETE
        assert ledger_session.error_message is None

    def test_pause_request_stops_at_window_boundary(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        categorizer = FakeCategorizer()
        runner = runner_for(categorizer, builder)
        runner.request_pause(ledger_session.id)

        outcomes = asyncio.run(runner.run(ledger_session))

        assert [o.status for o in outcomes] == [WindowStatus.PAUSED]
        assert categorizer.calls == []
        assert ledger_session.status == SessionStatus.PAUSED


class TestProposalFiltering:
    def test_malformed_response_counts_as_idle(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(FakeCategorizer(["I could not categorize these rows."]), builder)

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.status == WindowStatus.WAITING
        assert outcome.rejections[0].index == -1

    def test_truncated_response_keeps_complete_proposals(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        text = response(deposit_proposal(), spy_proposal(), fenced=False)
        truncated = text[: text.index('"sourceRows": [2, 3]')]
        runner = runner_for(FakeCategorizer([truncated]), builder)

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.status == WindowStatus.COMMITTED
        assert outcome.covered_rows == [1]
        assert len(outcome.rejections) == 1
        assert ledger_session.cursor == 1

    def test_second_claim_on_a_row_is_rejected(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(
            FakeCategorizer([response(deposit_proposal(), deposit_proposal())]), builder
        )

        outcome = asyncio.run(runner.step(ledger_session))

        assert len(outcome.committed) == 1
        assert outcome.rejections[0].index == 1
        assert "already claimed" in outcome.rejections[0].reason

    def test_proposal_for_covered_rows_is_skipped(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(
            FakeCategorizer(
                [response(deposit_proposal()), response(deposit_proposal(), spy_proposal())]
            ),
            builder,
            window_size=1,
        )
        asyncio.run(runner.step(ledger_session))

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.status == WindowStatus.COMMITTED
        assert outcome.rejections[0].reason == "rows already covered"
        assert outcome.covered_rows == [2, 3]

    def test_excluded_rows_cannot_be_claimed(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        ledger_session.coverage.exclude([1], "opening line")
        runner = runner_for(
            FakeCategorizer([response(deposit_proposal(), spy_proposal())]), builder
        )

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.covered_rows == [2, 3]
        assert "excluded" in outcome.rejections[0].reason

    def test_unknown_rows_are_rejected(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(
            FakeCategorizer([response(create_payload([99], "5.00"), deposit_proposal())]),
            builder,
        )

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.covered_rows == [1]
        assert "do not exist" in outcome.rejections[0].reason

    def test_unbalanced_proposal_is_rejected(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        broken = deposit_proposal()
        broken["journalEntries"][1]["amount"] = "9000.00"
        runner = runner_for(FakeCategorizer([response(broken, spy_proposal())]), builder)

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.covered_rows == [2, 3]
        assert outcome.rejections[0].index == 0
        assert ledger_session.cursor == 3

    def test_rows_outside_window_are_accepted(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(FakeCategorizer([response(spy_proposal())]), builder, window_size=1)

        outcome = asyncio.run(runner.step(ledger_session))

        assert outcome.status == WindowStatus.COMMITTED
        assert outcome.window == [1]
        assert outcome.covered_rows == [2, 3]
        assert ledger_session.cursor == 0


class TestAccountContext:
    def test_context_describes_the_session(
        self, builder: TransactionBuilder, ledger_session: LedgerSession
    ):
        runner = runner_for(FakeCategorizer(), builder)

        context = runner.account_context(ledger_session)

        assert context.account_name == "Joint Brokerage"
        assert context.institution == "fidelity"
        assert context.column_names[0] == "Run Date"

    def test_window_size_must_be_positive(self, builder: TransactionBuilder):
        with pytest.raises(ValueError):
            runner_for(FakeCategorizer(), builder, window_size=0)


class TestPersistence:
    def test_committed_windows_and_cursor_are_stored(
        self,
        builder: TransactionBuilder,
        store: SQLiteLedgerStore,
        stored_session: LedgerSession,
    ):
        stored_session.append_rows([deposit_record(), *spy_purchase_records()])
        store.commit(stored_session, ChangeSet(rows=list(stored_session.rows)))
        categorizer = FakeCategorizer([response(deposit_proposal(), spy_proposal())])
        runner = runner_for(categorizer, builder, store=store)

        asyncio.run(runner.run(stored_session))

        reloaded = store.load_session(stored_session.id)
        assert reloaded is not None
        assert len(reloaded.transactions) == 2
        assert reloaded.cursor == 3
        assert reloaded.status == SessionStatus.COMPLETE
        assert reloaded.uncovered_rows() == []
