"""Tests for DeltaReviewEngine."""

import asyncio
from uuid import uuid4

import pytest

from brokerage_ledger.domain.deltas import DeleteDelta, ExcludeDelta, UpdateDelta
from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession
from brokerage_ledger.domain.value_objects import DeltaAction
from brokerage_ledger.repositories.sqlite import SQLiteLedgerStore
from brokerage_ledger.schemas import parse_delta
from brokerage_ledger.services.delta_review import DeltaOutcomeStatus, DeltaReviewEngine
from brokerage_ledger.services.transaction_builder import TransactionBuilder
from factories import create_payload, deposit_record, fidelity_record


@pytest.fixture
def engine(builder: TransactionBuilder) -> DeltaReviewEngine:
    return DeltaReviewEngine(builder)


@pytest.fixture
def three_row_session(session: LedgerSession) -> LedgerSession:
    session.append_rows(
        [
            deposit_record("1000.00"),
            deposit_record("250.00", run_date="01/03/2024"),
            fidelity_record(action="Account summary"),
        ]
    )
    return session


def create(rows: list[int], amount: str = "1000.00"):
    return parse_delta({"action": "create", "transaction": create_payload(rows, amount)})


class TestApply:
    def test_create_registers_coverage(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        result = engine.apply([create([1])], three_row_session)

        assert result.all_applied
        assert result.created == 1
        outcome = result.outcomes[0]
        assert outcome.row_numbers == [1]
        assert outcome.created_transaction_id in three_row_session.transactions
        assert result.statistics.covered_rows == 1

    def test_rejection_does_not_roll_back_earlier_deltas(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        deltas = [create([1]), create([1]), create([2], "250.00")]

        result = engine.apply(deltas, three_row_session)

        statuses = [o.status for o in result.outcomes]
        assert statuses == [
            DeltaOutcomeStatus.APPLIED,
            DeltaOutcomeStatus.REJECTED,
            DeltaOutcomeStatus.APPLIED,
        ]
        assert "already covered" in (result.outcomes[1].error or "")
        assert three_row_session.uncovered_rows() == [3]

    def test_create_with_unknown_rows_is_rejected(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        result = engine.apply([create([42])], three_row_session)

        assert result.failures[0].error is not None
        assert "do not exist" in result.failures[0].error
        assert three_row_session.transactions == {}

    def test_unbalanced_create_is_rejected(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        payload = create_payload([1], "1000.00")
        payload["journalEntries"][1]["amount"] = "900.00"

        result = engine.apply(
            [parse_delta({"action": "create", "transaction": payload})], three_row_session
        )

        assert not result.outcomes[0].applied
        assert three_row_session.uncovered_rows() == [1, 2, 3]

    def test_delete_releases_rows(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        created = engine.apply([create([1])], three_row_session)
        txn_id = created.outcomes[0].created_transaction_id
        assert txn_id is not None

        result = engine.apply([DeleteDelta(transaction_id=txn_id)], three_row_session)

        assert result.deleted == 1
        assert result.outcomes[0].removed_transaction_id == txn_id
        assert 1 in three_row_session.uncovered_rows()

    def test_delete_unknown_transaction_is_rejected(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        result = engine.apply([DeleteDelta(transaction_id=uuid4())], three_row_session)

        assert result.failures[0].action == DeltaAction.DELETE
        assert "not found" in (result.failures[0].error or "")

    def test_update_replaces_transaction(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        created = engine.apply([create([1])], three_row_session)
        original_id = created.outcomes[0].created_transaction_id
        assert original_id is not None
        replacement = create([1, 2], "1250.00").transaction

        result = engine.apply(
            [UpdateDelta(transaction_id=original_id, transaction=replacement)],
            three_row_session,
        )

        assert result.updated == 1
        outcome = result.outcomes[0]
        assert outcome.removed_transaction_id == original_id
        assert outcome.row_numbers == [1, 2]
        assert original_id not in three_row_session.transactions
        assert three_row_session.uncovered_rows() == [3]

    def test_failed_update_keeps_original(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        created = engine.apply([create([1])], three_row_session)
        first_id = created.outcomes[0].created_transaction_id
        engine.apply([create([2], "250.00")], three_row_session)
        assert first_id is not None
        # Replacement would claim row 2, which another transaction owns
        clash = create([1, 2], "1250.00").transaction

        result = engine.apply(
            [UpdateDelta(transaction_id=first_id, transaction=clash)], three_row_session
        )

        assert not result.outcomes[0].applied
        assert first_id in three_row_session.transactions
        assert three_row_session.coverage.owners_of(1) == frozenset({first_id})

    def test_exclude_marks_rows(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        result = engine.apply(
            [ExcludeDelta(row_numbers=(3,), reason="summary line")], three_row_session
        )

        assert result.excluded == 1
        assert three_row_session.coverage.exclusion_reason(3) == "summary line"

    def test_exclude_unknown_row_is_rejected(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        result = engine.apply([ExcludeDelta(row_numbers=(9,))], three_row_session)

        assert not result.outcomes[0].applied


class TestApplyPayloads:
    def test_unparseable_payloads_are_rejected_in_place(
        self, engine: DeltaReviewEngine, three_row_session: LedgerSession
    ):
        payloads = [
            {"action": "create", "transaction": create_payload([1], "1000.00")},
            {"action": "delete", "reason": "missing id"},
            "not an object",
            {"action": "exclude", "excludedRows": [3], "reason": "summary"},
        ]

        result = engine.apply_payloads(payloads, three_row_session)

        assert [o.index for o in result.outcomes] == [0, 1, 2, 3]
        assert [o.applied for o in result.outcomes] == [True, False, False, True]
        assert result.outcomes[1].action == DeltaAction.DELETE
        assert result.outcomes[1].reason == "missing id"
        assert result.outcomes[2].action is None


class TestReviewPersistence:
    def test_review_commits_through_store(
        self,
        builder: TransactionBuilder,
        store: SQLiteLedgerStore,
        stored_session: LedgerSession,
    ):
        stored_session.append_rows([deposit_record("1000.00")])
        store.commit(stored_session, ChangeSet(rows=list(stored_session.rows)))
        engine = DeltaReviewEngine(builder, store)

        result = asyncio.run(engine.review([create([1])], stored_session))

        reloaded = store.load_session(stored_session.id)
        assert reloaded is not None
        assert result.all_applied
        assert list(reloaded.transactions) == [result.outcomes[0].created_transaction_id]
        assert reloaded.uncovered_rows() == []
