"""Tests for parsing collaborator payloads into domain types."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from brokerage_ledger.domain.deltas import CreateDelta, DeleteDelta, ExcludeDelta, UpdateDelta
from brokerage_ledger.domain.reconciliation import ProposedFix
from brokerage_ledger.domain.value_objects import AccountClass, EntrySide, TransactionKind
from brokerage_ledger.exceptions import (
    InvalidDeltaError,
    InvalidPayloadError,
    MalformedResponseError,
)
from brokerage_ledger.schemas import (
    fix_to_dict,
    parse_delta,
    parse_fix,
    parse_investigation,
    parse_proposals,
    parse_transaction_payload,
)
from factories import create_payload


class TestParseTransactionPayload:
    def test_camel_case_payload(self):
        payload = parse_transaction_payload(
            create_payload([2, 3], "2019.24", txn_date="01/02/2024", transactionType="Purchase")
        )

        assert payload.transaction_date == date(2024, 1, 2)
        assert payload.source_rows == (2, 3)
        assert payload.kind == TransactionKind.BUY
        debit = payload.entries[0]
        assert debit.side == EntrySide.DEBIT
        assert debit.account_class == AccountClass.CASH
        assert debit.amount == Decimal("2019.24")

    def test_entry_rows_are_merged_into_transaction_rows(self):
        raw = create_payload([1], "10.00")
        raw["journalEntries"][0]["sourceRows"] = [4]

        payload = parse_transaction_payload(raw)

        assert payload.source_rows == (1, 4)

    def test_enum_text_is_case_insensitive(self):
        raw = create_payload([1], "10.00")
        raw["journalEntries"][0]["type"] = " Debit "
        raw["journalEntries"][0]["accountType"] = "CASH"

        payload = parse_transaction_payload(raw)

        assert payload.entries[0].side == EntrySide.DEBIT

    def test_unknown_type_label_becomes_other(self):
        payload = parse_transaction_payload(
            create_payload([1], "10.00", transactionType="journal")
        )

        assert payload.kind == TransactionKind.OTHER

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda raw: raw.update(sourceRows=[]),
            lambda raw: raw.update(sourceRows=[0]),
            lambda raw: raw.update(date="someday"),
            lambda raw: raw["journalEntries"].pop(),
            lambda raw: raw["journalEntries"][0].update(amount="-5"),
            lambda raw: raw["journalEntries"][0].update(accountType="pension"),
        ],
    )
    def test_invalid_payloads_are_rejected(self, mutate):
        raw = create_payload([1], "10.00")
        mutate(raw)

        with pytest.raises(InvalidPayloadError):
            parse_transaction_payload(raw)

    def test_non_object_is_rejected(self):
        with pytest.raises(InvalidPayloadError, match="must be an object"):
            parse_transaction_payload(["not", "a", "dict"])


class TestParseDelta:
    def test_create(self):
        delta = parse_delta({"action": "CREATE", "transaction": create_payload([1], "5.00")})

        assert isinstance(delta, CreateDelta)
        assert delta.transaction.source_rows == (1,)

    def test_update_accepts_transaction_id_alias(self):
        txn_id = uuid4()

        delta = parse_delta(
            {
                "action": "update",
                "transactionId": str(txn_id),
                "transaction": create_payload([1], "5.00"),
            }
        )

        assert isinstance(delta, UpdateDelta)
        assert delta.transaction_id == txn_id

    def test_delete(self):
        txn_id = uuid4()

        delta = parse_delta(
            {"action": "delete", "originalTransactionId": str(txn_id), "reason": "dupe"}
        )

        assert delta == DeleteDelta(transaction_id=txn_id, reason="dupe")

    def test_exclude_sorts_and_dedupes_rows(self):
        delta = parse_delta({"action": "exclude", "excludedRows": [7, 3, 7]})

        assert isinstance(delta, ExcludeDelta)
        assert delta.row_numbers == (3, 7)

    @pytest.mark.parametrize(
        "raw, message",
        [
            ({"action": "create"}, "requires a transaction"),
            ({"action": "delete"}, "requires originalTransactionId"),
            ({"action": "exclude"}, "requires excludedRows"),
            ({"action": "rename"}, "action"),
        ],
    )
    def test_incomplete_deltas_are_rejected(self, raw, message: str):
        with pytest.raises(InvalidDeltaError, match=message):
            parse_delta(raw)


class TestParseProposals:
    def test_bad_entries_are_rejected_individually(self):
        broken = create_payload([2], "5.00")
        broken["journalEntries"] = broken["journalEntries"][:1]

        batch = parse_proposals(
            {"transactions": [create_payload([1], "5.00"), broken, "junk"]}
        )

        assert [index for index, _ in batch.payloads] == [0]
        assert [r.index for r in batch.rejections] == [1, 2]
        assert batch.rejections[0].row_numbers == [2]
        assert batch.rejections[1].row_numbers == []

    def test_bare_list_is_accepted(self):
        batch = parse_proposals([create_payload([1], "5.00")])

        assert len(batch.payloads) == 1

    def test_document_without_transactions_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            parse_proposals({"result": "done"})


def fix_document(**overrides) -> dict:
    document = {
        "description": "Book the opening deposit",
        "confidence": 0.97,
        "reasoning": "Row 1 has no transaction",
        "deltas": [{"action": "create", "transaction": create_payload([1], "10000.00")}],
        "impact": {"balanceChange": "10000.00", "transactionsCreated": 1},
        "supportingEvidence": ["Cash balance jumps by 10000.00 on row 1"],
    }
    document.update(overrides)
    return document


class TestParseFix:
    def test_fix_with_impact(self):
        fix = parse_fix(fix_document())

        assert fix.confidence == 0.97
        assert isinstance(fix.deltas[0], CreateDelta)
        assert fix.impact.balance_change == Decimal("10000.00")
        assert fix.impact.transactions_created == 1
        assert fix.impact.new_discrepancies_risk == "low"

    def test_confidence_out_of_range_is_rejected(self):
        with pytest.raises(InvalidPayloadError):
            parse_fix(fix_document(confidence=1.5))

    def test_any_malformed_delta_rejects_the_fix(self):
        deltas = fix_document()["deltas"] + [{"action": "delete"}]

        with pytest.raises(InvalidPayloadError):
            parse_fix(fix_document(deltas=deltas))

    def test_serialized_fix_parses_back(self):
        original = parse_fix(fix_document())

        restored = parse_fix(fix_to_dict(original))

        assert restored.deltas == original.deltas
        assert restored.impact == original.impact
        assert restored.supporting_evidence == original.supporting_evidence


class TestParseInvestigation:
    def test_malformed_fixes_are_dropped(self):
        discrepancy_id = uuid4()
        document = {
            "hypothesis": "Opening deposit was never booked",
            "proposedFixes": [fix_document(), fix_document(deltas=[{"action": "delete"}])],
            "needsMoreData": False,
            "inputTokens": 1200,
        }

        investigation = parse_investigation(document, discrepancy_id)

        assert investigation.discrepancy_id == discrepancy_id
        assert len(investigation.proposed_fixes) == 1
        assert isinstance(investigation.proposed_fixes[0], ProposedFix)
        assert investigation.input_tokens == 1200

    def test_missing_hypothesis_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            parse_investigation({"proposedFixes": []}, uuid4())
