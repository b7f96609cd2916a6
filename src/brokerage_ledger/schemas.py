"""Pydantic v2 schemas for collaborator payloads.

External proposals arrive as loosely-typed JSON (camelCase or snake_case).
They are validated here and converted into domain types immediately; any
payload that does not map cleanly is rejected with a readable reason.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

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
    ImpactAnalysis,
    Investigation,
    ProposedFix,
)
from brokerage_ledger.domain.source_rows import parse_date
from brokerage_ledger.domain.value_objects import (
    AccountClass,
    DeltaAction,
    EntrySide,
    TransactionKind,
)
from brokerage_ledger.exceptions import (
    InvalidDeltaError,
    InvalidPayloadError,
    MalformedResponseError,
)
from brokerage_ledger.logging_config import get_logger

logger = get_logger(__name__)


def format_validation_error(exc: ValidationError) -> str:
    """Flatten a ValidationError into one line: 'loc: message; loc: message'."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "payload"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


class _Payload(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# Transaction proposals
class EntryModel(_Payload):
    """One journal leg as proposed by a collaborator."""

    type: EntrySide
    account_type: AccountClass
    account_name: str = Field(..., min_length=1)
    amount: Decimal
    quantity: Decimal | None = None
    quantity_unit: str | None = None
    asset_symbol: str | None = None
    source_rows: list[int] = Field(default_factory=list)
    source_amount: Decimal | None = Field(
        default=None,
        validation_alias=AliasChoices("csvAmount", "sourceAmount", "source_amount"),
    )

    @field_validator("type", "account_type", mode="before")
    @classmethod
    def lower_enum_text(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("amount")
    @classmethod
    def amount_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("amount must not be negative; use the entry type for direction")
        return v

    @field_validator("asset_symbol", "quantity_unit")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        return v or None

    def to_payload(self) -> EntryPayload:
        return EntryPayload(
            side=self.type,
            account_class=self.account_type,
            account_name=self.account_name,
            amount=self.amount,
            quantity=self.quantity,
            quantity_unit=self.quantity_unit,
            asset_symbol=self.asset_symbol,
            source_rows=tuple(sorted(set(self.source_rows))),
            source_amount=self.source_amount,
        )


class TransactionModel(_Payload):
    """A proposed transaction with its journal entries."""

    source_rows: list[int] = Field(..., min_length=1)
    transaction_date: date = Field(
        ..., validation_alias=AliasChoices("date", "transactionDate", "transaction_date")
    )
    description: str = ""
    transaction_type: TransactionKind = TransactionKind.OTHER
    journal_entries: list[EntryModel] = Field(..., min_length=2)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def parse_date_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = parse_date(v)
            if parsed is None:
                raise ValueError(f"unrecognised date {v!r}")
            return parsed
        return v

    @field_validator("transaction_type", mode="before")
    @classmethod
    def map_type_label(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return TransactionKind.from_label(v)
        return v

    @field_validator("source_rows")
    @classmethod
    def rows_positive(cls, v: list[int]) -> list[int]:
        if any(row < 1 for row in v):
            raise ValueError("row numbers start at 1")
        return v

    def to_payload(self) -> TransactionPayload:
        rows = set(self.source_rows)
        for entry in self.journal_entries:
            rows.update(entry.source_rows)
        return TransactionPayload(
            transaction_date=self.transaction_date,
            entries=tuple(entry.to_payload() for entry in self.journal_entries),
            source_rows=tuple(sorted(rows)),
            description=self.description,
            kind=self.transaction_type,
        )


# Deltas
class DeltaModel(_Payload):
    """A proposed create / update / delete / exclude mutation."""

    action: DeltaAction
    reason: str = ""
    original_transaction_id: UUID | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "originalTransactionId",
            "original_transaction_id",
            "transactionId",
            "transaction_id",
        ),
    )
    transaction: TransactionModel | None = None
    excluded_rows: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("excludedRows", "excluded_rows", "rows"),
    )

    @field_validator("action", mode="before")
    @classmethod
    def lower_action(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_required_fields(self) -> "DeltaModel":
        needs_transaction = self.action in (DeltaAction.CREATE, DeltaAction.UPDATE)
        needs_id = self.action in (DeltaAction.UPDATE, DeltaAction.DELETE)
        if needs_transaction and self.transaction is None:
            raise ValueError(f"{self.action.value} requires a transaction")
        if needs_id and self.original_transaction_id is None:
            raise ValueError(f"{self.action.value} requires originalTransactionId")
        if self.action == DeltaAction.EXCLUDE and not self.excluded_rows:
            raise ValueError("exclude requires excludedRows")
        return self

    def to_delta(self) -> Delta:
        if self.action == DeltaAction.CREATE:
            assert self.transaction is not None
            return CreateDelta(transaction=self.transaction.to_payload(), reason=self.reason)
        if self.action == DeltaAction.UPDATE:
            assert self.transaction is not None and self.original_transaction_id
            return UpdateDelta(
                transaction_id=self.original_transaction_id,
                transaction=self.transaction.to_payload(),
                reason=self.reason,
            )
        if self.action == DeltaAction.DELETE:
            assert self.original_transaction_id is not None
            return DeleteDelta(transaction_id=self.original_transaction_id, reason=self.reason)
        return ExcludeDelta(
            row_numbers=tuple(sorted(set(self.excluded_rows))), reason=self.reason
        )


def parse_delta(raw: Any) -> Delta:
    """Parse one raw delta.

    Raises:
        InvalidDeltaError: the payload is missing fields or inconsistent.
    """
    if not isinstance(raw, Mapping):
        raise InvalidDeltaError(f"delta must be an object, got {type(raw).__name__}")
    try:
        return DeltaModel.model_validate(raw).to_delta()
    except ValidationError as exc:
        raise InvalidDeltaError(
            format_validation_error(exc), context={"action": raw.get("action")}
        ) from exc


def parse_transaction_payload(raw: Any) -> TransactionPayload:
    """Parse one proposed transaction.

    Raises:
        InvalidPayloadError: the payload does not describe a usable transaction.
    """
    if not isinstance(raw, Mapping):
        raise InvalidPayloadError(
            f"transaction must be an object, got {type(raw).__name__}"
        )
    try:
        return TransactionModel.model_validate(raw).to_payload()
    except ValidationError as exc:
        raise InvalidPayloadError(format_validation_error(exc)) from exc


def _rows_hint(raw: Any) -> list[int]:
    if isinstance(raw, Mapping):
        rows = raw.get("sourceRows", raw.get("source_rows"))
        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, int)]
    return []


# Categorization responses
@dataclass
class ProposalRejection:
    index: int
    reason: str
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ProposalBatch:
    payloads: list[tuple[int, TransactionPayload]] = field(default_factory=list)
    rejections: list[ProposalRejection] = field(default_factory=list)


def parse_proposals(document: Any) -> ProposalBatch:
    """Split a categorization document into valid payloads and rejections.

    Each proposal is parsed on its own so one bad entry does not discard
    the rest of the window.

    Raises:
        MalformedResponseError: the document has no transactions list.
    """
    if isinstance(document, list):
        items = document
    elif isinstance(document, Mapping) and isinstance(document.get("transactions"), list):
        items = document["transactions"]
    else:
        raise MalformedResponseError(
            "Categorization response has no 'transactions' array",
            context={"type": type(document).__name__},
        )

    batch = ProposalBatch()
    for index, raw in enumerate(items):
        try:
            batch.payloads.append((index, parse_transaction_payload(raw)))
        except InvalidPayloadError as exc:
            batch.rejections.append(
                ProposalRejection(index=index, reason=exc.message, row_numbers=_rows_hint(raw))
            )
    return batch


# Investigations
class ImpactModel(_Payload):
    balance_change: Decimal = Decimal("0")
    transactions_created: int = 0
    transactions_modified: int = 0
    transactions_deleted: int = 0
    checkpoints_resolved: list[int] = Field(default_factory=list)
    new_discrepancies_risk: str = "low"


class ProposedFixModel(_Payload):
    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    deltas: list[Any] = Field(default_factory=list)
    impact: ImpactModel = Field(default_factory=ImpactModel)
    supporting_evidence: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)


class InvestigationModel(_Payload):
    hypothesis: str
    evidence_analysis: str = ""
    uncertainties: list[str] = Field(default_factory=list)
    needs_more_data: bool = False
    proposed_fixes: list[Any] = Field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0


def parse_fix(raw: Any) -> ProposedFix:
    """Parse one proposed fix; every delta in it must parse.

    Raises:
        InvalidPayloadError: the fix or any of its deltas is malformed.
    """
    try:
        model = ProposedFixModel.model_validate(raw)
    except ValidationError as exc:
        raise InvalidPayloadError(format_validation_error(exc)) from exc
    deltas = [parse_delta(item) for item in model.deltas]
    impact = model.impact
    return ProposedFix(
        description=model.description,
        confidence=model.confidence,
        deltas=deltas,
        reasoning=model.reasoning,
        impact=ImpactAnalysis(
            balance_change=impact.balance_change,
            transactions_created=impact.transactions_created,
            transactions_modified=impact.transactions_modified,
            transactions_deleted=impact.transactions_deleted,
            checkpoints_resolved=list(impact.checkpoints_resolved),
            new_discrepancies_risk=impact.new_discrepancies_risk,
        ),
        supporting_evidence=list(model.supporting_evidence),
        assumptions=list(model.assumptions),
    )


def parse_investigation(document: Any, discrepancy_id: UUID) -> Investigation:
    """Parse an investigation document.

    Fixes that fail to parse are dropped and logged; the investigation
    itself must at least carry a hypothesis.

    Raises:
        MalformedResponseError: the document is not an investigation.
    """
    try:
        model = InvestigationModel.model_validate(document)
    except ValidationError as exc:
        raise MalformedResponseError(format_validation_error(exc)) from exc

    fixes: list[ProposedFix] = []
    for index, raw in enumerate(model.proposed_fixes):
        try:
            fixes.append(parse_fix(raw))
        except InvalidPayloadError as exc:
            logger.warning(
                "proposed_fix_rejected",
                discrepancy_id=str(discrepancy_id),
                index=index,
                reason=exc.message,
            )
    return Investigation(
        discrepancy_id=discrepancy_id,
        hypothesis=model.hypothesis,
        proposed_fixes=fixes,
        evidence_analysis=model.evidence_analysis,
        uncertainties=list(model.uncertainties),
        needs_more_data=model.needs_more_data,
        model=model.model,
        input_tokens=model.input_tokens,
        output_tokens=model.output_tokens,
        duration_ms=model.duration_ms,
    )


# Serialization back to the wire shape
def payload_to_dict(payload: TransactionPayload) -> dict[str, Any]:
    return {
        "sourceRows": list(payload.source_rows),
        "date": payload.transaction_date.isoformat(),
        "description": payload.description,
        "transactionType": payload.kind.value,
        "journalEntries": [
            {
                "type": entry.side.value,
                "accountType": entry.account_class.value,
                "accountName": entry.account_name,
                "amount": str(entry.amount),
                "quantity": str(entry.quantity) if entry.quantity is not None else None,
                "quantityUnit": entry.quantity_unit,
                "assetSymbol": entry.asset_symbol,
                "sourceRows": list(entry.source_rows),
                "csvAmount": (
                    str(entry.source_amount) if entry.source_amount is not None else None
                ),
            }
            for entry in payload.entries
        ],
    }


def delta_to_dict(delta: Delta) -> dict[str, Any]:
    data: dict[str, Any] = {"action": delta.action.value, "reason": delta.reason}
    if isinstance(delta, (CreateDelta, UpdateDelta)):
        data["transaction"] = payload_to_dict(delta.transaction)
    if isinstance(delta, (UpdateDelta, DeleteDelta)):
        data["originalTransactionId"] = str(delta.transaction_id)
    if isinstance(delta, ExcludeDelta):
        data["excludedRows"] = list(delta.row_numbers)
    return data


def fix_to_dict(fix: ProposedFix) -> dict[str, Any]:
    return {
        "id": str(fix.id),
        "description": fix.description,
        "confidence": fix.confidence,
        "reasoning": fix.reasoning,
        "deltas": [delta_to_dict(delta) for delta in fix.deltas],
        "impact": {
            "balanceChange": str(fix.impact.balance_change),
            "transactionsCreated": fix.impact.transactions_created,
            "transactionsModified": fix.impact.transactions_modified,
            "transactionsDeleted": fix.impact.transactions_deleted,
            "checkpointsResolved": list(fix.impact.checkpoints_resolved),
            "newDiscrepanciesRisk": fix.impact.new_discrepancies_risk,
        },
        "supportingEvidence": list(fix.supporting_evidence),
        "assumptions": list(fix.assumptions),
        "isApplied": fix.is_applied,
    }
