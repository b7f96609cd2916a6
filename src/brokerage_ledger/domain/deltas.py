"""Proposed ledger mutations.

External proposals are parsed into one of these variants at the boundary
(see ``brokerage_ledger.schemas``); nothing loosely typed travels further.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from brokerage_ledger.domain.value_objects import (
    AccountClass,
    DeltaAction,
    EntrySide,
    TransactionKind,
)


@dataclass(frozen=True)
class EntryPayload:
    side: EntrySide
    account_class: AccountClass
    account_name: str
    amount: Decimal
    quantity: Decimal | None = None
    quantity_unit: str | None = None
    asset_symbol: str | None = None
    source_rows: tuple[int, ...] = ()
    source_amount: Decimal | None = None


@dataclass(frozen=True)
class TransactionPayload:
    transaction_date: date
    entries: tuple[EntryPayload, ...]
    source_rows: tuple[int, ...]
    description: str = ""
    kind: TransactionKind = TransactionKind.OTHER


@dataclass(frozen=True)
class CreateDelta:
    action: ClassVar[DeltaAction] = DeltaAction.CREATE
    transaction: TransactionPayload
    reason: str = ""


@dataclass(frozen=True)
class UpdateDelta:
    """Replace a transaction; applied as delete followed by create."""

    action: ClassVar[DeltaAction] = DeltaAction.UPDATE
    transaction_id: UUID
    transaction: TransactionPayload
    reason: str = ""


@dataclass(frozen=True)
class DeleteDelta:
    action: ClassVar[DeltaAction] = DeltaAction.DELETE
    transaction_id: UUID
    reason: str = ""


@dataclass(frozen=True)
class ExcludeDelta:
    action: ClassVar[DeltaAction] = DeltaAction.EXCLUDE
    row_numbers: tuple[int, ...] = field(default_factory=tuple)
    reason: str = ""


Delta = CreateDelta | UpdateDelta | DeleteDelta | ExcludeDelta
