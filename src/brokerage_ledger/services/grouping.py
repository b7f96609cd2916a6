"""Settlement grouping of source rows into transaction groups.

Some institutions (Fidelity) export a trade as two rows: the trade itself
and a cash settlement row with no action, symbol or quantity. Grouping
attaches each settlement row to the trade before it. Institutions without
that convention get one group per row.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from brokerage_ledger.domain.source_rows import RowReader, SourceRow
from brokerage_ledger.logging_config import get_logger

logger = get_logger(__name__)


class SettlementDetector(Protocol):
    """Institution-specific settlement-row predicate."""

    uses_settlement_rows: bool

    def is_settlement_row(self, row: SourceRow) -> bool:
        ...


class SettlementRowDetector:
    """A row is a settlement row when action, symbol and quantity are blank."""

    uses_settlement_rows = True

    def __init__(self, reader: RowReader) -> None:
        self._reader = reader

    def is_settlement_row(self, row: SourceRow) -> bool:
        quantity = self._reader.quantity(row)
        return (
            not self._reader.action(row)
            and not self._reader.symbol(row)
            and (quantity is None or quantity == 0)
        )


class NoSettlementDetector:
    uses_settlement_rows = False

    def __init__(self, reader: RowReader | None = None) -> None:
        self._reader = reader

    def is_settlement_row(self, row: SourceRow) -> bool:
        return False


DetectorFactory = Callable[[RowReader], SettlementDetector]

DEFAULT_DETECTORS: dict[str, DetectorFactory] = {
    "fidelity": SettlementRowDetector,
    "coinbase": NoSettlementDetector,
    "schwab": NoSettlementDetector,
}


@dataclass
class RowGroup:
    rows: list[SourceRow]
    settlement_row_numbers: frozenset[int] = field(default_factory=frozenset)
    orphaned: bool = False

    @property
    def row_numbers(self) -> list[int]:
        return [row.row_number for row in self.rows]

    @property
    def primary_row(self) -> SourceRow:
        """First non-settlement row, or the first row when all are settlements."""
        for row in self.rows:
            if row.row_number not in self.settlement_row_numbers:
                return row
        return self.rows[0]

    @property
    def has_primary(self) -> bool:
        return any(
            row.row_number not in self.settlement_row_numbers for row in self.rows
        )

    @property
    def settlement_rows(self) -> list[SourceRow]:
        return [r for r in self.rows if r.row_number in self.settlement_row_numbers]


class SettlementGrouper:
    """Partitions ordered rows into transaction groups.

    Concatenating the returned groups always reproduces the input order.
    """

    def __init__(
        self,
        reader: RowReader | None = None,
        detectors: dict[str, DetectorFactory] | None = None,
    ) -> None:
        self._reader = reader or RowReader()
        self._detectors = dict(DEFAULT_DETECTORS)
        if detectors:
            self._detectors.update(detectors)

    def register_institution(self, institution: str, factory: DetectorFactory) -> None:
        self._detectors[institution.strip().lower()] = factory

    def detector_for(self, institution: str) -> SettlementDetector:
        factory = self._detectors.get(institution.strip().lower(), NoSettlementDetector)
        return factory(self._reader)

    def group(self, rows: Sequence[SourceRow], institution: str) -> list[RowGroup]:
        detector = self.detector_for(institution)
        if not detector.uses_settlement_rows:
            return [RowGroup(rows=[row]) for row in rows]

        groups: list[RowGroup] = []
        current: list[SourceRow] = []
        settlements: set[int] = set()

        def close() -> None:
            if current:
                groups.append(
                    RowGroup(rows=list(current), settlement_row_numbers=frozenset(settlements))
                )
                current.clear()
                settlements.clear()

        for row in rows:
            if not detector.is_settlement_row(row):
                close()
                current.append(row)
                continue
            if current:
                current.append(row)
                settlements.add(row.row_number)
                continue
            logger.warning(
                "settlement_row_orphaned",
                row_number=row.row_number,
                institution=institution,
            )
            groups.append(
                RowGroup(
                    rows=[row],
                    settlement_row_numbers=frozenset({row.row_number}),
                    orphaned=True,
                )
            )
        close()

        logger.debug(
            "rows_grouped",
            institution=institution,
            row_count=len(rows),
            group_count=len(groups),
        )
        return groups
