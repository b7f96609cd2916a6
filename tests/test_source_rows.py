"""Tests for source row cell parsing."""

from datetime import date
from decimal import Decimal

import pytest

from brokerage_ledger.domain.source_rows import RowReader, parse_date, parse_decimal
from factories import fidelity_record, make_rows


class TestParseDecimal:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("$1,234.50", Decimal("1234.50")),
            ("-12", Decimal("-12")),
            ("+3.5", Decimal("3.5")),
            ("(42.00)", Decimal("-42.00")),
        ],
    )
    def test_money_formats(self, text: str, expected: Decimal):
        assert parse_decimal(text) == expected

    @pytest.mark.parametrize(
        "text", [None, "", "--", "n/a", "NaN", "nan", "Infinity", "-Infinity", "sNaN", "(Inf)"]
    )
    def test_blank_invalid_and_non_finite_cells_are_none(self, text: str | None):
        assert parse_decimal(text) is None


class TestParseDate:
    @pytest.mark.parametrize("text", ["01/02/2024", "2024-01-02", "01/02/24"])
    def test_supported_formats(self, text: str):
        assert parse_date(text) == date(2024, 1, 2)

    def test_unparseable_is_none(self):
        assert parse_date("yesterday") is None


class TestRowReader:
    def test_non_finite_amount_reads_as_missing(self, reader: RowReader):
        row = make_rows([fidelity_record(action="DIVIDEND RECEIVED", amount="NaN")])[0]

        assert reader.amount(row) is None
