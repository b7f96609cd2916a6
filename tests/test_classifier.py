"""Tests for ActionClassifier."""

from decimal import Decimal

import pytest

from brokerage_ledger.domain.value_objects import ActionPattern
from brokerage_ledger.services.classifier import ActionClassifier


@pytest.fixture
def classifier() -> ActionClassifier:
    return ActionClassifier()


class TestActionClassifier:
    def test_blank_row_is_settlement(self, classifier: ActionClassifier):
        assert classifier.classify("", "", None, Decimal("-10")) == ActionPattern.SETTLEMENT

    def test_bought_is_buy(self, classifier: ActionClassifier):
        result = classifier.classify(
            "YOU BOUGHT SPDR S&P 500 ETF (SPY) (Cash)", "SPY", Decimal("4"), Decimal("-2019.24")
        )
        assert result == ActionPattern.BUY

    def test_sold_is_sell(self, classifier: ActionClassifier):
        result = classifier.classify("YOU SOLD", "AAPL", Decimal("-2"), Decimal("380.00"))
        assert result == ActionPattern.SELL

    def test_matching_is_case_insensitive(self, classifier: ActionClassifier):
        assert classifier.classify("you bought", "SPY", Decimal("1")) == ActionPattern.BUY

    def test_tax_on_dividend_is_tax(self, classifier: ActionClassifier):
        result = classifier.classify(
            "FOREIGN TAX WITHHELD ON DIVIDEND", "VXUS", None, Decimal("-1.20")
        )
        assert result == ActionPattern.TAX

    def test_cash_dividend(self, classifier: ActionClassifier):
        result = classifier.classify("DIVIDEND RECEIVED", "SPY", None, Decimal("12.50"))
        assert result == ActionPattern.DIVIDEND_CASH

    def test_dividend_with_shares_is_reinvested(self, classifier: ActionClassifier):
        result = classifier.classify(
            "REINVESTMENT DIVIDEND", "SPY", Decimal("0.025"), Decimal("-12.50")
        )
        assert result == ActionPattern.DIVIDEND_REINVESTED

    @pytest.mark.parametrize(
        "action",
        ["TRANSFERRED TO BROKERAGE X", "TRANSFER OUT", "CASH WITHDRAWAL"],
    )
    def test_transfer_out_keywords(self, classifier: ActionClassifier, action: str):
        assert classifier.classify(action, "", None, Decimal("-50")) == ActionPattern.TRANSFER_OUT

    @pytest.mark.parametrize(
        "action",
        ["TRANSFERRED FROM CHECKING", "TRANSFER IN", "CHECK DEPOSIT", "ROTH CONTRIBUTION"],
    )
    def test_transfer_in_keywords(self, classifier: ActionClassifier, action: str):
        assert classifier.classify(action, "", None, Decimal("50")) == ActionPattern.TRANSFER_IN

    def test_electronic_funds_transfer_direction_follows_amount(
        self, classifier: ActionClassifier
    ):
        action = "ELECTRONIC FUNDS TRANSFER PAID"
        assert classifier.classify(action, "", None, Decimal("-500")) == ActionPattern.TRANSFER_OUT
        assert classifier.classify(action, "", None, Decimal("500")) == ActionPattern.TRANSFER_IN

    def test_interest(self, classifier: ActionClassifier):
        result = classifier.classify("INTEREST EARNED", "", None, Decimal("0.42"))
        assert result == ActionPattern.INTEREST

    def test_fee(self, classifier: ActionClassifier):
        result = classifier.classify("ADR FEE", "TSM", None, Decimal("-0.30"))
        assert result == ActionPattern.FEE

    def test_unknown_action_with_shares_is_other_trade(self, classifier: ActionClassifier):
        result = classifier.classify("JOURNALED SPP", "SPY", Decimal("3"), Decimal("-1500"))
        assert result == ActionPattern.OTHER_TRADE

    def test_unknown_cash_action_is_other_cash(self, classifier: ActionClassifier):
        result = classifier.classify("MISC ADJUSTMENT", "", None, Decimal("3.10"))
        assert result == ActionPattern.OTHER_CASH
