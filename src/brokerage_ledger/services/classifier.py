"""Action classifier using a rules-based engine.

Maps the free-text action of a brokerage row onto one of the fixed
ActionPattern templates based on keyword matching, quantity presence and
amount direction.
"""

from decimal import Decimal

from brokerage_ledger.domain.value_objects import ActionPattern


class ActionClassifier:
    """Classifies row actions using ordered rules.

    Rules are evaluated in priority order. The first matching rule
    determines the pattern. OTHER_TRADE / OTHER_CASH are the fallbacks.
    """

    # Keywords for each pattern (case-insensitive substring matching)
    BUY_KEYWORDS = ["BOUGHT"]
    SELL_KEYWORDS = ["SOLD"]
    TAX_KEYWORDS = ["TAX PAID", "TAX WITHHELD", "WITHHOLDING"]
    DIVIDEND_KEYWORDS = ["DIVIDEND"]
    TRANSFER_OUT_KEYWORDS = ["TRANSFERRED TO", "TRANSFER OUT", "WITHDRAWAL"]
    TRANSFER_IN_KEYWORDS = [
        "TRANSFERRED FROM",
        "TRANSFER IN",
        "DEPOSIT",
        "CONTRIBUTION",
    ]
    DIRECTIONAL_TRANSFER_KEYWORDS = ["ELECTRONIC FUNDS TRANSFER", "WIRE TRANSFER"]
    INTEREST_KEYWORDS = ["INTEREST"]
    FEE_KEYWORDS = ["FEE", "COMMISSION"]

    def classify(
        self,
        action: str,
        symbol: str = "",
        quantity: Decimal | None = None,
        amount: Decimal | None = None,
    ) -> ActionPattern:
        """Classify one row's action.

        Args:
            action: Raw action text from the row
            symbol: Asset symbol, blank for cash-only rows
            quantity: Signed quantity, None when blank
            amount: Signed cash amount, None when blank

        Returns:
            The ActionPattern whose template should build the transaction
        """
        text = action.upper()
        has_quantity = quantity is not None and quantity != 0

        if not text.strip() and not symbol and not has_quantity:
            return ActionPattern.SETTLEMENT

        # Rule 1: BUY
        if self._contains_any(text, self.BUY_KEYWORDS):
            return ActionPattern.BUY

        # Rule 2: SELL
        if self._contains_any(text, self.SELL_KEYWORDS):
            return ActionPattern.SELL

        # Rule 3: TAX (before dividend: "FOREIGN TAX WITHHELD ON DIVIDEND")
        if self._contains_any(text, self.TAX_KEYWORDS):
            return ActionPattern.TAX

        # Rule 4: DIVIDEND, reinvested when shares were received
        if self._contains_any(text, self.DIVIDEND_KEYWORDS):
            if has_quantity:
                return ActionPattern.DIVIDEND_REINVESTED
            return ActionPattern.DIVIDEND_CASH

        # Rule 5: explicit transfer direction
        if self._contains_any(text, self.TRANSFER_OUT_KEYWORDS):
            return ActionPattern.TRANSFER_OUT
        if self._contains_any(text, self.TRANSFER_IN_KEYWORDS):
            return ActionPattern.TRANSFER_IN

        # Rule 6: transfer whose direction comes from the amount sign
        if self._contains_any(text, self.DIRECTIONAL_TRANSFER_KEYWORDS):
            if amount is not None and amount < 0:
                return ActionPattern.TRANSFER_OUT
            return ActionPattern.TRANSFER_IN

        # Rule 7: INTEREST
        if self._contains_any(text, self.INTEREST_KEYWORDS):
            return ActionPattern.INTEREST

        # Rule 8: FEE
        if self._contains_any(text, self.FEE_KEYWORDS):
            return ActionPattern.FEE

        # Fallback: unknown action, shape decides the template
        if symbol and has_quantity:
            return ActionPattern.OTHER_TRADE
        return ActionPattern.OTHER_CASH

    def _contains_any(self, text: str, keywords: list[str]) -> bool:
        return any(keyword in text for keyword in keywords)
