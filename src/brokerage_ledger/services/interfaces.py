"""Interfaces of the external collaborators the ledger core consumes."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from brokerage_ledger.domain.reconciliation import (
    ContextWindow,
    Discrepancy,
    Investigation,
)
from brokerage_ledger.domain.source_rows import SourceRow


@dataclass(frozen=True)
class AccountContext:
    """What the categorization service is told about the account."""

    account_name: str
    institution: str
    currency: str = "USD"
    column_names: tuple[str, ...] = ()


class AssetIdentity(Protocol):
    """Protocol for resolving ticker symbols to stable asset ids."""

    def resolve(self, symbol: str) -> UUID:
        """Resolve a symbol to an asset id.

        Must be idempotent within a session and insensitive to case and
        surrounding whitespace.
        """
        ...


class CategorizationService(Protocol):
    """Protocol for the service that proposes transactions for a row window."""

    async def categorize(
        self, rows: Sequence[SourceRow], context: AccountContext
    ) -> str:
        """Return the raw structured (JSON) proposal text for the window.

        Raises:
            TransientServiceError: retryable failure (RateLimitedError for 429)
            FatalServiceError: the request can never succeed
        """
        ...


class InvestigationService(Protocol):
    """Protocol for the service that analyses one discrepancy."""

    async def investigate(
        self, discrepancy: Discrepancy, context: ContextWindow
    ) -> Investigation:
        ...
