"""Exception hierarchy for Brokerage Ledger.

All domain-specific exceptions inherit from BrokerageLedgerError.
This allows catching all application errors with a single base class
while preserving specificity for individual error types.
"""

from collections.abc import Iterable
from enum import Enum
from typing import Any
from uuid import UUID


class BrokerageLedgerError(Exception):
    """Base exception for all Brokerage Ledger errors.

    Includes an error_code for reports and extra context describing the
    rows or transactions involved.
    """

    error_code: str = "LEDGER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for reports and audit rows."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Transaction Errors
# =============================================================================


class TransactionError(BrokerageLedgerError):
    """Base exception for transaction-related errors."""

    error_code = "TRANSACTION_ERROR"


class UnbalancedTransactionError(TransactionError):
    """Raised when debits and credits differ by more than the tolerance."""

    error_code = "UNBALANCED_TRANSACTION"

    def __init__(
        self, transaction_id: UUID | str, debits: str, credits: str
    ) -> None:
        super().__init__(
            f"Transaction {transaction_id} is unbalanced: "
            f"debits={debits}, credits={credits}",
            context={
                "transaction_id": str(transaction_id),
                "debits": debits,
                "credits": credits,
            },
        )


class InsufficientEntriesError(TransactionError):
    """Raised when a transaction has fewer than two journal entries."""

    error_code = "INSUFFICIENT_ENTRIES"

    def __init__(self, transaction_id: UUID | str, entry_count: int) -> None:
        super().__init__(
            f"Transaction {transaction_id} has {entry_count} journal "
            "entries; at least 2 are required",
            context={"transaction_id": str(transaction_id), "entry_count": entry_count},
        )


class InvalidEntryError(TransactionError):
    """Raised when a journal entry does not carry exactly one side."""

    error_code = "INVALID_ENTRY"


class TransactionNotFoundError(TransactionError):
    """Raised when a referenced transaction does not exist in the session."""

    error_code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: UUID | str) -> None:
        super().__init__(
            f"Transaction not found: {transaction_id}",
            context={"transaction_id": str(transaction_id)},
        )


# =============================================================================
# Build Errors
# =============================================================================


class BuildRejection(str, Enum):
    """Reasons a row-group cannot become a transaction."""

    MISSING_DATE = "missing_date"
    MISSING_AMOUNT = "missing_amount"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_QUANTITY = "invalid_quantity"
    MISSING_SYMBOL = "missing_symbol"
    INSUFFICIENT_ENTRIES = "insufficient_entries"
    UNBALANCED = "unbalanced"


class BuildError(BrokerageLedgerError):
    """Raised when a row-group or payload cannot be built into a transaction."""

    error_code = "BUILD_ERROR"

    def __init__(
        self,
        rejection: BuildRejection,
        message: str,
        row_numbers: Iterable[int] = (),
    ) -> None:
        rows = sorted(row_numbers)
        super().__init__(
            message,
            context={"rejection": rejection.value, "row_numbers": rows},
        )
        self.rejection = rejection
        self.row_numbers = rows


# =============================================================================
# Coverage Errors
# =============================================================================


class CoverageError(BrokerageLedgerError):
    """Base exception for row-coverage errors."""

    error_code = "COVERAGE_ERROR"


class DuplicateCoverageError(CoverageError):
    """Raised when a transaction claims rows owned by another transaction."""

    error_code = "DUPLICATE_COVERAGE"

    def __init__(
        self, transaction_id: UUID | str, conflicts: dict[int, list[str]]
    ) -> None:
        rows = sorted(conflicts)
        super().__init__(
            f"Transaction {transaction_id} claims rows already covered: {rows}",
            context={
                "transaction_id": str(transaction_id),
                "conflicts": {str(row): owners for row, owners in conflicts.items()},
            },
        )
        self.row_numbers = rows


class ExcludedRowCoverageError(CoverageError):
    """Raised when a transaction claims rows that are explicitly excluded."""

    error_code = "EXCLUDED_ROW_COVERAGE"

    def __init__(self, transaction_id: UUID | str, rows: Iterable[int]) -> None:
        row_list = sorted(rows)
        super().__init__(
            f"Transaction {transaction_id} claims excluded rows: {row_list}",
            context={"transaction_id": str(transaction_id), "row_numbers": row_list},
        )
        self.row_numbers = row_list


# =============================================================================
# Delta / Payload Errors
# =============================================================================


class InvalidPayloadError(BrokerageLedgerError):
    """Raised when an external payload does not map onto a domain type."""

    error_code = "INVALID_PAYLOAD"


class InvalidDeltaError(InvalidPayloadError):
    """Raised when a proposed delta is missing fields or is inconsistent."""

    error_code = "INVALID_DELTA"


# =============================================================================
# External Service Errors
# =============================================================================


class ExternalServiceError(BrokerageLedgerError):
    """Base exception for categorization and investigation collaborator errors."""

    error_code = "EXTERNAL_SERVICE_ERROR"


class TransientServiceError(ExternalServiceError):
    """A retryable failure such as a network error or a 5xx response."""

    error_code = "TRANSIENT_SERVICE_ERROR"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, context={"retry_after": retry_after})
        self.retry_after = retry_after


class RateLimitedError(TransientServiceError):
    """The collaborator asked us to slow down."""

    error_code = "RATE_LIMITED"


class MalformedResponseError(ExternalServiceError):
    """The collaborator answered with output that could not be parsed or repaired."""

    error_code = "MALFORMED_RESPONSE"


class FatalServiceError(ExternalServiceError):
    """A non-retryable collaborator failure (bad request, exhausted credit)."""

    error_code = "FATAL_SERVICE_ERROR"


# =============================================================================
# Ingestion / Session Errors
# =============================================================================


class IngestionError(BrokerageLedgerError):
    """Base exception for windowed ingestion errors."""

    error_code = "INGESTION_ERROR"


class IngestionStalledError(IngestionError):
    """Raised when a window makes no coverage progress after a retry."""

    error_code = "INGESTION_STALLED"

    def __init__(self, session_id: UUID | str, window: list[int]) -> None:
        span = f"{window[0]}-{window[-1]}" if window else "(empty)"
        super().__init__(
            f"No coverage progress for rows {span} in session {session_id} "
            "after retry",
            context={"session_id": str(session_id), "window": window},
        )
        self.window = window


class SessionError(BrokerageLedgerError):
    """Base exception for ledger session errors."""

    error_code = "SESSION_ERROR"


class SessionNotFoundError(SessionError):
    """Raised when a ledger session cannot be found."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_ref: UUID | str) -> None:
        super().__init__(
            f"Session not found: {session_ref}",
            context={"session": str(session_ref)},
        )


class SessionBusyError(SessionError):
    """Raised when a session already has a writer in progress."""

    error_code = "SESSION_BUSY"

    def __init__(self, session_id: UUID | str) -> None:
        super().__init__(
            f"Session {session_id} is being modified by another operation",
            context={"session_id": str(session_id)},
        )
