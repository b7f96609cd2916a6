"""Row factories and scripted collaborators shared by the test modules."""

from collections.abc import Sequence
from typing import Any

from brokerage_ledger.domain.reconciliation import (
    ContextWindow,
    Discrepancy,
    Investigation,
    ProposedFix,
)
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.services.interfaces import AccountContext


def fidelity_record(
    run_date: str = "01/02/2024",
    action: str = "",
    symbol: str = "",
    description: str = "",
    quantity: str = "",
    amount: str = "",
    balance: str = "",
) -> dict[str, str]:
    """A record shaped like a Fidelity activity export line."""
    return {
        "Run Date": run_date,
        "Action": action,
        "Symbol": symbol,
        "Description": description,
        "Quantity": quantity,
        "Amount ($)": amount,
        "Cash Balance ($)": balance,
    }


def make_rows(records: Sequence[dict[str, str]], start: int = 1) -> list[SourceRow]:
    return [
        SourceRow(row_number=start + index, fields=record, source_file="activity.csv")
        for index, record in enumerate(records)
    ]


def spy_purchase_records() -> list[dict[str, str]]:
    return [
        fidelity_record(
            run_date="01/02/2024",
            action="YOU BOUGHT SPDR S&P 500 ETF (SPY) (Cash)",
            symbol="SPY",
            description="SPDR S&P 500 ETF",
            quantity="4",
            amount="-2019.24",
        ),
        fidelity_record(run_date="01/02/2024", amount="-2019.24", balance="7980.76"),
    ]


def deposit_record(amount: str = "10000.00", run_date: str = "01/01/2024") -> dict[str, str]:
    return fidelity_record(
        run_date=run_date,
        action="ELECTRONIC FUNDS TRANSFER RECEIVED (Cash)",
        description="No Description",
        amount=amount,
        balance=amount,
    )


def create_payload(
    rows: list[int],
    amount: str,
    debit_account: tuple[str, str] = ("cash", "Cash USD"),
    credit_account: tuple[str, str] = ("equity", "Owner Contributions"),
    txn_date: str = "2024-01-01",
    **extra: Any,
) -> dict[str, Any]:
    """A camelCase transaction proposal as the collaborator sends it."""
    return {
        "sourceRows": rows,
        "date": txn_date,
        "description": extra.pop("description", "Proposed"),
        "transactionType": extra.pop("transactionType", "transfer_in"),
        "journalEntries": [
            {
                "type": "debit",
                "accountType": debit_account[0],
                "accountName": debit_account[1],
                "amount": amount,
            },
            {
                "type": "credit",
                "accountType": credit_account[0],
                "accountName": credit_account[1],
                "amount": amount,
            },
        ],
        **extra,
    }


class FakeCategorizer:
    """Replays scripted responses; exceptions in the script are raised."""

    def __init__(self, responses: Sequence[Any] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[list[int]] = []
        self.contexts: list[AccountContext] = []

    async def categorize(self, rows: Sequence[SourceRow], context: AccountContext) -> str:
        self.calls.append([row.row_number for row in rows])
        self.contexts.append(context)
        if not self.responses:
            return '{"transactions": []}'
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeInvestigator:
    """Answers every discrepancy with the fixes produced by ``make_fixes``."""

    def __init__(self, make_fixes: Any = None, error: Exception | None = None) -> None:
        self._make_fixes = make_fixes or (lambda discrepancy: [])
        self._error = error
        self.calls: list[tuple[Discrepancy, ContextWindow]] = []

    async def investigate(
        self, discrepancy: Discrepancy, context: ContextWindow
    ) -> Investigation:
        self.calls.append((discrepancy, context))
        if self._error is not None:
            raise self._error
        fixes: list[ProposedFix] = self._make_fixes(discrepancy)
        return Investigation(
            discrepancy_id=discrepancy.id,
            hypothesis="Scripted hypothesis",
            proposed_fixes=fixes,
        )
