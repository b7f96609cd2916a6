"""HTTP clients for the categorization and investigation services.

Both talk JSON over ``httpx.AsyncClient`` and translate HTTP failures into
the service error hierarchy: 429 is RateLimitedError (honouring
Retry-After), other 4xx are fatal, 5xx and transport failures are
transient.
"""

from collections.abc import Sequence
from typing import Any

import httpx

from brokerage_ledger.domain.reconciliation import ContextWindow, Discrepancy, Investigation
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.exceptions import (
    FatalServiceError,
    MalformedResponseError,
    RateLimitedError,
    TransientServiceError,
)
from brokerage_ledger.logging_config import get_logger
from brokerage_ledger.schemas import parse_investigation
from brokerage_ledger.services.interfaces import AccountContext
from brokerage_ledger.services.json_repair import parse_response_json

logger = get_logger(__name__)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        raw = payload.get("detail", payload.get("error", payload))
        if isinstance(raw, dict):
            raw = raw.get("message", raw)
        return raw if isinstance(raw, str) else str(raw)
    return str(payload)


def raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = _detail(response)
    if status == 429:
        raise RateLimitedError(
            f"Rate limited by collaborator: {detail}", retry_after=_retry_after(response)
        )
    if status >= 500:
        raise TransientServiceError(f"Collaborator error {status}: {detail}")
    if "credit balance" in detail.lower():
        raise FatalServiceError(f"Collaborator account has no credit: {detail}")
    raise FatalServiceError(f"Collaborator rejected request ({status}): {detail}")


def rows_to_wire(rows: Sequence[SourceRow]) -> list[dict[str, Any]]:
    return [{"rowNumber": row.row_number, "fields": dict(row.fields)} for row in rows]


def discrepancy_to_wire(discrepancy: Discrepancy) -> dict[str, Any]:
    def text(value: object | None) -> str | None:
        return str(value) if value is not None else None

    return {
        "id": str(discrepancy.id),
        "type": discrepancy.discrepancy_type.value,
        "severity": discrepancy.severity.value,
        "description": discrepancy.description,
        "affectedRows": list(discrepancy.affected_rows),
        "startDate": text(discrepancy.start_date),
        "endDate": text(discrepancy.end_date),
        "expectedValue": text(discrepancy.expected_value),
        "actualValue": text(discrepancy.actual_value),
        "transactionIds": [str(t) for t in discrepancy.transaction_ids],
    }


def context_to_wire(context: ContextWindow) -> dict[str, Any]:
    return {
        "startDate": context.start_date.isoformat(),
        "endDate": context.end_date.isoformat(),
        "rows": rows_to_wire(context.rows),
        "transactions": [
            {
                "id": str(txn.id),
                "date": txn.transaction_date.isoformat(),
                "description": txn.description,
                "transactionType": txn.kind.value,
                "sourceRows": list(txn.source_row_numbers),
                "journalEntries": [
                    {
                        "type": "debit" if entry.is_debit else "credit",
                        "accountType": entry.account_class.value,
                        "accountName": entry.account_name,
                        "amount": str(entry.amount),
                        "quantity": str(entry.quantity) if entry.quantity is not None else None,
                        "assetSymbol": entry.asset_symbol,
                    }
                    for entry in txn.entries
                ],
            }
            for txn in context.transactions
        ],
    }


class _CollaboratorClient:
    def __init__(
        self,
        base_url: str = "http://localhost:9000",
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = (
            client
            if client is not None
            else httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(path, json=body)
        except httpx.TransportError as exc:
            raise TransientServiceError(f"Collaborator unreachable: {exc}") from exc
        raise_for_status(response)
        return response


class HTTPCategorizationService(_CollaboratorClient):
    """Posts a window of rows to ``/categorize`` and returns the raw proposal text."""

    async def categorize(self, rows: Sequence[SourceRow], context: AccountContext) -> str:
        body = {
            "account": {
                "name": context.account_name,
                "institution": context.institution,
                "currency": context.currency,
                "columns": list(context.column_names),
            },
            "rows": rows_to_wire(rows),
        }
        response = await self._post("/categorize", body)
        logger.debug("categorize_response", status=response.status_code, rows=len(rows))
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict) and isinstance(payload.get("content"), str):
            return payload["content"]
        return response.text


class HTTPInvestigationService(_CollaboratorClient):
    """Posts one discrepancy with its context to ``/investigate``."""

    async def investigate(
        self, discrepancy: Discrepancy, context: ContextWindow
    ) -> Investigation:
        body = {
            "discrepancy": discrepancy_to_wire(discrepancy),
            "context": context_to_wire(context),
        }
        response = await self._post("/investigate", body)
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("content"), str):
            document = parse_response_json(payload["content"])
        elif isinstance(payload, dict):
            document = payload
        else:
            document = parse_response_json(response.text)
        if not isinstance(document, dict):
            raise MalformedResponseError("Investigation response is not an object")
        return parse_investigation(document, discrepancy.id)
