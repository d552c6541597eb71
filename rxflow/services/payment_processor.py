"""rxflow — Payment processor client (Authorize.Net style JSON API).

Timeouts and retries for the processor call live here, not in the refund ledger.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

import httpx

from rxflow.config import get_settings
from rxflow.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class ProcessorResult:
    success: bool
    transaction_id: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def refund(self, authorization_id: str, amount: Decimal, *, reference: str) -> ProcessorResult: ...


class PaymentProcessorClient:
    """Executes refunds against a stored authorization (``refTransId``)."""

    def __init__(
        self,
        url: str | None = None,
        login_id: str | None = None,
        transaction_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.url = url or settings.PAYMENT_PROCESSOR_URL
        self.login_id = login_id if login_id is not None else settings.PAYMENT_PROCESSOR_LOGIN_ID
        self.transaction_key = transaction_key if transaction_key is not None else settings.PAYMENT_PROCESSOR_TRANSACTION_KEY
        self.timeout = timeout or settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts or settings.PAYMENT_PROCESSOR_MAX_ATTEMPTS)
        self._transport = transport

    def _build_payload(self, authorization_id: str, amount: Decimal, reference: str) -> dict:
        return {
            "createTransactionRequest": {
                "merchantAuthentication": {"name": self.login_id, "transactionKey": self.transaction_key},
                "refId": reference[:20],
                "transactionRequest": {
                    "transactionType": "refundTransaction",
                    "amount": f"{amount:.2f}",
                    "refTransId": authorization_id,
                },
            }
        }

    async def refund(self, authorization_id: str, amount: Decimal, *, reference: str) -> ProcessorResult:
        payload = self._build_payload(authorization_id, amount, reference)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await client.post(self.url, json=payload)
                    response.raise_for_status()
                    break
                except httpx.ConnectError as exc:
                    # Request never reached the processor; safe to retry
                    logger.warning("Processor connect failed (attempt %d/%d): %s", attempt, self.max_attempts, exc)
                    if attempt == self.max_attempts:
                        raise ExternalServiceError("Payment processor unreachable") from exc
                except httpx.HTTPError as exc:
                    raise ExternalServiceError(f"Payment processor request failed: {exc}") from exc

        return self._parse(response.json())

    @staticmethod
    def _parse(body: dict) -> ProcessorResult:
        messages = body.get("messages") or {}
        tx = body.get("transactionResponse") or {}
        ok = messages.get("resultCode") == "Ok" and str(tx.get("responseCode")) == "1"
        texts = [m.get("text") for m in messages.get("message", []) if m.get("text")]
        errors = [e.get("errorText") for e in tx.get("errors", []) if e.get("errorText")]
        return ProcessorResult(
            success=ok,
            transaction_id=tx.get("transId") or None,
            message="; ".join(errors or texts) or None,
            raw=body,
        )
