"""Async client for the billing API, used by the payment dialog and poller."""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from oracle_payments.domain import CARD, CRYPTO, PaymentStatusReport, ProcessorPaymentHandle
from oracle_payments.errors import (
    ProcessorRejected,
    ProcessorTimeout,
    ProcessorUnavailable,
    VerificationFailed,
)

logger = structlog.get_logger(__name__)


class BillingClient:
    def __init__(self, base_url: str, token: str, timeout: float = 15.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        headers = {"Authorization": f"Bearer {token}"}
        self.http = http_client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        if http_client is not None:
            self.http.base_url = base_url
            self.http.headers.update(headers)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProcessorTimeout(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise ProcessorUnavailable(f"{method} {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        detail = payload.get("detail") if isinstance(payload, dict) else None

        if response.status_code == 504:
            raise ProcessorTimeout(detail or "Payment processor timed out")
        if response.status_code >= 500:
            raise ProcessorUnavailable(detail or f"Billing API error {response.status_code}")
        if response.status_code == 402:
            raise VerificationFailed(path.rsplit("/", 1)[-1], detail or "failed")
        if response.status_code >= 400:
            raise ProcessorRejected(detail or f"Billing API error {response.status_code}",
                                    status_code=response.status_code)
        if not isinstance(payload, dict):
            raise ProcessorUnavailable(f"{method} {path} returned a malformed response")
        return payload

    async def list_currencies(self) -> List[str]:
        data = await self._request("GET", "/payments/currencies")
        return list(data.get("currencies", []))

    async def create_intent(self, method: str, plan_id: Optional[str] = None, billing_cycle: str = "monthly",
                            invoice_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/payments/intents", json={
            "payment_method": method,
            "billing_cycle": billing_cycle,
            "plan_id": plan_id,
            "invoice_id": invoice_id,
        })

    async def abandon_intent(self, order_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/payments/intents/{order_id}/abandon")

    async def create_crypto_payment(self, order_id: str, pay_currency: str) -> ProcessorPaymentHandle:
        data = await self._request("POST", "/payments/crypto", json={
            "order_id": order_id,
            "pay_currency": pay_currency,
        })
        return ProcessorPaymentHandle.from_dict(data)

    async def initialize_card_payment(self, order_id: str, email: str) -> ProcessorPaymentHandle:
        data = await self._request("POST", "/payments/card/initialize", json={
            "order_id": order_id,
            "email": email,
        })
        return ProcessorPaymentHandle.from_dict(data)

    async def get_status(self, handle: ProcessorPaymentHandle) -> PaymentStatusReport:
        if handle.payment_method == CARD:
            path = f"/payments/card/{handle.payment_id}/status"
        else:
            path = f"/payments/crypto/{handle.payment_id}/status"
        return PaymentStatusReport.from_dict(await self._request("GET", path))

    async def verify(self, handle: ProcessorPaymentHandle) -> Dict[str, Any]:
        if handle.payment_method == CRYPTO:
            return await self._request("POST", "/payments/verify", json={"payment_id": handle.payment_id})
        return await self._request("POST", "/payments/card/verify", json={"reference": handle.payment_id})
