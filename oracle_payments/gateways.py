"""Processor adapters.

Both adapters expose ``create_payment(intent)`` and ``get_status(payment_id)``
and speak only in normalized types. Each one is constructed with its own
credentials and HTTP client; there is no module-level API key.

Amount units at the boundary:

* NOWPayments (crypto) prices in major units. Intent minor units are divided
  by 100 on the way out and status ``price_amount`` is multiplied back on
  the way in.
* Paystack (card) takes and returns minor units (kobo/cents). No conversion.
"""

import hashlib
import hmac
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from oracle_payments.domain import (
    CARD,
    CRYPTO,
    PaymentIntent,
    PaymentStatus,
    PaymentStatusReport,
    ProcessorPaymentHandle,
)
from oracle_payments.errors import ProcessorRejected, ProcessorTimeout, ProcessorUnavailable
from oracle_payments.money import to_major_units, to_minor_units

logger = structlog.get_logger(__name__)

POPULAR_CURRENCIES = ["usdcbase", "btc", "eth", "usdt", "ltc", "ada", "matic", "bnb"]


class ProcessorGateway(Protocol):
    name: str

    def create_payment(self, intent: PaymentIntent, **options: Any) -> ProcessorPaymentHandle:
        ...

    def get_status(self, payment_id: str) -> PaymentStatusReport:
        ...


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


class _JsonGateway:
    """Shared request plumbing: error normalization for one processor."""

    name = "processor"

    def __init__(self, base_url: str, headers: Dict[str, str], timeout: float = 10.0,
                 http_client: Optional[httpx.Client] = None):
        self.http = http_client or httpx.Client(base_url=base_url, headers=headers, timeout=timeout)
        if http_client is not None:
            self.http.base_url = base_url
            self.http.headers.update(headers)

    def close(self) -> None:
        self.http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("processor_timeout", processor=self.name, path=path)
            raise ProcessorTimeout(f"{self.name} did not answer in time", self.name) from e
        except httpx.HTTPError as e:
            logger.warning("processor_unreachable", processor=self.name, path=path, error=str(e))
            raise ProcessorUnavailable(f"{self.name} is unreachable: {e}", self.name) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 500:
            logger.warning("processor_server_error", processor=self.name, status_code=response.status_code)
            raise ProcessorUnavailable(f"{self.name} API Error: {response.status_code}", self.name)
        if response.status_code >= 400:
            message = (payload or {}).get("message") if isinstance(payload, dict) else None
            logger.info("processor_rejected", processor=self.name, status_code=response.status_code, message=message)
            raise ProcessorRejected(
                f"{self.name} API Error: {response.status_code} - {message or 'Unknown error'}",
                self.name,
                response.status_code,
            )
        if not isinstance(payload, dict):
            raise ProcessorUnavailable(f"{self.name} returned a malformed response", self.name)
        return payload


class NowPaymentsGateway(_JsonGateway):
    name = "nowpayments"
    method = CRYPTO

    BASE_URL = "https://api.nowpayments.io/v1"
    SANDBOX_URL = "https://api-sandbox.nowpayments.io/v1"

    def __init__(self, api_key: str, sandbox: bool = False, timeout: float = 10.0,
                 http_client: Optional[httpx.Client] = None):
        super().__init__(
            self.SANDBOX_URL if sandbox else self.BASE_URL,
            {"x-api-key": api_key, "Content-Type": "application/json"},
            timeout,
            http_client,
        )

    @staticmethod
    def normalize_status(raw: str) -> PaymentStatus:
        return PaymentStatus(raw)

    def create_payment(self, intent: PaymentIntent, pay_currency: str = "btc", **options: Any) -> ProcessorPaymentHandle:
        body = {
            "price_amount": float(to_major_units(intent.amount)),
            "price_currency": intent.currency.lower(),
            "pay_currency": pay_currency.lower(),
            "order_id": intent.order_id,
            "order_description": intent.description or f"Order {intent.order_id}",
            "ipn_callback_url": intent.ipn_callback_url,
            "success_url": intent.success_url,
            "cancel_url": intent.cancel_url,
        }
        data = self._request("POST", "/payment", json=body)
        if not data.get("payment_id") or not data.get("pay_address"):
            raise ProcessorUnavailable("nowpayments returned an incomplete payment", self.name)
        logger.info("crypto_payment_created", order_id=intent.order_id, payment_id=data["payment_id"])
        return ProcessorPaymentHandle(
            processor=self.name,
            payment_method=CRYPTO,
            order_id=intent.order_id,
            payment_id=str(data["payment_id"]),
            status=self.normalize_status(data.get("payment_status", "waiting")),
            pay_address=data["pay_address"],
            pay_amount=str(data.get("pay_amount")),
            pay_currency=data.get("pay_currency", pay_currency),
            payment_url=data.get("payment_url") or data.get("invoice_url"),
        )

    @classmethod
    def report_from_payload(cls, data: Dict[str, Any]) -> PaymentStatusReport:
        price_amount = data.get("price_amount")
        return PaymentStatusReport(
            payment_id=str(data.get("payment_id")),
            status=cls.normalize_status(data["payment_status"]),
            order_id=data.get("order_id"),
            amount=to_minor_units(price_amount) if price_amount is not None else None,
            currency=(data.get("price_currency") or "").upper() or None,
            pay_amount=str(data["pay_amount"]) if data.get("pay_amount") is not None else None,
            pay_currency=data.get("pay_currency"),
            actually_paid=str(data["actually_paid"]) if data.get("actually_paid") is not None else None,
            paid_at=data.get("updated_at"),
        )

    def get_status(self, payment_id: str) -> PaymentStatusReport:
        data = self._request("GET", f"/payment/{payment_id}")
        try:
            return self.report_from_payload(data)
        except (KeyError, ValueError) as e:
            raise ProcessorUnavailable(f"nowpayments returned an unreadable status: {e}", self.name) from e

    @retry(
        retry=retry_if_exception_type(ProcessorUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=4),
        reraise=True,
    )
    def list_currencies(self) -> List[str]:
        data = self._request("GET", "/currencies")
        return [c for c in data.get("currencies", []) if c.lower() in POPULAR_CURRENCIES]

    def estimate_price(self, amount, currency_from: str, currency_to: str) -> Dict[str, Any]:
        return self._request(
            "GET",
            "/estimate",
            params={"amount": amount, "currency_from": currency_from, "currency_to": currency_to},
        )

    def min_amount(self, currency_from: str, currency_to: str) -> Dict[str, Any]:
        return self._request(
            "GET",
            "/min-amount",
            params={"currency_from": currency_from, "currency_to": currency_to},
        )


class PaystackGateway(_JsonGateway):
    name = "paystack"
    method = CARD

    BASE_URL = "https://api.paystack.co"

    STATUS_MAP = {
        "success": PaymentStatus.FINISHED,
        "failed": PaymentStatus.FAILED,
        "abandoned": PaymentStatus.WAITING,
        "reversed": PaymentStatus.REFUNDED,
        "pending": PaymentStatus.WAITING,
        "ongoing": PaymentStatus.WAITING,
        "processing": PaymentStatus.CONFIRMING,
        "queued": PaymentStatus.CONFIRMING,
    }

    def __init__(self, secret_key: str, currency: str = "NGN", timeout: float = 10.0,
                 http_client: Optional[httpx.Client] = None):
        super().__init__(
            self.BASE_URL,
            {"Authorization": f"Bearer {secret_key}", "Content-Type": "application/json"},
            timeout,
            http_client,
        )
        self.currency = currency

    @classmethod
    def normalize_status(cls, raw: str) -> PaymentStatus:
        return cls.STATUS_MAP.get((raw or "").lower(), PaymentStatus.WAITING)

    def _data(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("status") or not isinstance(payload.get("data"), dict):
            raise ProcessorUnavailable("Invalid response from Paystack", self.name)
        return payload["data"]

    def create_payment(self, intent: PaymentIntent, email: str = "", **options: Any) -> ProcessorPaymentHandle:
        if not email:
            raise ProcessorRejected("An email address is required for card payments", self.name)
        body = {
            "email": email,
            "amount": intent.amount,
            "currency": intent.currency or self.currency,
            "reference": intent.order_id,
            "callback_url": intent.success_url,
            "metadata": {
                "user_id": intent.account_id,
                "plan_id": intent.plan_id,
                "billing_frequency": intent.billing_cycle,
                "invoice_id": intent.invoice_id,
                "order_id": intent.order_id,
            },
        }
        data = self._data(self._request("POST", "/transaction/initialize", json=body))
        logger.info("card_payment_initialized", order_id=intent.order_id, reference=data.get("reference"))
        reference = data.get("reference") or intent.order_id
        return ProcessorPaymentHandle(
            processor=self.name,
            payment_method=CARD,
            order_id=intent.order_id,
            payment_id=reference,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    @classmethod
    def report_from_payload(cls, data: Dict[str, Any]) -> PaymentStatusReport:
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return PaymentStatusReport(
            payment_id=str(data.get("reference")),
            status=cls.normalize_status(data.get("status")),
            order_id=metadata.get("order_id") or data.get("reference"),
            amount=int(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            paid_at=data.get("paid_at"),
            metadata=metadata,
        )

    def get_status(self, payment_id: str) -> PaymentStatusReport:
        data = self._data(self._request("GET", f"/transaction/verify/{payment_id}"))
        return self.report_from_payload(data)
