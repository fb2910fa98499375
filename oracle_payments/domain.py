"""Normalized payment types shared by both processors."""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class PaymentStatus(str, Enum):
    WAITING = "waiting"
    CONFIRMING = "confirming"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    CONFIRMED = "confirmed"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_STATUSES


TERMINAL_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.FINISHED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.EXPIRED,
})
SUCCESS_STATUSES = frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FINISHED})

CRYPTO = "crypto"
CARD = "card"
PAYMENT_METHODS = (CRYPTO, CARD)
BILLING_CYCLES = ("monthly", "annual")


@dataclass(frozen=True)
class PaymentIntent:
    order_id: str
    account_id: str
    plan_id: str
    billing_cycle: str
    amount: int            # minor units
    currency: str
    payment_method: str
    invoice_id: Optional[str] = None
    description: str = ""
    ipn_callback_url: str = ""
    success_url: str = ""
    cancel_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProcessorPaymentHandle:
    """What the dialog needs to present a payment, whichever processor made it."""

    processor: str
    payment_method: str
    order_id: str
    payment_id: str
    status: PaymentStatus = PaymentStatus.WAITING
    pay_address: Optional[str] = None
    pay_amount: Optional[str] = None
    pay_currency: Optional[str] = None
    payment_url: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessorPaymentHandle":
        values = dict(data)
        values["status"] = PaymentStatus(values.get("status") or PaymentStatus.WAITING.value)
        return cls(**values)


@dataclass(frozen=True)
class PaymentStatusReport:
    payment_id: str
    status: PaymentStatus
    order_id: Optional[str] = None
    amount: Optional[int] = None          # minor units of the invoice currency
    currency: Optional[str] = None
    pay_amount: Optional[str] = None
    pay_currency: Optional[str] = None
    actually_paid: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["payment_status"] = data.pop("status").value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentStatusReport":
        values = dict(data)
        values["status"] = PaymentStatus(values.pop("payment_status"))
        return cls(**values)
