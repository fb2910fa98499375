"""Apply processor-reported payment outcomes to invoices exactly once.

Two entry points feed ``apply_outcome``: an explicit verify call made by the
client, and the processor's webhook. They can arrive in any order and any
number of times; the conditional invoice update in ``transition_invoice``
decides which one wins and the others become no-ops.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import structlog

from oracle_payments.domain import PaymentStatus, PaymentStatusReport
from oracle_payments.errors import (
    InvalidTransition,
    InvoiceNotFound,
    PaymentError,
    ReconciliationConflict,
    VerificationFailed,
)
from oracle_payments.gateways import NowPaymentsGateway, PaystackGateway
from oracle_payments.intents import (
    STATE_COMPLETED,
    STATE_FAILED,
    find_record_by_payment_id,
    payment_type_for,
    set_intent_state,
)
from oracle_payments.invoices import find_pending_invoice, get_invoice, transition_invoice
from oracle_payments.models import INVOICE_PAID, PaymentIntentRecord
from oracle_payments.money import to_major_units

logger = structlog.get_logger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
IGNORED = "ignored"
CONFLICT = "conflict"
UNMATCHED = "unmatched"


@dataclass(frozen=True)
class PaymentOutcome:
    reference: str
    status: PaymentStatus
    processor: str
    source: str
    order_id: Optional[str] = None
    payment_type: Optional[str] = None
    invoice_id: Optional[str] = None
    account_id: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None

    @classmethod
    def from_report(cls, report: PaymentStatusReport, processor: str, source: str, **overrides: Any) -> "PaymentOutcome":
        metadata = report.metadata or {}
        values = {
            "reference": report.payment_id,
            "status": report.status,
            "processor": processor,
            "source": source,
            "order_id": report.order_id,
            "invoice_id": metadata.get("invoice_id"),
            "account_id": metadata.get("user_id"),
            "plan_id": metadata.get("plan_id"),
            "billing_cycle": metadata.get("billing_frequency"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class ReconciliationResult:
    action: str
    status: PaymentStatus
    invoice_id: Optional[str] = None
    paid_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status.is_success and self.action in (APPLIED, ALREADY_APPLIED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "payment_status": self.status.value,
            "invoice_id": self.invoice_id,
            "paid_at": self.paid_at,
        }


def _resolve_invoice(db, outcome, record):
    payment_type = outcome.payment_type or (payment_type_for(outcome.order_id) if outcome.order_id else None)
    invoice_id = outcome.invoice_id or (record.invoice_id if record else None)
    if invoice_id:
        try:
            return get_invoice(db, invoice_id), payment_type or "invoice"
        except InvoiceNotFound:
            logger.warning("reconciliation_invoice_missing", invoice_id=invoice_id, reference=outcome.reference)
    if payment_type == "subscription" or (payment_type is None and outcome.plan_id):
        account_id = outcome.account_id or (record.account_id if record else None)
        plan_id = outcome.plan_id or (record.plan_id if record else None)
        if account_id and plan_id:
            invoice = find_pending_invoice(db, account_id, plan_id, outcome.billing_cycle)
            if invoice is not None:
                return invoice, "subscription"
    return None, payment_type


def _activate_subscription(oracle_engine, invoice, outcome, record):
    details = invoice.details or {}
    try:
        oracle_engine.activate_subscription(
            account_id=invoice.account_id,
            plan_id=details.get("planId") or outcome.plan_id or (record.plan_id if record else None),
            billing_cycle=details.get("billingCycle") or outcome.billing_cycle or "monthly",
            payment_id=outcome.reference,
            amount_paid=float(to_major_units(invoice.amount)),
            currency=invoice.currency,
            order_id=outcome.order_id or outcome.reference,
        )
    except PaymentError as e:
        # The invoice stays paid; someone has to finish the activation by hand.
        logger.error(
            "subscription_activation_failed",
            alert=True,
            invoice_id=invoice.id,
            account_id=invoice.account_id,
            reference=outcome.reference,
            error=str(e),
        )


def apply_outcome(db, outcome: PaymentOutcome, oracle_engine=None) -> ReconciliationResult:
    log = logger.bind(reference=outcome.reference, order_id=outcome.order_id, source=outcome.source)

    record = db.get(PaymentIntentRecord, outcome.order_id) if outcome.order_id else None
    if record is None:
        record = find_record_by_payment_id(db, outcome.reference)
    invoice, payment_type = _resolve_invoice(db, outcome, record)

    if not outcome.status.is_success:
        log.info("payment_outcome_not_successful", status=outcome.status.value)
        if record is not None and outcome.status.is_terminal:
            set_intent_state(db, record.order_id, STATE_FAILED)
        return ReconciliationResult(IGNORED, outcome.status, invoice.id if invoice else None)

    if invoice is None:
        log.error("payment_outcome_unmatched", alert=True, status=outcome.status.value)
        return ReconciliationResult(UNMATCHED, outcome.status)

    try:
        invoice, changed = transition_invoice(db, invoice.id, INVOICE_PAID, payment_id=outcome.reference)
    except InvalidTransition as e:
        current = get_invoice(db, invoice.id)
        conflict = ReconciliationConflict(invoice.id, e.current, current.payment_id)
        log.warning("reconciliation_conflict", invoice_id=invoice.id, error=str(conflict))
        return ReconciliationResult(CONFLICT, outcome.status, invoice.id)

    if record is not None:
        set_intent_state(db, record.order_id, STATE_COMPLETED)

    paid_at = invoice.paid_at.isoformat() if invoice.paid_at else None
    if not changed:
        log.info("payment_outcome_already_applied", invoice_id=invoice.id)
        return ReconciliationResult(ALREADY_APPLIED, outcome.status, invoice.id, paid_at)

    log.info("payment_outcome_applied", invoice_id=invoice.id, payment_type=payment_type)
    if payment_type == "subscription" and oracle_engine is not None:
        _activate_subscription(oracle_engine, invoice, outcome, record)
    return ReconciliationResult(APPLIED, outcome.status, invoice.id, paid_at)


def verify_payment(db, gateway, payment_id, oracle_engine=None, **overrides):
    """Ask the processor for the current status and apply it.

    Processor errors propagate; the caller decides whether to retry.
    """
    report = gateway.get_status(payment_id)
    outcome = PaymentOutcome.from_report(report, gateway.name, "verify", **overrides)
    result = apply_outcome(db, outcome, oracle_engine)
    if report.status.is_terminal and not report.status.is_success:
        raise VerificationFailed(report.payment_id, report.status.value)
    return report, result


def handle_nowpayments_ipn(db, payload, oracle_engine=None):
    report = NowPaymentsGateway.report_from_payload(payload)
    outcome = PaymentOutcome.from_report(report, NowPaymentsGateway.name, "webhook")
    return apply_outcome(db, outcome, oracle_engine)


def handle_paystack_event(db, event, oracle_engine=None):
    kind = event.get("event")
    data = event.get("data") or {}
    if kind not in ("charge.success", "charge.failed"):
        logger.info("paystack_event_unhandled", paystack_event=kind)
        return None
    report = PaystackGateway.report_from_payload(data)
    if kind == "charge.failed":
        report = replace(report, status=PaymentStatus.FAILED)
    outcome = PaymentOutcome.from_report(report, PaystackGateway.name, "webhook")
    return apply_outcome(db, outcome, oracle_engine)
