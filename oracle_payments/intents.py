"""Payment intent factory.

Every attempt to pay gets its own order id, so a retry after a failed or
expired attempt never collides with an earlier attempt that the processor
may still settle.
"""

import uuid
from urllib.parse import quote

import structlog
from sqlalchemy import update

from oracle_payments.domain import BILLING_CYCLES, CRYPTO, PAYMENT_METHODS, PaymentIntent
from oracle_payments.errors import (
    IntentAlreadyUsed,
    InvalidTransition,
    NoPaymentRequired,
    ProcessorRejected,
)
from oracle_payments.invoices import create_invoice, find_pending_invoice, get_invoice
from oracle_payments.models import INVOICE_PENDING, Invoice, PaymentIntentRecord
from oracle_payments.plans import PLANS, get_plan

logger = structlog.get_logger(__name__)

SUBSCRIPTION_PREFIX = "sub"
INVOICE_PREFIX = "inv"

STATE_CREATED = "created"
STATE_PROCESSING = "processing"
STATE_ABANDONED = "abandoned"
STATE_FAILED = "failed"
STATE_COMPLETED = "completed"


def new_order_id(prefix, ref):
    return f"{prefix}_{ref}_{uuid.uuid4()}"


def payment_type_for(order_id):
    if order_id.startswith(SUBSCRIPTION_PREFIX + "_"):
        return "subscription"
    if order_id.startswith(INVOICE_PREFIX + "_"):
        return "invoice"
    return None


def requires_payment(plan_id, billing_cycle="monthly"):
    """False for plans that must bypass the processors entirely."""
    return get_plan(plan_id).price_for(billing_cycle) > 0


def _build_intent(settings, record, invoice):
    base = settings.public_base_url
    if payment_type_for(record.order_id) == "subscription":
        plan = PLANS.get(record.plan_id)
        description = f"Subscription upgrade to {plan.name if plan else record.plan_id}"
        success_url = f"{base}/subscription/success?plan={quote(record.plan_id)}&billing={record.billing_cycle}"
        cancel_url = f"{base}/subscription/plans"
    else:
        description = f"Invoice {invoice.invoice_number}" if invoice else f"Order {record.order_id}"
        success_url = f"{base}/invoices/success?invoice={quote(record.invoice_id or '')}"
        cancel_url = f"{base}/invoice/{record.invoice_id}"

    webhook = "nowpayments" if record.payment_method == CRYPTO else "paystack"
    return PaymentIntent(
        order_id=record.order_id,
        account_id=record.account_id,
        plan_id=record.plan_id,
        billing_cycle=record.billing_cycle,
        amount=record.amount,
        currency=record.currency,
        payment_method=record.payment_method,
        invoice_id=record.invoice_id,
        description=description,
        ipn_callback_url=f"{base}/webhooks/{webhook}",
        success_url=success_url,
        cancel_url=cancel_url,
    )


def create_intent(db, settings, account_id, method, billing_cycle="monthly", plan_id=None, invoice_id=None):
    """Create one payment attempt for a plan change or an existing invoice.

    Raises NoPaymentRequired for free plans and zero-amount invoices; callers
    are expected to skip the payment flow in that case.
    """
    if method not in PAYMENT_METHODS:
        raise ProcessorRejected(f"Unsupported payment method: {method}")
    if billing_cycle not in BILLING_CYCLES:
        raise ProcessorRejected(f"Unsupported billing cycle: {billing_cycle}")

    if invoice_id:
        invoice = get_invoice(db, invoice_id, account_id=account_id)
        if invoice.status != INVOICE_PENDING:
            raise InvalidTransition(invoice.id, invoice.status, "paid")
        details = invoice.details or {}
        plan_id = details.get("planId", plan_id or "")
        billing_cycle = details.get("billingCycle", billing_cycle)
        prefix, ref = INVOICE_PREFIX, invoice.invoice_number
    else:
        if not plan_id:
            raise ProcessorRejected("Either plan_id or invoice_id is required")
        plan = get_plan(plan_id)
        if not requires_payment(plan_id, billing_cycle):
            raise NoPaymentRequired(f"{plan.name} does not require payment")
        amount = plan.price_for(billing_cycle)
        invoice = find_pending_invoice(db, account_id, plan_id, billing_cycle) or create_invoice(
            db,
            account_id,
            amount,
            plan.currency,
            metadata={
                "planId": plan_id,
                "billingCycle": billing_cycle,
                "paymentMethod": method,
                "createdFrom": "plan_change",
            },
        )
        prefix, ref = SUBSCRIPTION_PREFIX, plan_id

    if invoice.amount <= 0:
        raise NoPaymentRequired(f"Invoice {invoice.id} has nothing to pay")

    record = PaymentIntentRecord(
        order_id=new_order_id(prefix, ref),
        invoice_id=invoice.id,
        account_id=account_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=invoice.amount,
        currency=invoice.currency,
        payment_method=method,
        state=STATE_CREATED,
    )
    db.add(record)
    db.commit()
    logger.info(
        "payment_intent_created",
        order_id=record.order_id,
        invoice_id=invoice.id,
        method=method,
        amount=record.amount,
    )
    return _build_intent(settings, record, invoice)


def get_intent_record(db, order_id, account_id=None):
    record = db.get(PaymentIntentRecord, order_id)
    if record is None or (account_id is not None and record.account_id != account_id):
        return None
    return record


def load_intent(db, settings, order_id, account_id=None):
    record = get_intent_record(db, order_id, account_id)
    if record is None:
        return None
    invoice = db.get(Invoice, record.invoice_id) if record.invoice_id else None
    return _build_intent(settings, record, invoice)


def find_record_by_payment_id(db, processor_payment_id):
    return db.query(PaymentIntentRecord).filter_by(processor_payment_id=str(processor_payment_id)).first()


def claim_intent(db, order_id):
    """Reserve a fresh intent for exactly one processor call."""
    result = db.execute(
        update(PaymentIntentRecord)
        .where(PaymentIntentRecord.order_id == order_id, PaymentIntentRecord.state == STATE_CREATED)
        .values(state=STATE_PROCESSING)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        record = db.get(PaymentIntentRecord, order_id)
        if record is None:
            raise KeyError(f"Unknown payment intent: {order_id}")
        db.refresh(record)
        raise IntentAlreadyUsed(order_id, record.state)


def set_intent_state(db, order_id, state, processor_payment_id=None):
    """Track the attempt. ``completed`` is final; nothing moves an intent out of it."""
    values = {"state": state}
    if processor_payment_id is not None:
        values["processor_payment_id"] = str(processor_payment_id)
    result = db.execute(
        update(PaymentIntentRecord)
        .where(PaymentIntentRecord.order_id == order_id, PaymentIntentRecord.state != STATE_COMPLETED)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("payment_intent_state_changed", order_id=order_id, state=state)
    return bool(result.rowcount)
