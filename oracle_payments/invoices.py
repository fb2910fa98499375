"""Invoice records and their one-way status transitions.

An invoice leaves ``pending`` exactly once. Every writer goes through
``transition_invoice``, whose conditional UPDATE is the compare-and-set
that lets concurrent verify and webhook calls race safely.
"""

import secrets
import string
import time
import uuid
from datetime import timedelta

import structlog
from sqlalchemy import update

from oracle_payments.errors import InvalidTransition, InvoiceNotFound
from oracle_payments.models import (
    Invoice,
    INVOICE_PAID,
    INVOICE_PENDING,
    INVOICE_TERMINAL,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_DUE_DAYS = 7


def generate_invoice_number():
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"INV-{int(time.time() * 1000)}-{suffix}"


def create_invoice(db, account_id, amount, currency, metadata=None, due_days=DEFAULT_DUE_DAYS):
    now = utcnow()
    invoice = Invoice(
        id=str(uuid.uuid4()),
        invoice_number=generate_invoice_number(),
        account_id=account_id,
        amount=int(amount),
        currency=currency.upper(),
        status=INVOICE_PENDING,
        details=dict(metadata or {}),
        issued_at=now,
        due_date=now + timedelta(days=due_days),
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    logger.info("invoice_created", invoice_id=invoice.id, account_id=account_id, amount=invoice.amount)
    return invoice


def get_invoice(db, invoice_id, account_id=None):
    invoice = db.get(Invoice, invoice_id)
    if invoice is None or (account_id is not None and invoice.account_id != account_id):
        raise InvoiceNotFound(invoice_id)
    return invoice


def list_invoices(db, account_id):
    return (
        db.query(Invoice)
        .filter_by(account_id=account_id)
        .order_by(Invoice.issued_at.desc())
        .all()
    )


def find_pending_invoice(db, account_id, plan_id, billing_cycle=None):
    """Most recent pending invoice raised for a plan change."""
    candidates = (
        db.query(Invoice)
        .filter_by(account_id=account_id, status=INVOICE_PENDING)
        .order_by(Invoice.issued_at.desc())
        .all()
    )
    for invoice in candidates:
        details = invoice.details or {}
        if details.get("planId") != plan_id:
            continue
        if billing_cycle is None or details.get("billingCycle") == billing_cycle:
            return invoice
    return None


def transition_invoice(db, invoice_id, new_status, payment_id=None, paid_at=None):
    """Move a pending invoice to a terminal status.

    Returns ``(invoice, changed)``. Repeating a transition that already
    happened with the same payment id is a no-op with ``changed=False``.
    Raises InvalidTransition for anything that would re-open or overwrite a
    settled invoice.
    """
    if new_status not in INVOICE_TERMINAL and new_status != INVOICE_PENDING:
        raise InvalidTransition(invoice_id, "?", new_status)

    if new_status != INVOICE_PENDING:
        values = {"status": new_status}
        if payment_id is not None:
            values["payment_id"] = payment_id
        if new_status == INVOICE_PAID:
            values["paid_at"] = paid_at or utcnow()

        result = db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == INVOICE_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            invoice = get_invoice(db, invoice_id)
            db.refresh(invoice)
            logger.info(
                "invoice_status_changed",
                invoice_id=invoice_id,
                status=new_status,
                payment_id=payment_id,
            )
            return invoice, True

    invoice = get_invoice(db, invoice_id)
    db.refresh(invoice)
    same_payment = payment_id is None or invoice.payment_id == payment_id
    if invoice.status == new_status and same_payment:
        return invoice, False
    raise InvalidTransition(invoice_id, invoice.status, new_status)
