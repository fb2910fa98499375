from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey

from oracle_payments.database import Base

INVOICE_PENDING = "pending"
INVOICE_PAID = "paid"
INVOICE_FAILED = "failed"
INVOICE_VOID = "void"
INVOICE_TERMINAL = (INVOICE_PAID, INVOICE_FAILED, INVOICE_VOID)


def utcnow():
    return datetime.now(timezone.utc)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True)
    invoice_number = Column(String, unique=True, index=True)
    account_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)               # minor units
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default=INVOICE_PENDING)  # pending | paid | failed | void
    details = Column("metadata", JSON, default=dict)       # planId, billingCycle, paymentMethod, ...
    due_date = Column(DateTime(timezone=True))
    issued_at = Column(DateTime(timezone=True), default=utcnow)
    paid_at = Column(DateTime(timezone=True))
    payment_id = Column(String)                            # processor reference that settled it

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "account_id": self.account_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "metadata": self.details or {},
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_id": self.payment_id,
        }


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    order_id = Column(String, primary_key=True)
    invoice_id = Column(String, ForeignKey("invoices.id"), index=True)
    account_id = Column(String, index=True, nullable=False)
    plan_id = Column(String, nullable=False)
    billing_cycle = Column(String, nullable=False)         # monthly | annual
    amount = Column(Integer, nullable=False)               # minor units
    currency = Column(String, nullable=False)
    payment_method = Column(String, nullable=False)        # crypto | card
    state = Column(String, nullable=False, default="created")  # created | processing | abandoned | failed | completed
    processor_payment_id = Column(String, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
