from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from oracle_payments.auth import verify_token
from oracle_payments.config import get_settings
from oracle_payments.database import SessionLocal
from oracle_payments.dependencies import (
    get_card_gateway,
    get_crypto_gateway,
    get_optional_crypto_gateway,
    get_oracle_engine,
)
from oracle_payments.errors import (
    CustomPricingRequired,
    IntentAlreadyUsed,
    InvalidTransition,
    InvoiceNotFound,
    NoPaymentRequired,
    PaymentError,
    ProcessorRejected,
    ProcessorTimeout,
    ProcessorUnavailable,
    VerificationFailed,
)
from oracle_payments.gateways import POPULAR_CURRENCIES
from oracle_payments.intents import (
    STATE_ABANDONED,
    STATE_FAILED,
    STATE_PROCESSING,
    claim_intent,
    create_intent,
    get_intent_record,
    load_intent,
    set_intent_state,
)
from oracle_payments.invoices import create_invoice, get_invoice, list_invoices, transition_invoice
from oracle_payments.reconciliation import verify_payment

logger = structlog.get_logger(__name__)

router = APIRouter()


class IntentRequest(BaseModel):
    payment_method: str
    billing_cycle: str = "monthly"
    plan_id: Optional[str] = None
    invoice_id: Optional[str] = None


class CryptoPaymentRequest(BaseModel):
    order_id: str
    pay_currency: str = "btc"


class CardPaymentRequest(BaseModel):
    order_id: str
    email: str


class CryptoVerifyRequest(BaseModel):
    payment_id: str


class CardVerifyRequest(BaseModel):
    reference: str
    invoice_id: Optional[str] = None
    payment_type: Optional[str] = None


class InvoiceRequest(BaseModel):
    amount: int
    currency: str = "USD"
    metadata: Dict[str, Any] = {}
    due_days: int = 7


class InvoiceStatusRequest(BaseModel):
    status: str
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ProcessorTimeout):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, ProcessorUnavailable):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ProcessorRejected):
        return HTTPException(status_code=422 if e.status_code == 422 else 400, detail=str(e))
    if isinstance(e, CustomPricingRequired):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (InvalidTransition, IntentAlreadyUsed)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, VerificationFailed):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, (InvoiceNotFound, KeyError)):
        return HTTPException(status_code=404, detail=str(e).strip("'\""))
    return HTTPException(status_code=500, detail="Payment processing failed")


def _start_processor_payment(db, gateway, order_id, account_id, **options):
    intent = load_intent(db, get_settings(), order_id, account_id=account_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="Payment intent not found")
    if intent.payment_method != gateway.method:
        raise HTTPException(status_code=400, detail=f"Intent {order_id} is for {intent.payment_method} payments")
    try:
        claim_intent(db, order_id)
        handle = gateway.create_payment(intent, **options)
    except PaymentError as e:
        if not isinstance(e, IntentAlreadyUsed):
            set_intent_state(db, order_id, STATE_FAILED)
        raise _http_error(e)
    set_intent_state(db, order_id, STATE_PROCESSING, processor_payment_id=handle.payment_id)
    return handle.to_dict()


@router.get("/payments/currencies")
def supported_currencies(gateway=Depends(get_optional_crypto_gateway)):
    if gateway is None:
        logger.warning("crypto_currencies_fallback", reason="not_configured")
        return {"currencies": POPULAR_CURRENCIES}
    try:
        return {"currencies": gateway.list_currencies()}
    except PaymentError as e:
        logger.warning("crypto_currencies_fallback", reason=str(e))
        return {"currencies": POPULAR_CURRENCIES, "fallback": True}


@router.get("/payments/estimate")
def estimate(amount: float, currency_from: str, currency_to: str, gateway=Depends(get_crypto_gateway)):
    try:
        return gateway.estimate_price(amount, currency_from, currency_to)
    except PaymentError as e:
        raise _http_error(e)


@router.get("/payments/min-amount")
def min_amount(currency_from: str, currency_to: str, gateway=Depends(get_crypto_gateway)):
    try:
        return gateway.min_amount(currency_from, currency_to)
    except PaymentError as e:
        raise _http_error(e)


@router.post("/payments/intents")
def create_intent_api(request: IntentRequest, account_id=Depends(verify_token)):
    db = SessionLocal()
    try:
        intent = create_intent(
            db,
            get_settings(),
            account_id,
            request.payment_method,
            billing_cycle=request.billing_cycle,
            plan_id=request.plan_id,
            invoice_id=request.invoice_id,
        )
    except NoPaymentRequired as e:
        return {"payment_required": False, "plan_id": request.plan_id, "message": str(e)}
    except (PaymentError, KeyError) as e:
        raise _http_error(e)
    finally:
        db.close()

    return {"payment_required": True, **intent.to_dict()}


@router.post("/payments/intents/{order_id}/abandon")
def abandon_intent(order_id: str, account_id=Depends(verify_token)):
    db = SessionLocal()
    try:
        record = get_intent_record(db, order_id, account_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Payment intent not found")
        changed = set_intent_state(db, order_id, STATE_ABANDONED)
        db.refresh(record)
        return {"order_id": order_id, "state": record.state, "changed": changed}
    finally:
        db.close()


@router.post("/payments/crypto")
def create_crypto_payment(
    request: CryptoPaymentRequest,
    account_id=Depends(verify_token),
    gateway=Depends(get_crypto_gateway),
):
    db = SessionLocal()
    try:
        return _start_processor_payment(db, gateway, request.order_id, account_id, pay_currency=request.pay_currency)
    finally:
        db.close()


@router.get("/payments/crypto/{payment_id}/status")
def crypto_payment_status(payment_id: str, gateway=Depends(get_crypto_gateway)):
    try:
        return gateway.get_status(payment_id).to_dict()
    except PaymentError as e:
        raise _http_error(e)


@router.post("/payments/verify")
def verify_crypto_payment(
    request: CryptoVerifyRequest,
    account_id=Depends(verify_token),
    gateway=Depends(get_crypto_gateway),
    oracle_engine=Depends(get_oracle_engine),
):
    db = SessionLocal()
    try:
        report, result = verify_payment(db, gateway, request.payment_id, oracle_engine)
    except PaymentError as e:
        raise _http_error(e)
    finally:
        db.close()

    return {**result.to_dict(), "order_id": report.order_id}


@router.post("/payments/card/initialize")
def initialize_card_payment(
    request: CardPaymentRequest,
    account_id=Depends(verify_token),
    gateway=Depends(get_card_gateway),
):
    db = SessionLocal()
    try:
        return _start_processor_payment(db, gateway, request.order_id, account_id, email=request.email)
    finally:
        db.close()


@router.get("/payments/card/{reference}/status")
def card_payment_status(reference: str, gateway=Depends(get_card_gateway)):
    try:
        return gateway.get_status(reference).to_dict()
    except PaymentError as e:
        raise _http_error(e)


@router.post("/payments/card/verify")
def verify_card_payment(
    request: CardVerifyRequest,
    account_id=Depends(verify_token),
    gateway=Depends(get_card_gateway),
    oracle_engine=Depends(get_oracle_engine),
):
    db = SessionLocal()
    try:
        report, result = verify_payment(
            db,
            gateway,
            request.reference,
            oracle_engine,
            invoice_id=request.invoice_id,
            payment_type=request.payment_type,
        )
    except PaymentError as e:
        raise _http_error(e)
    finally:
        db.close()

    return {
        **result.to_dict(),
        "reference": report.payment_id,
        "amount": report.amount,
        "currency": report.currency,
        "metadata": report.metadata,
    }


@router.post("/invoices")
def create_invoice_api(request: InvoiceRequest, account_id=Depends(verify_token)):
    if request.amount < 0:
        raise HTTPException(status_code=400, detail="Amount must not be negative")
    db = SessionLocal()
    try:
        invoice = create_invoice(
            db, account_id, request.amount, request.currency, request.metadata, request.due_days
        )
        return invoice.to_dict()
    finally:
        db.close()


@router.get("/invoices")
def list_invoices_api(account_id=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"invoices": [invoice.to_dict() for invoice in list_invoices(db, account_id)]}
    finally:
        db.close()


@router.get("/invoices/{invoice_id}")
def get_invoice_api(invoice_id: str, account_id=Depends(verify_token)):
    db = SessionLocal()
    try:
        return get_invoice(db, invoice_id, account_id=account_id).to_dict()
    except InvoiceNotFound as e:
        raise _http_error(e)
    finally:
        db.close()


@router.put("/invoices/{invoice_id}/status")
def update_invoice_status(invoice_id: str, request: InvoiceStatusRequest, account_id=Depends(verify_token)):
    db = SessionLocal()
    try:
        get_invoice(db, invoice_id, account_id=account_id)
        invoice, changed = transition_invoice(
            db, invoice_id, request.status, payment_id=request.payment_id, paid_at=request.paid_at
        )
        return {**invoice.to_dict(), "changed": changed}
    except PaymentError as e:
        raise _http_error(e)
    finally:
        db.close()
