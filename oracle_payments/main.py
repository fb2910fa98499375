import json

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from oracle_payments.config import get_settings
from oracle_payments.database import Base, engine, SessionLocal
from oracle_payments.dependencies import get_oracle_engine
from oracle_payments.gateways import verify_signature
from oracle_payments.logging_config import setup_logging
from oracle_payments.reconciliation import handle_nowpayments_ipn, handle_paystack_event
from oracle_payments.routes import router

setup_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)

app = FastAPI(title="Oracle Engine Billing Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def _parse_json(payload: bytes):
    try:
        return json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")


def _apply_in_session(handler, payload, oracle_engine):
    db = SessionLocal()
    try:
        return handler(db, payload, oracle_engine)
    finally:
        db.close()


@app.post("/webhooks/nowpayments")
async def nowpayments_webhook(
    request: Request,
    x_nowpayments_sig: str = Header(None),
    oracle_engine=Depends(get_oracle_engine),
):
    payload = await request.body()

    if not verify_signature(get_settings().nowpayments_ipn_secret, payload, x_nowpayments_sig):
        logger.warning("webhook_signature_invalid", processor="nowpayments")
        raise HTTPException(status_code=401, detail="Invalid signature")

    data = _parse_json(payload)
    logger.info("webhook_received", processor="nowpayments",
                payment_id=data.get("payment_id"), payment_status=data.get("payment_status"))

    try:
        result = await run_in_threadpool(_apply_in_session, handle_nowpayments_ipn, data, oracle_engine)
    except (KeyError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid payload")

    return {"success": True, "action": result.action}


@app.post("/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str = Header(None),
    oracle_engine=Depends(get_oracle_engine),
):
    payload = await request.body()

    if not verify_signature(get_settings().paystack_secret_key, payload, x_paystack_signature):
        logger.warning("webhook_signature_invalid", processor="paystack")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = _parse_json(payload)
    logger.info("webhook_received", processor="paystack", paystack_event=event.get("event"))

    result = await run_in_threadpool(_apply_in_session, handle_paystack_event, event, oracle_engine)

    return {"received": True, "action": result.action if result else None}
