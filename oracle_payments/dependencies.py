"""Per-request collaborators, built from settings and injected with Depends."""

from fastapi import HTTPException

from oracle_payments.config import get_settings
from oracle_payments.gateways import NowPaymentsGateway, PaystackGateway
from oracle_payments.oracle_engine import OracleEngineClient


def get_crypto_gateway():
    settings = get_settings()
    if not settings.nowpayments_api_key:
        raise HTTPException(status_code=503, detail="Crypto payments are not configured")
    gateway = NowPaymentsGateway(
        settings.nowpayments_api_key,
        sandbox=settings.nowpayments_sandbox,
        timeout=settings.processor_timeout,
    )
    try:
        yield gateway
    finally:
        gateway.close()


def get_optional_crypto_gateway():
    settings = get_settings()
    if not settings.nowpayments_api_key:
        yield None
        return
    yield from get_crypto_gateway()


def get_card_gateway():
    settings = get_settings()
    if not settings.paystack_secret_key:
        raise HTTPException(status_code=503, detail="Paystack not configured. Please contact support.")
    gateway = PaystackGateway(
        settings.paystack_secret_key,
        currency=settings.paystack_currency,
        timeout=settings.processor_timeout,
    )
    try:
        yield gateway
    finally:
        gateway.close()


def get_oracle_engine():
    settings = get_settings()
    client = OracleEngineClient(settings.oracle_engine_url, timeout=settings.processor_timeout)
    try:
        yield client
    finally:
        client.close()
