import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["NOWPAYMENTS_API_KEY"] = "np-test-key"
os.environ["NOWPAYMENTS_IPN_SECRET"] = "np-ipn-secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack"
os.environ["PUBLIC_BASE_URL"] = "https://dashboard.test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from oracle_payments.database import Base
from oracle_payments.domain import CARD, CRYPTO
from oracle_payments.gateways import NowPaymentsGateway, PaystackGateway
from oracle_payments.oracle_engine import OracleEngineClient
import oracle_payments.auth
import oracle_payments.dependencies

ACCOUNT_ID = "acct_123"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    from oracle_payments.config import get_settings
    return get_settings()


@pytest.fixture
def crypto_gateway(mocker):
    gateway = mocker.Mock(spec=NowPaymentsGateway)
    gateway.name = "nowpayments"
    gateway.method = CRYPTO
    return gateway


@pytest.fixture
def card_gateway(mocker):
    gateway = mocker.Mock(spec=PaystackGateway)
    gateway.name = "paystack"
    gateway.method = CARD
    return gateway


@pytest.fixture
def oracle_engine(mocker):
    return mocker.Mock(spec=OracleEngineClient)


@pytest.fixture
def client(monkeypatch, crypto_gateway, card_gateway, oracle_engine):
    from oracle_payments.main import app as fastapi_app

    # Point every session factory at the test database
    monkeypatch.setattr("oracle_payments.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("oracle_payments.main.SessionLocal", TestingSessionLocal)

    overrides = fastapi_app.dependency_overrides
    overrides[oracle_payments.auth.verify_token] = lambda: ACCOUNT_ID
    overrides[oracle_payments.dependencies.get_crypto_gateway] = lambda: crypto_gateway
    overrides[oracle_payments.dependencies.get_optional_crypto_gateway] = lambda: crypto_gateway
    overrides[oracle_payments.dependencies.get_card_gateway] = lambda: card_gateway
    overrides[oracle_payments.dependencies.get_oracle_engine] = lambda: oracle_engine

    with TestClient(fastapi_app) as c:
        yield c

    overrides.clear()
