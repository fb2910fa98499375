import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _as_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret: str | None
    nowpayments_api_key: str | None
    nowpayments_ipn_secret: str | None
    nowpayments_sandbox: bool
    paystack_secret_key: str | None
    paystack_currency: str
    oracle_engine_url: str
    public_base_url: str
    processor_timeout: float
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            jwt_secret=os.getenv("JWT_SECRET"),
            nowpayments_api_key=os.getenv("NOWPAYMENTS_API_KEY"),
            nowpayments_ipn_secret=os.getenv("NOWPAYMENTS_IPN_SECRET"),
            nowpayments_sandbox=_as_bool(os.getenv("NOWPAYMENTS_SANDBOX")),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY"),
            paystack_currency=os.getenv("PAYSTACK_CURRENCY", "NGN"),
            oracle_engine_url=os.getenv("ORACLE_ENGINE_URL", "http://localhost:8000").rstrip("/"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/"),
            processor_timeout=float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "10")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
