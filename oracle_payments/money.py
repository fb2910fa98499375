"""Amount conversion and display helpers.

Invoices and intents always carry integer minor units. Conversion to major
units happens only where a processor or a human needs it.
"""

from decimal import Decimal, ROUND_HALF_UP

from oracle_payments.domain import PaymentStatus

MINOR_PER_MAJOR = 100

CRYPTO_DECIMALS = {
    "btc": 8,
    "eth": 6,
    "usdt": 2,
    "usdc": 2,
    "usdcbase": 2,
    "ltc": 8,
    "ada": 6,
    "matic": 4,
    "bnb": 4,
}

STATUS_TEXT = {
    PaymentStatus.WAITING: "Waiting for Payment",
    PaymentStatus.CONFIRMING: "Confirming Payment",
    PaymentStatus.CONFIRMED: "Payment Confirmed",
    PaymentStatus.SENDING: "Sending Payment",
    PaymentStatus.PARTIALLY_PAID: "Partially Paid",
    PaymentStatus.FINISHED: "Payment Complete",
    PaymentStatus.FAILED: "Payment Failed",
    PaymentStatus.REFUNDED: "Payment Refunded",
    PaymentStatus.EXPIRED: "Payment Expired",
}


def to_major_units(minor: int) -> Decimal:
    return (Decimal(int(minor)) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))


def to_minor_units(major) -> int:
    value = Decimal(str(major)) * MINOR_PER_MAJOR
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_crypto_decimals(currency: str) -> int:
    return CRYPTO_DECIMALS.get(currency.lower(), 8)


def format_currency(amount, currency: str) -> str:
    if currency.lower() == "usd":
        return f"${Decimal(str(amount)).quantize(Decimal('0.01')):,}"
    places = get_crypto_decimals(currency)
    quantum = Decimal(1).scaleb(-places)
    return f"{Decimal(str(amount)).quantize(quantum)} {currency.upper()}"


def format_minor(minor: int, currency: str) -> str:
    return format_currency(to_major_units(minor), currency)


def get_status_text(status) -> str:
    try:
        return STATUS_TEXT[PaymentStatus(status)]
    except ValueError:
        return "Unknown Status"


def format_countdown(seconds: int) -> str:
    minutes, remainder = divmod(max(int(seconds), 0), 60)
    return f"{minutes}:{remainder:02d}"
