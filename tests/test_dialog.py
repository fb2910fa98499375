import asyncio

import pytest

from oracle_payments.dialog import (
    DialogErrorKind,
    DialogStep,
    PaymentDialog,
)
from oracle_payments.domain import CARD, CRYPTO, PaymentStatus, PaymentStatusReport, ProcessorPaymentHandle
from oracle_payments.errors import ProcessorRejected, ProcessorUnavailable, VerificationFailed
from oracle_payments.gateways import POPULAR_CURRENCIES, PaystackGateway


class FakeBillingClient:
    def __init__(self, statuses=(PaymentStatus.WAITING,), currencies=None, payment_required=True):
        self.statuses = list(statuses)
        self.currencies = currencies if currencies is not None else ["btc", "eth", "usdt", "doge"]
        self.payment_required = payment_required
        self.create_errors = []
        self.verify_error = None
        self.order_ids = []
        self.abandoned = []
        self.verified = []
        self.status_calls = 0
        self.card_emails = []

    async def list_currencies(self):
        if isinstance(self.currencies, Exception):
            raise self.currencies
        return self.currencies

    async def create_intent(self, method, plan_id=None, billing_cycle="monthly", invoice_id=None):
        if self.create_errors:
            raise self.create_errors.pop(0)
        if not self.payment_required:
            return {"payment_required": False, "plan_id": plan_id}
        order_id = f"sub_{plan_id}_{len(self.order_ids) + 1}"
        self.order_ids.append(order_id)
        return {"payment_required": True, "order_id": order_id, "payment_method": method}

    async def create_crypto_payment(self, order_id, pay_currency):
        return ProcessorPaymentHandle(
            processor="nowpayments", payment_method=CRYPTO, order_id=order_id,
            payment_id=f"pay-{order_id}", pay_address="bc1qaddress", pay_amount="0.00081",
            pay_currency=pay_currency,
        )

    async def initialize_card_payment(self, order_id, email):
        self.card_emails.append(email)
        return ProcessorPaymentHandle(
            processor="paystack", payment_method=CARD, order_id=order_id, payment_id=order_id,
            authorization_url="https://checkout.paystack.com/abc",
        )

    async def get_status(self, handle):
        status = self.statuses[min(self.status_calls, len(self.statuses) - 1)]
        self.status_calls += 1
        return PaymentStatusReport(payment_id=handle.payment_id, status=status, order_id=handle.order_id)

    async def verify(self, handle):
        self.verified.append(handle.payment_id)
        if self.verify_error:
            raise self.verify_error
        return {"success": True}

    async def abandon_intent(self, order_id):
        self.abandoned.append(order_id)
        return {"order_id": order_id, "state": "abandoned"}


async def settle(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def make_dialog(client, **kwargs):
    kwargs.setdefault("plan_id", "developer")
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("max_attempts", 50)
    kwargs.setdefault("tick", 0.01)
    return PaymentDialog(client, **kwargs)


@pytest.mark.asyncio
async def test_open_filters_currencies():
    dialog = make_dialog(FakeBillingClient(currencies=["doge", "eth", "btc"]))

    await dialog.open()

    assert dialog.currencies == ["btc", "eth"]
    assert dialog.selected_currency == "btc"
    with pytest.raises(ValueError):
        dialog.select_currency("doge")
    dialog.select_currency("ETH")
    assert dialog.selected_currency == "eth"


@pytest.mark.asyncio
async def test_open_falls_back_when_currencies_unavailable():
    dialog = make_dialog(FakeBillingClient(currencies=ProcessorUnavailable("down")))

    await dialog.open()

    assert dialog.currencies == POPULAR_CURRENCIES


@pytest.mark.asyncio
async def test_crypto_payment_confirms_once(mocker):
    client = FakeBillingClient([PaymentStatus.WAITING, PaymentStatus.WAITING, PaymentStatus.FINISHED])
    on_success = mocker.Mock()
    dialog = make_dialog(client, on_success=on_success)
    await dialog.open()

    handle = await dialog.create_payment()

    assert handle.pay_address == "bc1qaddress"
    assert dialog.step == DialogStep.PAYMENT
    assert dialog.time_remaining > 0
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    on_success.assert_called_once()
    assert on_success.call_args.args[0].status == PaymentStatus.FINISHED
    assert client.verified == [handle.payment_id]
    assert client.status_calls == 3
    assert client.abandoned == []
    assert dialog.step == DialogStep.CLOSED


@pytest.mark.asyncio
async def test_lost_verify_still_confirms(mocker):
    client = FakeBillingClient([PaymentStatus.CONFIRMED])
    client.verify_error = ProcessorUnavailable("502")
    on_success = mocker.Mock()
    dialog = make_dialog(client, on_success=on_success)

    await dialog.create_payment()
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    on_success.assert_called_once()


@pytest.mark.asyncio
async def test_card_payment_uses_email():
    client = FakeBillingClient([PaymentStatus.FINISHED])
    dialog = make_dialog(client, method=CARD, email="dev@example.com")

    handle = await dialog.create_payment()
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    assert handle.authorization_url == "https://checkout.paystack.com/abc"
    assert client.card_emails == ["dev@example.com"]


@pytest.mark.asyncio
async def test_free_plan_skips_processors(mocker):
    client = FakeBillingClient(payment_required=False)
    on_success = mocker.Mock()
    dialog = make_dialog(client, plan_id="free", on_success=on_success)

    assert await dialog.create_payment() is None

    assert dialog.step == DialogStep.CONFIRMATION
    on_success.assert_called_once_with(None)
    assert client.status_calls == 0


@pytest.mark.asyncio
async def test_poll_timeout_leaves_payment_open_for_refresh(mocker):
    client = FakeBillingClient([PaymentStatus.WAITING])
    on_success = mocker.Mock()
    dialog = make_dialog(client, max_attempts=3, on_success=on_success)

    await dialog.create_payment()
    await settle(lambda: dialog.timed_out)

    assert dialog.step == DialogStep.PAYMENT
    assert dialog.error.kind == DialogErrorKind.TIMEOUT
    assert "still pending" in dialog.error.message
    assert client.status_calls == 3
    on_success.assert_not_called()

    # The webhook settled it in the meantime.
    client.statuses = [PaymentStatus.FINISHED]
    report = await dialog.refresh_status()

    assert report.status == PaymentStatus.FINISHED
    assert dialog.step == DialogStep.CONFIRMATION
    on_success.assert_called_once()
    await dialog.close()


@pytest.mark.asyncio
async def test_failed_payment_then_retry_uses_new_order():
    client = FakeBillingClient([PaymentStatus.EXPIRED])
    dialog = make_dialog(client)

    first = await dialog.create_payment()
    await settle(lambda: dialog.error is not None)

    assert dialog.error.kind == DialogErrorKind.PAYMENT_FAILED
    assert dialog.error.message == "Payment expired. Please try again."

    await dialog.retry()
    assert dialog.step == DialogStep.SELECT
    assert dialog.error is None

    client.statuses = [PaymentStatus.FINISHED]
    client.status_calls = 0
    second = await dialog.create_payment()
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    assert first.order_id != second.order_id
    assert client.order_ids == [first.order_id, second.order_id]


@pytest.mark.asyncio
async def test_create_failure_is_shown_and_retryable():
    client = FakeBillingClient([PaymentStatus.FINISHED])
    client.create_errors = [ProcessorUnavailable("nowpayments API Error: 503"),
                            ProcessorRejected("pay_currency is invalid")]
    dialog = make_dialog(client)

    assert await dialog.create_payment() is None
    assert dialog.step == DialogStep.SELECT
    assert dialog.error.kind == DialogErrorKind.CREATE_FAILED
    assert dialog.error.retryable

    assert await dialog.create_payment() is None
    assert not dialog.error.retryable

    assert await dialog.create_payment() is not None
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()


@pytest.mark.asyncio
async def test_cancel_abandons_attempt():
    client = FakeBillingClient([PaymentStatus.WAITING])
    dialog = make_dialog(client, poll_interval=0.01, max_attempts=1000)

    handle = await dialog.create_payment()
    await dialog.cancel()
    calls = client.status_calls
    await asyncio.sleep(0.05)

    assert client.abandoned == [handle.order_id]
    assert dialog.step == DialogStep.SELECT
    assert dialog.handle is None
    assert client.status_calls == calls


@pytest.mark.asyncio
async def test_countdown_expiry_does_not_stop_polling(mocker):
    client = FakeBillingClient([PaymentStatus.WAITING])
    on_success = mocker.Mock()
    dialog = make_dialog(client, payment_window=2, poll_interval=0.01, max_attempts=1000, on_success=on_success)

    handle = await dialog.create_payment()
    await settle(lambda: dialog.error is not None)

    assert dialog.error.kind == DialogErrorKind.EXPIRED
    assert dialog.time_remaining == 0
    assert client.abandoned == [handle.order_id]
    assert dialog.poller.running

    # A late payment is still picked up.
    client.statuses = [PaymentStatus.FINISHED]
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    on_success.assert_called_once()
    assert dialog.error is None


@pytest.mark.asyncio
async def test_refresh_reports_status_check_failure():
    client = FakeBillingClient([PaymentStatus.WAITING])
    dialog = make_dialog(client, poll_interval=0.01, max_attempts=1000)
    await dialog.create_payment()

    async def broken(handle):
        raise VerificationFailed("pay", "unknown")

    client.get_status = broken
    assert await dialog.refresh_status() is None
    assert dialog.error.kind == DialogErrorKind.STATUS_CHECK
    await dialog.close()


@pytest.mark.asyncio
async def test_actions_require_the_right_step():
    dialog = make_dialog(FakeBillingClient(payment_required=False))

    with pytest.raises(RuntimeError):
        await dialog.refresh_status()
    await dialog.create_payment()
    with pytest.raises(RuntimeError):
        dialog.select_method(CARD)
    await dialog.close()
    assert dialog.step == DialogStep.CLOSED


@pytest.mark.asyncio
async def test_card_checkout_in_progress_keeps_polling(mocker):
    in_checkout = PaystackGateway.normalize_status("abandoned")
    client = FakeBillingClient([in_checkout, in_checkout, PaystackGateway.normalize_status("success")])
    on_success = mocker.Mock()
    dialog = make_dialog(client, method=CARD, email="dev@example.com", on_success=on_success)

    await dialog.create_payment()
    await settle(lambda: dialog.step == DialogStep.CONFIRMATION)
    await dialog.close()

    assert client.status_calls == 3
    assert client.abandoned == []
    on_success.assert_called_once()


@pytest.mark.asyncio
async def test_open_keeps_every_currency_the_server_offers():
    dialog = make_dialog(FakeBillingClient(currencies=["usdcbase", "btc"]))

    await dialog.open()
    dialog.select_currency("usdcbase")

    assert dialog.currencies == ["usdcbase", "btc"]
    assert dialog.selected_currency == "usdcbase"
