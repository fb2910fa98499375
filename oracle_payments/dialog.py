"""Payment dialog state machine: select -> payment -> confirmation.

The dialog owns two client-side timers while a payment is on screen: a 1 Hz
countdown for the advertised payment window and the status poller. Neither
of them has any authority over the payment itself. Closing the dialog, the
countdown running out, or the poller giving up only change what the user
sees; the webhook can still settle the invoice afterwards.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog

from oracle_payments.domain import CARD, CRYPTO, PaymentStatusReport, ProcessorPaymentHandle
from oracle_payments.errors import PaymentError
from oracle_payments.gateways import POPULAR_CURRENCIES
from oracle_payments.poller import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL, PollState, StatusPoller

logger = structlog.get_logger(__name__)

PAYMENT_WINDOW_SECONDS = 15 * 60


class DialogStep(str, Enum):
    SELECT = "select"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"
    CLOSED = "closed"


class DialogErrorKind(str, Enum):
    CREATE_FAILED = "create_failed"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"
    TIMEOUT = "timeout"
    STATUS_CHECK = "status_check"


@dataclass(frozen=True)
class DialogError:
    kind: DialogErrorKind
    message: str
    retryable: bool = True


class PaymentDialog:
    def __init__(
        self,
        client,
        plan_id: Optional[str] = None,
        billing_cycle: str = "monthly",
        method: str = CRYPTO,
        email: Optional[str] = None,
        invoice_id: Optional[str] = None,
        on_success: Optional[Callable[[Optional[PaymentStatusReport]], None]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        payment_window: int = PAYMENT_WINDOW_SECONDS,
        tick: float = 1.0,
    ):
        self.client = client
        self.plan_id = plan_id
        self.billing_cycle = billing_cycle
        self.method = method
        self.email = email
        self.invoice_id = invoice_id
        self.on_success = on_success
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.payment_window = payment_window
        self.tick = tick

        self.step = DialogStep.SELECT
        self.currencies: List[str] = []
        self.selected_currency = "btc"
        self._reset_payment()

    def _reset_payment(self) -> None:
        self.order_id: Optional[str] = None
        self.handle: Optional[ProcessorPaymentHandle] = None
        self.status: Optional[PaymentStatusReport] = None
        self.error: Optional[DialogError] = None
        self.time_remaining = 0
        self.poller: Optional[StatusPoller] = None
        self._countdown: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._succeeded = False

    async def open(self) -> None:
        """Load the currency list; falls back to the built-in list on failure."""
        try:
            available = await self.client.list_currencies()
        except PaymentError as e:
            logger.warning("currency_list_unavailable", error=str(e))
            available = list(POPULAR_CURRENCIES)
        self.currencies = [c for c in POPULAR_CURRENCIES if c in available] or list(available)
        if self.currencies and self.selected_currency not in self.currencies:
            self.selected_currency = self.currencies[0]

    def select_currency(self, code: str) -> None:
        self._require(DialogStep.SELECT)
        code = code.lower()
        if self.currencies and code not in self.currencies:
            raise ValueError(f"Unsupported currency: {code}")
        self.selected_currency = code

    def select_method(self, method: str) -> None:
        self._require(DialogStep.SELECT)
        if method not in (CRYPTO, CARD):
            raise ValueError(f"Unsupported payment method: {method}")
        self.method = method

    def _require(self, step: DialogStep) -> None:
        if self.step != step:
            raise RuntimeError(f"dialog is in {self.step.value}, expected {step.value}")

    async def create_payment(self) -> Optional[ProcessorPaymentHandle]:
        self._require(DialogStep.SELECT)
        self.error = None
        try:
            intent = await self.client.create_intent(
                self.method, plan_id=self.plan_id, billing_cycle=self.billing_cycle, invoice_id=self.invoice_id
            )
            if not intent.get("payment_required", True):
                # Free plans never reach a processor.
                self._succeed(None)
                return None
            self.order_id = intent["order_id"]
            if self.method == CARD:
                handle = await self.client.initialize_card_payment(self.order_id, self.email or "")
            else:
                handle = await self.client.create_crypto_payment(self.order_id, self.selected_currency)
        except PaymentError as e:
            logger.warning("payment_create_failed", plan_id=self.plan_id, error=str(e))
            self.error = DialogError(DialogErrorKind.CREATE_FAILED, str(e), retryable=e.retryable)
            return None

        self.handle = handle
        self.step = DialogStep.PAYMENT
        self.time_remaining = self.payment_window
        self._countdown = asyncio.create_task(self._run_countdown())
        self._start_polling()
        logger.info("payment_dialog_presenting", order_id=self.order_id, payment_id=handle.payment_id)
        return handle

    def _start_polling(self) -> None:
        handle = self.handle

        async def fetch():
            return await self.client.get_status(handle)

        self.poller = StatusPoller(
            handle.payment_id,
            fetch,
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
            on_status_change=self._on_status_change,
        )
        self.poller.start()
        self._watcher = asyncio.create_task(self._watch(self.poller))

    def _on_status_change(self, report: PaymentStatusReport) -> None:
        self.status = report

    async def _watch(self, poller: StatusPoller) -> None:
        outcome = await poller.wait()
        if poller is not self.poller or self.step != DialogStep.PAYMENT:
            return
        if outcome.state == PollState.COMPLETED:
            await self._on_terminal(outcome.report)
        elif outcome.state == PollState.TIMED_OUT:
            self.error = DialogError(DialogErrorKind.TIMEOUT, str(outcome.error))

    async def _on_terminal(self, report: PaymentStatusReport) -> None:
        self.status = report
        if report.status.is_success:
            await self._confirm(report)
        else:
            self._stop_timers()
            self.error = DialogError(
                DialogErrorKind.PAYMENT_FAILED,
                f"Payment {report.status.value}. Please try again.",
            )

    async def _confirm(self, report: PaymentStatusReport) -> None:
        if self._succeeded:
            return
        self._succeeded = True
        self._stop_timers()
        try:
            await self.client.verify(self.handle)
        except PaymentError as e:
            # The webhook settles the invoice if this call is lost.
            logger.warning("payment_verify_failed", payment_id=self.handle.payment_id, error=str(e))
        self._succeed(report)

    def _succeed(self, report: Optional[PaymentStatusReport]) -> None:
        self._succeeded = True
        self.step = DialogStep.CONFIRMATION
        self.error = None
        if self.on_success:
            self.on_success(report)

    async def _run_countdown(self) -> None:
        while self.time_remaining > 0:
            await asyncio.sleep(self.tick)
            self.time_remaining -= 1
        if self.step == DialogStep.PAYMENT and not self._succeeded:
            self.error = DialogError(DialogErrorKind.EXPIRED, "Payment time expired. Please create a new payment.")
            await self._abandon()

    async def _abandon(self) -> None:
        if not self.order_id:
            return
        try:
            await self.client.abandon_intent(self.order_id)
        except PaymentError as e:
            logger.warning("payment_abandon_failed", order_id=self.order_id, error=str(e))

    async def refresh_status(self) -> Optional[PaymentStatusReport]:
        """One status check on demand; the poller's budget is left alone."""
        self._require(DialogStep.PAYMENT)
        try:
            report = await self.client.get_status(self.handle)
        except PaymentError as e:
            self.error = DialogError(
                DialogErrorKind.STATUS_CHECK,
                "Failed to check payment status. Please try again shortly.",
            )
            logger.warning("payment_refresh_failed", payment_id=self.handle.payment_id, error=str(e))
            return None
        self.status = report
        if report.status.is_terminal:
            await self._on_terminal(report)
        return report

    def _stop_timers(self) -> None:
        current = asyncio.current_task()
        if self.poller is not None:
            self.poller.stop()
        for task in (self._countdown, self._watcher):
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def _drain(self) -> None:
        current = asyncio.current_task()
        if self.poller is not None:
            await self.poller.join()
        for task in (self._countdown, self._watcher):
            if task is not None and task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def retry(self) -> None:
        """Back to method selection; the next attempt gets a new order id."""
        self._stop_timers()
        await self._drain()
        self.step = DialogStep.SELECT
        self._reset_payment()

    async def cancel(self) -> None:
        """Discard the on-screen payment. The processor payment is left alone."""
        was_presenting = self.step == DialogStep.PAYMENT and not self._succeeded
        self._stop_timers()
        await self._drain()
        if was_presenting:
            await self._abandon()
        self.step = DialogStep.SELECT
        self._reset_payment()

    async def close(self) -> None:
        if self.step == DialogStep.PAYMENT:
            await self.cancel()
        else:
            self._stop_timers()
            await self._drain()
        self.step = DialogStep.CLOSED

    @property
    def timed_out(self) -> bool:
        return self.error is not None and self.error.kind == DialogErrorKind.TIMEOUT

