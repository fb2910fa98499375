"""Bounded, cancellable status polling.

The poller issues one status request at a time. A terminal status or an
exhausted attempt budget ends the loop; a failed request does not, because a
single bad response must not abandon a payment that is really in flight.

The final result is delivered through ``wait()`` as a ``PollOutcome``.
Callbacks are optional and synchronous.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import structlog

from oracle_payments.domain import PaymentStatusReport
from oracle_payments.errors import PaymentError, PollingTimeout

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_ATTEMPTS = 180


class PollState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    attempts: int
    report: Optional[PaymentStatusReport] = None
    error: Optional[PaymentError] = None


class StatusPoller:
    def __init__(
        self,
        payment_id: str,
        fetch_status: Callable[[], Awaitable[PaymentStatusReport]],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_status_change: Optional[Callable[[PaymentStatusReport], None]] = None,
        on_complete: Optional[Callable[[PaymentStatusReport], None]] = None,
        on_error: Optional[Callable[[PaymentError], None]] = None,
        on_soft_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.payment_id = payment_id
        self.fetch_status = fetch_status
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.on_status_change = on_status_change
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_soft_error = on_soft_error

        self.state = PollState.IDLE
        self.attempts = 0
        self.last_report: Optional[PaymentStatusReport] = None
        self.soft_errors: List[Exception] = []
        self._task: Optional[asyncio.Task] = None
        self._result: Optional[asyncio.Future] = None

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("poller already started")
        self._result = asyncio.get_running_loop().create_future()
        self.state = PollState.RUNNING
        self._task = asyncio.create_task(self._run())

    async def wait(self) -> PollOutcome:
        if self._result is None:
            raise RuntimeError("poller not started")
        return await asyncio.shield(self._result)

    def stop(self) -> None:
        """Cancel any scheduled poll. Safe to call repeatedly and after completion."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self.state in (PollState.IDLE, PollState.RUNNING):
            self._finish(PollOutcome(PollState.STOPPED, self.attempts, self.last_report))

    async def join(self) -> None:
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    @property
    def running(self) -> bool:
        return self.state == PollState.RUNNING

    def _finish(self, outcome: PollOutcome) -> None:
        self.state = outcome.state
        if self._result is not None and not self._result.done():
            self._result.set_result(outcome)

    def _notify(self, callback, arg) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("payment_poll_callback_failed", payment_id=self.payment_id)

    async def _run(self) -> None:
        try:
            await self._poll()
        finally:
            # Cancellation or a crash must still release anyone waiting.
            if self.state == PollState.RUNNING:
                self._finish(PollOutcome(PollState.STOPPED, self.attempts, self.last_report))

    async def _poll(self) -> None:
        while True:
            try:
                report = await self.fetch_status()
            except Exception as e:
                self.soft_errors.append(e)
                logger.warning("payment_poll_failed", payment_id=self.payment_id,
                               attempt=self.attempts + 1, error=str(e))
                self._notify(self.on_soft_error, e)
            else:
                self.last_report = report
                self._notify(self.on_status_change, report)
                if report.status.is_terminal:
                    logger.info("payment_poll_completed", payment_id=self.payment_id,
                                status=report.status.value)
                    self._finish(PollOutcome(PollState.COMPLETED, self.attempts + 1, report))
                    self._notify(self.on_complete, report)
                    return

            self.attempts += 1
            if self.attempts >= self.max_attempts:
                error = PollingTimeout(self.payment_id, self.attempts)
                logger.info("payment_poll_timed_out", payment_id=self.payment_id, attempts=self.attempts)
                self._finish(PollOutcome(PollState.TIMED_OUT, self.attempts, self.last_report, error))
                self._notify(self.on_error, error)
                return

            await asyncio.sleep(self.poll_interval)
