import asyncio

import pytest

from oracle_payments.domain import PaymentStatus, PaymentStatusReport
from oracle_payments.errors import PollingTimeout, ProcessorUnavailable
from oracle_payments.poller import PollState, StatusPoller


def report(status):
    return PaymentStatusReport(payment_id="pay-1", status=status)


class ScriptedStatus:
    """Returns (or raises) one scripted item per call, repeating the last one."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def __call__(self):
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return report(item)


@pytest.mark.asyncio
async def test_stops_at_first_terminal_status(mocker):
    fetch = ScriptedStatus(PaymentStatus.WAITING, PaymentStatus.WAITING, PaymentStatus.CONFIRMING,
                           PaymentStatus.FINISHED)
    on_complete = mocker.Mock()
    seen = []
    poller = StatusPoller("pay-1", fetch, poll_interval=0, max_attempts=10,
                          on_status_change=lambda r: seen.append(r.status), on_complete=on_complete)

    poller.start()
    outcome = await poller.wait()
    await poller.join()

    assert outcome.state == PollState.COMPLETED
    assert outcome.report.status == PaymentStatus.FINISHED
    assert outcome.attempts == 4
    assert fetch.calls == 4
    assert seen[-1] == PaymentStatus.FINISHED
    on_complete.assert_called_once()
    assert not poller.running


@pytest.mark.asyncio
async def test_failed_status_is_terminal_too():
    poller = StatusPoller("pay-1", ScriptedStatus(PaymentStatus.EXPIRED), poll_interval=0)

    poller.start()
    outcome = await poller.wait()

    assert outcome.state == PollState.COMPLETED
    assert outcome.report.status == PaymentStatus.EXPIRED


@pytest.mark.asyncio
async def test_times_out_exactly_once(mocker):
    fetch = ScriptedStatus(PaymentStatus.WAITING)
    on_error = mocker.Mock()
    on_complete = mocker.Mock()
    poller = StatusPoller("pay-1", fetch, poll_interval=0, max_attempts=5,
                          on_error=on_error, on_complete=on_complete)

    poller.start()
    outcome = await poller.wait()
    await poller.join()

    assert outcome.state == PollState.TIMED_OUT
    assert outcome.attempts == 5
    assert fetch.calls == 5
    assert isinstance(outcome.error, PollingTimeout)
    assert "still pending" in str(outcome.error)
    on_error.assert_called_once_with(outcome.error)
    on_complete.assert_not_called()


@pytest.mark.asyncio
async def test_request_errors_do_not_end_polling(mocker):
    fetch = ScriptedStatus(ProcessorUnavailable("502"), ValueError("bad json"), PaymentStatus.FINISHED)
    on_soft_error = mocker.Mock()
    on_error = mocker.Mock()
    poller = StatusPoller("pay-1", fetch, poll_interval=0, max_attempts=10,
                          on_soft_error=on_soft_error, on_error=on_error)

    poller.start()
    outcome = await poller.wait()

    assert outcome.state == PollState.COMPLETED
    assert len(poller.soft_errors) == 2
    assert on_soft_error.call_count == 2
    on_error.assert_not_called()


@pytest.mark.asyncio
async def test_errors_still_count_against_the_budget():
    poller = StatusPoller("pay-1", ScriptedStatus(ProcessorUnavailable("down")), poll_interval=0, max_attempts=3)

    poller.start()
    outcome = await poller.wait()

    assert outcome.state == PollState.TIMED_OUT
    assert outcome.report is None


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_prevents_further_requests():
    fetch = ScriptedStatus(PaymentStatus.WAITING)
    poller = StatusPoller("pay-1", fetch, poll_interval=0.01, max_attempts=1000)

    poller.start()
    await asyncio.sleep(0.05)
    poller.stop()
    poller.stop()
    outcome = await poller.wait()
    await poller.join()
    calls = fetch.calls
    await asyncio.sleep(0.05)

    assert outcome.state == PollState.STOPPED
    assert fetch.calls == calls
    assert poller.state == PollState.STOPPED


@pytest.mark.asyncio
async def test_stop_after_completion_keeps_outcome():
    poller = StatusPoller("pay-1", ScriptedStatus(PaymentStatus.FINISHED), poll_interval=0)

    poller.start()
    outcome = await poller.wait()
    poller.stop()

    assert poller.state == PollState.COMPLETED
    assert (await poller.wait()) == outcome


@pytest.mark.asyncio
async def test_start_and_wait_guards():
    poller = StatusPoller("pay-1", ScriptedStatus(PaymentStatus.FINISHED), poll_interval=0)

    with pytest.raises(RuntimeError):
        await poller.wait()
    poller.start()
    with pytest.raises(RuntimeError):
        poller.start()
    await poller.wait()


@pytest.mark.asyncio
async def test_unexpected_parse_errors_are_soft(mocker):
    fetch = ScriptedStatus(TypeError("unexpected keyword 'extra'"))
    on_error = mocker.Mock()
    poller = StatusPoller("pay-1", fetch, poll_interval=0, max_attempts=3, on_error=on_error)

    poller.start()
    outcome = await asyncio.wait_for(poller.wait(), 1)

    assert outcome.state == PollState.TIMED_OUT
    assert fetch.calls == 3
    assert len(poller.soft_errors) == 3
    on_error.assert_called_once_with(outcome.error)


@pytest.mark.asyncio
async def test_failing_callback_does_not_hang_the_poller(mocker):
    on_complete = mocker.Mock()

    def broken(report):
        raise RuntimeError("render failed")

    poller = StatusPoller("pay-1", ScriptedStatus(PaymentStatus.WAITING, PaymentStatus.FINISHED),
                          poll_interval=0, max_attempts=5, on_status_change=broken, on_complete=on_complete)

    poller.start()
    outcome = await asyncio.wait_for(poller.wait(), 1)
    await poller.join()

    assert outcome.state == PollState.COMPLETED
    on_complete.assert_called_once()
