import asyncio

import pytest

from application.dtos.payments import StkQueryResult
from application.services.payment_poller import PaymentStatusPoller, PollOutcome
from core.settings import payment_settings
from domain.common.exceptions import (
    PaymentDeclinedError,
    PaymentNetworkError,
    PaymentProviderError,
    PaymentTimeoutError,
)


PENDING = {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
PAID = {"ResultCode": "0", "ResultDesc": "The service request is processed successfully."}
DECLINED = {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}


class ScriptedQuery:
    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    async def __call__(self, checkout_request_id: str) -> StkQueryResult:
        self.calls += 1
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return StkQueryResult.from_provider(checkout_request_id, step)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_polls_until_success():
    query = ScriptedQuery(PENDING, PENDING, PAID)
    sleep = RecordingSleep()
    poller = PaymentStatusPoller(query, interval_seconds=3.0, max_attempts=20, sleep=sleep)

    result = await poller.wait_for_result("ws_CO_1")

    assert result.outcome == PollOutcome.SUCCEEDED
    assert result.attempts == 3
    assert query.calls == 3
    assert sleep.delays == [3.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_declined_result_stops_immediately():
    query = ScriptedQuery(DECLINED, PAID)
    poller = PaymentStatusPoller(query, max_attempts=20, sleep=RecordingSleep())

    with pytest.raises(PaymentDeclinedError) as exc_info:
        await poller.wait_for_result("ws_CO_1")

    assert query.calls == 1
    assert exc_info.value.message == "Request cancelled by user"
    assert exc_info.value.provider_code == "1032"


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    query = ScriptedQuery(PENDING)
    poller = PaymentStatusPoller(query, max_attempts=4, sleep=RecordingSleep())

    with pytest.raises(PaymentTimeoutError) as exc_info:
        await poller.wait_for_result("ws_CO_1")

    assert query.calls == 4
    assert exc_info.value.details == {"checkout_request_id": "ws_CO_1", "attempts": 4}


@pytest.mark.asyncio
async def test_query_errors_do_not_end_polling():
    query = ScriptedQuery(
        PaymentNetworkError(operation="query"),
        PaymentProviderError("System is busy", provider_code="500.003.02"),
        PAID,
    )
    poller = PaymentStatusPoller(query, max_attempts=5, sleep=RecordingSleep())

    result = await poller.wait_for_result("ws_CO_1")

    assert result.outcome == PollOutcome.SUCCEEDED
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_stop_between_attempts():
    poller = None

    async def query(checkout_request_id):
        poller.stop()
        return StkQueryResult.pending(checkout_request_id)

    poller = PaymentStatusPoller(query, max_attempts=20, sleep=RecordingSleep())

    result = await poller.wait_for_result("ws_CO_1")

    assert result.outcome == PollOutcome.STOPPED
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_stop_interrupts_waiting_interval():
    query = ScriptedQuery(PENDING)
    poller = PaymentStatusPoller(query, interval_seconds=30.0, max_attempts=20)

    task = asyncio.create_task(poller.wait_for_result("ws_CO_1"))
    await asyncio.sleep(0.01)
    poller.stop()
    result = await asyncio.wait_for(task, timeout=1.0)

    assert result.outcome == PollOutcome.STOPPED
    assert result.attempts == 0
    assert query.calls == 0


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        PaymentStatusPoller(ScriptedQuery(PENDING), max_attempts=0)


@pytest.mark.asyncio
async def test_budget_defaults_come_from_settings(monkeypatch):
    monkeypatch.setattr(payment_settings.poller, "interval_seconds", 1.5)
    monkeypatch.setattr(payment_settings.poller, "max_attempts", 2)
    query = ScriptedQuery(PENDING)
    sleep = RecordingSleep()
    poller = PaymentStatusPoller(query, sleep=sleep)

    with pytest.raises(PaymentTimeoutError):
        await poller.wait_for_result("ws_CO_1")

    assert query.calls == 2
    assert sleep.delays == [1.5, 1.5]
