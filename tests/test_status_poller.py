import pytest

from pipeline.errors import ProviderAuthError, ProviderTransientError
from pipeline.status_poller import StatusPoller
from schemas.payment_definitions import ProviderStatus

from conftest import FakePhonePe


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.mark.asyncio
async def test_not_found_twice_then_completed():
    client = FakePhonePe([
        ProviderTransientError("not found"),
        ProviderTransientError("not found"),
        ProviderStatus(state="COMPLETED"),
    ])
    sleep = RecordingSleep()

    result = await StatusPoller(client, max_attempts=3, backoff_seconds=2.0, sleep=sleep).query_with_retry("TXN1")

    assert result.found
    assert result.status.state == "COMPLETED"
    assert result.attempts == 3
    assert sleep.calls == [2.0, 2.0]


@pytest.mark.asyncio
async def test_exhaustion_returns_degraded_result():
    client = FakePhonePe([ProviderTransientError("ORDER_NOT_FOUND")])
    sleep = RecordingSleep()

    result = await StatusPoller(client, max_attempts=3, sleep=sleep).query_with_retry("TXN1")

    assert result.exhausted
    assert not result.found
    assert result.attempts == 3
    assert result.last_error == "ORDER_NOT_FOUND"
    assert len(client.status_calls) == 3
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    client = FakePhonePe([ProviderAuthError("bad credentials")])
    sleep = RecordingSleep()

    with pytest.raises(ProviderAuthError):
        await StatusPoller(client, sleep=sleep).query_with_retry("TXN1")

    assert len(client.status_calls) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_first_answer_returns_immediately():
    client = FakePhonePe([ProviderStatus(state="PENDING")])
    result = await StatusPoller(client, sleep=RecordingSleep()).query_with_retry("TXN1")
    assert result.attempts == 1
    assert result.status.state == "PENDING"


def test_attempt_ceiling_must_be_positive():
    with pytest.raises(ValueError):
        StatusPoller(FakePhonePe(), max_attempts=0)
