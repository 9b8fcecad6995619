import pytest

from conftest import RecordingSleep
from workshop_rag.core.errors import ProviderError
from workshop_rag.services.retry import RetryPolicy, retry_async


class Operation:
    def __init__(self, failures: int, error: type[Exception] = ProviderError) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def test_policy_delays_double_and_respect_cap():
    policy = RetryPolicy.from_retries(3, 1.0)
    assert policy.max_attempts == 4
    assert policy.max_retries == 3
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    capped = RetryPolicy.from_retries(3, 1.0, max_delay=1.5)
    assert [capped.delay_for(n) for n in (1, 2, 3)] == [1.0, 1.5, 1.5]


def test_policy_rejects_invalid_values():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1.0)


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures():
    sleep = RecordingSleep()
    operation = Operation(failures=2)

    result = await retry_async(operation, RetryPolicy.from_retries(3, 0.5), sleep=sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == pytest.approx([0.5, 1.0])


@pytest.mark.asyncio
async def test_retry_reraises_last_error_when_exhausted():
    sleep = RecordingSleep()
    operation = Operation(failures=10)

    with pytest.raises(ProviderError, match="failure 3"):
        await retry_async(operation, RetryPolicy.from_retries(2, 1.0, max_delay=1.5), sleep=sleep)

    assert operation.calls == 3
    assert sleep.delays == pytest.approx([1.0, 1.5])


@pytest.mark.asyncio
async def test_non_retryable_errors_propagate_immediately():
    sleep = RecordingSleep()
    operation = Operation(failures=1, error=KeyError)

    with pytest.raises(KeyError):
        await retry_async(operation, RetryPolicy.from_retries(3, 1.0), sleep=sleep)

    assert operation.calls == 1
    assert sleep.delays == []
