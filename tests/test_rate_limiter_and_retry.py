from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import random
import threading

import pytest

from llm_collab.config import RateLimitConfig
from llm_collab.errors import AuthenticationError, ProviderServerError, RateLimitError
from llm_collab.rate_limiter import RateLimiter
from llm_collab.retry import JITTER_RATIO, RetryHandler, RetryPolicy


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_bucket_allows_burst_then_rejects_with_retry_after() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.configure("p", RateLimitConfig(tokens_per_minute=60, burst=2))

    assert limiter.consume("p").remaining == 1
    assert limiter.consume("p").remaining == 0
    with pytest.raises(RateLimitError) as excinfo:
        limiter.consume("p")

    assert excinfo.value.retry_after == pytest.approx(1.0)
    assert excinfo.value.provider == "p"


def test_bucket_refills_over_time_up_to_burst() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.configure("p", RateLimitConfig(tokens_per_minute=120, burst=3))
    for _ in range(3):
        limiter.consume("p")

    clock.advance(0.5)
    decision = limiter.admit("p")
    assert decision.allowed
    assert decision.remaining == 1

    clock.advance(60)
    state = limiter.state("p")
    assert state is not None
    assert state.tokens == pytest.approx(3.0)
    assert state.reset_at == pytest.approx(clock.now)


def test_admit_does_not_consume_tokens() -> None:
    limiter = RateLimiter(clock=FakeClock())
    limiter.configure("p", RateLimitConfig(tokens_per_minute=60, burst=1))

    assert limiter.admit("p").allowed
    assert limiter.admit("p").allowed
    limiter.consume("p")
    decision = limiter.admit("p")
    assert not decision.allowed
    assert decision.retry_after == pytest.approx(1.0)


def test_unconfigured_provider_is_unlimited() -> None:
    limiter = RateLimiter(clock=FakeClock())
    decision = limiter.consume("free")
    assert decision.allowed
    assert decision.remaining == -1
    assert limiter.state("free") is None


def test_concurrent_consumers_never_lose_bucket_updates() -> None:
    limiter = RateLimiter(clock=FakeClock())
    limiter.configure("p", RateLimitConfig(tokens_per_minute=60, burst=5))
    workers = 16
    barrier = threading.Barrier(workers)

    def consume() -> float | None:
        barrier.wait()
        try:
            limiter.consume("p")
        except RateLimitError as exc:
            return exc.retry_after
        return None

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: consume(), range(workers)))

    rejected = [retry_after for retry_after in results if retry_after is not None]
    assert results.count(None) == 5
    assert len(rejected) == workers - 5
    assert all(retry_after > 0 for retry_after in rejected)
    state = limiter.state("p")
    assert state is not None
    assert state.tokens == pytest.approx(0.0)


class _Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


def test_delay_grows_exponentially_with_bounded_jitter() -> None:
    handler = RetryHandler(rng=random.Random(7))
    policy = RetryPolicy(max_retries=5, base_delay_s=1.0, max_delay_s=4.0)
    error = ProviderServerError("boom")

    for index, base in enumerate([1.0, 2.0, 4.0, 4.0]):
        delay = handler.delay_for(index, policy, error)
        assert base <= delay <= base * (1 + JITTER_RATIO)


def test_delay_honours_retry_after() -> None:
    handler = RetryHandler(rng=random.Random(0))
    policy = RetryPolicy(base_delay_s=0.1, max_delay_s=1.0)

    assert handler.delay_for(0, policy, RateLimitError(retry_after=5.0)) == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_execute_retries_retryable_errors_until_success() -> None:
    sleeper = _Recorder()
    handler = RetryHandler(sleep=sleeper, rng=random.Random(1))
    operation = _Flaky([ProviderServerError("1"), ProviderServerError("2")])
    retries: list[int] = []

    result = await handler.execute(
        operation,
        RetryPolicy(max_retries=3, base_delay_s=0.01, max_delay_s=0.05),
        on_retry=lambda attempt, exc, delay: retries.append(attempt),
    )

    assert result == "done"
    assert operation.calls == 3
    assert retries == [1, 2]
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_execute_stops_after_max_retries_and_records_attempts() -> None:
    handler = RetryHandler(sleep=_Recorder())
    operation = _Flaky([ProviderServerError(str(i)) for i in range(10)])

    with pytest.raises(ProviderServerError) as excinfo:
        await handler.execute(operation, RetryPolicy(max_retries=2, base_delay_s=0.0))

    assert operation.calls == 3
    assert excinfo.value.attempts == 3


@pytest.mark.asyncio
async def test_fatal_errors_and_rate_limits_without_retry_after_are_not_retried() -> None:
    handler = RetryHandler(sleep=_Recorder())

    auth = _Flaky([AuthenticationError("bad key")])
    with pytest.raises(AuthenticationError):
        await handler.execute(auth, RetryPolicy(max_retries=3))
    assert auth.calls == 1

    limited = _Flaky([RateLimitError("slow down")])
    with pytest.raises(RateLimitError):
        await handler.execute(limited, RetryPolicy(max_retries=3))
    assert limited.calls == 1


def test_retry_policy_rejects_negative_values() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay_s=-0.5)
