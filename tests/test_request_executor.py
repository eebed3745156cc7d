from __future__ import annotations

import allure
import httpx
import pytest

from crawl_fleet.http.request_executor import (
    RateLimitedRequestExecutor,
    RequestFailedError,
    RequestPolicy,
    is_retryable_status,
)

pytestmark = [
    allure.epic("HTTP Layer"),
    allure.feature("Rate Limiting & Retries"),
]


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.value += seconds


class RecordingPool:
    def __init__(self, proxy_url: str | None = "http://proxy-a:8080") -> None:
        self.proxy_url = proxy_url
        self.usage: list[tuple[str, bool]] = []

    def get_proxy(self) -> str | None:
        return self.proxy_url

    def record_usage(
        self,
        proxy_url: str,
        *,
        success: bool,
        response_time_ms: int | None = None,
    ) -> None:
        self.usage.append((proxy_url, success))


def _sequence_transport(statuses: list[int]) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(status, text=f"status {status}")

    return httpx.MockTransport(handler), seen


def _executor(
    transport: httpx.BaseTransport,
    *,
    sleeps: list[float],
    max_retries: int = 3,
    rate_limit_seconds: float = 0.0,
    proxy_pool: RecordingPool | None = None,
) -> RateLimitedRequestExecutor:
    return RateLimitedRequestExecutor(
        RequestPolicy(
            rate_limit_seconds=rate_limit_seconds,
            max_retries=max_retries,
            retry_delay_seconds=1.0,
            retry_backoff=2.0,
        ),
        proxy_pool=proxy_pool,  # type: ignore[arg-type]
        transport=transport,
        sleep=sleeps.append,
    )


def test_transient_errors_retry_with_exponential_backoff() -> None:
    transport, seen = _sequence_transport([503, 429, 200])
    sleeps: list[float] = []

    with _executor(transport, sleeps=sleeps) as executor:
        response = executor.get("https://example.com/a")

        assert response.status_code == 200
        assert len(seen) == 3
        assert sleeps == [1.0, 2.0]
        assert executor.requests_made == 1
        assert executor.success_rate == 100.0
        assert executor.errors == []


def test_retries_exhausted_raise_request_failed() -> None:
    transport, seen = _sequence_transport([502])
    sleeps: list[float] = []

    with _executor(transport, sleeps=sleeps, max_retries=4) as executor:
        with pytest.raises(RequestFailedError) as raised:
            executor.get("https://example.com/down")

        assert raised.value.attempts == 4
        assert raised.value.status_code == 502
        assert len(seen) == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert executor.success_rate == 0.0
        assert len(executor.errors) == 1


def test_client_errors_are_not_retried() -> None:
    transport, seen = _sequence_transport([404])
    sleeps: list[float] = []

    with _executor(transport, sleeps=sleeps) as executor:
        with pytest.raises(RequestFailedError) as raised:
            executor.get("https://example.com/missing")

    assert raised.value.status_code == 404
    assert raised.value.attempts == 1
    assert len(seen) == 1
    assert sleeps == []


def test_transport_errors_are_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text="ok")

    sleeps: list[float] = []
    with _executor(httpx.MockTransport(handler), sleeps=sleeps) as executor:
        assert executor.get("https://example.com/flap").text == "ok"

    assert len(calls) == 2
    assert sleeps == [1.0]


def test_serial_requests_are_paced_by_rate_limit() -> None:
    clock = FakeMonotonic()
    started: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        started.append(clock())
        return httpx.Response(200)

    executor = RateLimitedRequestExecutor(
        RequestPolicy(rate_limit_seconds=2.0),
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        monotonic=clock,
    )
    for _ in range(3):
        executor.get("https://example.com/paced")
    executor.close()

    assert started == [0.0, 2.0, 4.0]


def test_counters_reset_between_runs() -> None:
    transport, _ = _sequence_transport([200])
    sleeps: list[float] = []
    executor = _executor(transport, sleeps=sleeps)
    executor.get("https://example.com/1")
    executor.get("https://example.com/2")
    assert executor.requests_made == 2

    executor.reset_counters()

    assert executor.requests_made == 0
    assert executor.success_rate == 0.0
    assert executor.errors == []
    executor.close()


def test_user_agent_header_is_sent() -> None:
    transport, seen = _sequence_transport([200])
    sleeps: list[float] = []

    with _executor(transport, sleeps=sleeps) as executor:
        executor.get("https://example.com/ua")

    assert seen[0].headers["User-Agent"] == "Mozilla/5.0 (compatible; CrawlFleetBot/1.0)"


def test_every_attempt_is_reported_to_proxy_pool() -> None:
    transport, _ = _sequence_transport([503, 200])
    sleeps: list[float] = []
    pool = RecordingPool()

    with _executor(transport, sleeps=sleeps, proxy_pool=pool) as executor:
        executor.get("https://example.com/via-proxy")

    assert pool.usage == [("http://proxy-a:8080", False), ("http://proxy-a:8080", True)]


def test_empty_proxy_pool_falls_back_to_direct_requests() -> None:
    transport, seen = _sequence_transport([200])
    sleeps: list[float] = []
    pool = RecordingPool(proxy_url=None)

    with _executor(transport, sleeps=sleeps, proxy_pool=pool) as executor:
        executor.get("https://example.com/direct")

    assert len(seen) == 1
    assert pool.usage == []


def test_policy_validation_and_retry_delay() -> None:
    with pytest.raises(ValueError, match="max_concurrent"):
        RateLimitedRequestExecutor(RequestPolicy(max_concurrent=0))
    with pytest.raises(ValueError, match="max_retries"):
        RateLimitedRequestExecutor(RequestPolicy(max_retries=0))

    executor = RateLimitedRequestExecutor(RequestPolicy(retry_delay_seconds=0.5, retry_backoff=3))
    assert [executor.compute_retry_delay(attempt) for attempt in (1, 2, 3)] == [0.5, 1.5, 4.5]
    assert is_retryable_status(429)
    assert is_retryable_status(500)
    assert not is_retryable_status(404)
