"""Rate-limited HTTP request executor with bounded concurrency and backoff retries."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from crawl_fleet.proxies.pool import ProxyPoolManager

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; CrawlFleetBot/1.0)"
TOO_MANY_REQUESTS = 429


@dataclass(slots=True)
class RequestPolicy:
    """Pacing and retry settings for one executor instance.

    ``max_retries`` counts total attempts, so the default makes one call and at
    most two retries.
    """

    rate_limit_seconds: float = 2.0
    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 2.0
    timeout_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    headers: dict[str, str] = field(default_factory=dict)


class RequestFailedError(RuntimeError):
    """Raised when a request fails for good (non-retryable or retries exhausted)."""

    def __init__(self, message: str, *, url: str, attempts: int, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.attempts = attempts
        self.status_code = status_code


class _RetryableError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(status_code: int) -> bool:
    return status_code == TOO_MANY_REQUESTS or status_code >= 500  # noqa: PLR2004


class RateLimitedRequestExecutor:
    """Issues HTTP requests under a rate limit and a concurrency cap.

    Admission works in two steps. A semaphore caps in-flight calls at
    ``max_concurrent``, and a shared next-slot timestamp spaces consecutive
    admissions by ``rate_limit_seconds``. Retries of an admitted call happen inside
    its slot, after ``retry_delay * retry_backoff ** (attempt - 1)`` seconds.

    With a proxy pool attached, every attempt goes through the proxy the pool
    hands out and its outcome is reported back to the pool.
    """

    def __init__(
        self,
        policy: RequestPolicy | None = None,
        *,
        proxy_pool: ProxyPoolManager | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or RequestPolicy()
        if self.policy.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        if self.policy.max_retries < 1:
            raise ValueError("max_retries must be >= 1.")
        if self.policy.rate_limit_seconds < 0 or self.policy.retry_delay_seconds < 0:
            raise ValueError("rate_limit_seconds and retry_delay_seconds must be >= 0.")
        self.proxy_pool = proxy_pool
        self._transport = transport
        self._sleep = sleep
        self._monotonic = monotonic
        self._semaphore = threading.BoundedSemaphore(self.policy.max_concurrent)
        self._pacing_lock = threading.Lock()
        self._next_slot: float | None = None
        self._clients: dict[str | None, httpx.Client] = {}
        self._clients_lock = threading.Lock()
        self._counters_lock = threading.Lock()
        self.requests_made = 0
        self.successful_requests = 0
        self.errors: list[str] = []

    def request(self, url: str, *, method: str = "GET", **kwargs: Any) -> httpx.Response:
        """Perform one logical request; raises ``RequestFailedError`` on final failure."""

        with self._counters_lock:
            self.requests_made += 1
        with self._semaphore:
            self._wait_for_slot()
            try:
                response = self._request_with_retry(url, method=method, **kwargs)
            except RequestFailedError as error:
                with self._counters_lock:
                    self.errors.append(f"{method} {url}: {error}")
                raise
        with self._counters_lock:
            self.successful_requests += 1
        return response

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request(url, method="GET", **kwargs)

    def compute_retry_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``."""

        return self.policy.retry_delay_seconds * self.policy.retry_backoff ** (attempt - 1)

    @property
    def success_rate(self) -> float:
        if self.requests_made == 0:
            return 0.0
        return self.successful_requests / self.requests_made * 100

    def reset_counters(self) -> None:
        with self._counters_lock:
            self.requests_made = 0
            self.successful_requests = 0
            self.errors = []

    def close(self) -> None:
        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()

    def __enter__(self) -> RateLimitedRequestExecutor:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _wait_for_slot(self) -> None:
        with self._pacing_lock:
            now = self._monotonic()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.policy.rate_limit_seconds
        wait = slot - now
        if wait > 0:
            self._sleep(wait)

    def _request_with_retry(self, url: str, *, method: str, **kwargs: Any) -> httpx.Response:
        attempts = self.policy.max_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._attempt(url, method=method, **kwargs)
            except RequestFailedError as error:
                error.attempts = attempt
                raise
            except _RetryableError as error:
                if attempt >= attempts:
                    raise RequestFailedError(
                        f"{error} after {attempt} attempts",
                        url=url,
                        attempts=attempt,
                        status_code=error.status_code,
                    ) from error
                delay = self.compute_retry_delay(attempt)
                logger.warning(
                    "Request %s %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    method,
                    url,
                    attempt,
                    attempts,
                    error,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt(self, url: str, *, method: str, **kwargs: Any) -> httpx.Response:
        proxy_url = self.proxy_pool.get_proxy() if self.proxy_pool is not None else None
        client = self._client_for(proxy_url)
        started = self._monotonic()
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            self._report_proxy(proxy_url, success=False, started=started)
            raise _RetryableError(f"{type(exc).__name__}: {exc}") from exc
        except httpx.RequestError as exc:
            self._report_proxy(proxy_url, success=False, started=started)
            raise RequestFailedError(str(exc), url=url, attempts=1) from exc

        status_code = response.status_code
        self._report_proxy(proxy_url, success=status_code < 500, started=started)  # noqa: PLR2004
        if is_retryable_status(status_code):
            raise _RetryableError(f"HTTP {status_code}", status_code=status_code)
        if response.is_error:
            raise RequestFailedError(
                f"HTTP {status_code}",
                url=url,
                attempts=1,
                status_code=status_code,
            )
        return response

    def _report_proxy(self, proxy_url: str | None, *, success: bool, started: float) -> None:
        if self.proxy_pool is None or proxy_url is None:
            return
        elapsed_ms = int((self._monotonic() - started) * 1000)
        self.proxy_pool.record_usage(proxy_url, success=success, response_time_ms=elapsed_ms)

    def _client_for(self, proxy_url: str | None) -> httpx.Client:
        with self._clients_lock:
            client = self._clients.get(proxy_url)
            if client is not None:
                return client
            headers = {"User-Agent": self.policy.user_agent}
            headers.update(self.policy.headers)
            options: dict[str, Any] = {
                "timeout": httpx.Timeout(self.policy.timeout_seconds, connect=10.0),
                "headers": headers,
                "follow_redirects": True,
            }
            # An injected transport handles routing itself.
            if self._transport is not None:
                options["transport"] = self._transport
            elif proxy_url is not None:
                options["proxy"] = proxy_url
            client = httpx.Client(**options)
            self._clients[proxy_url] = client
            return client
