"""Task executor contract and a base class that wires in the request executor."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from crawl_fleet.http.request_executor import RateLimitedRequestExecutor, RequestPolicy
from crawl_fleet.proxies.pool import ProxyPoolManager


@dataclass(slots=True)
class ExecutionResult:
    """What one executor run returns to the worker."""

    source: str
    target: str
    items: list[dict[str, Any]]
    requests_made: int = 0
    success_rate: float = 100.0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def success_count(self) -> int:
        return int(self.success_rate / 100 * self.requests_made)

    @property
    def avg_response_time_ms(self) -> int:
        if self.requests_made <= 0:
            return 0
        return self.duration_ms // self.requests_made


@runtime_checkable
class TaskExecutor(Protocol):
    """Pluggable domain collector run by workers for every claimed job.

    Executors must be idempotent per target: a job abandoned by a crashed worker
    is executed again from scratch.
    """

    source: str

    def execute(self, target: str) -> ExecutionResult: ...


@dataclass(slots=True)
class ExecutorContext:
    """Shared construction inputs handed to executor factories."""

    request_policy: RequestPolicy = field(default_factory=RequestPolicy)
    proxy_pool: ProxyPoolManager | None = None
    page_url_template: str | None = None


class BaseTaskExecutor:
    """Times ``collect`` and folds the request executor's counters into the result.

    Subclasses set ``source`` and implement ``collect``. Anything ``collect``
    raises propagates to the worker, which logs it against this source.
    """

    source = "base"

    def __init__(self, *, requests: RateLimitedRequestExecutor | None = None) -> None:
        self.requests = requests

    def collect(self, target: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def execute(self, target: str) -> ExecutionResult:
        if self.requests is not None:
            self.requests.reset_counters()
        started = time.monotonic()
        items = self.collect(target)
        duration_ms = int((time.monotonic() - started) * 1000)

        if self.requests is None:
            return ExecutionResult(
                source=self.source,
                target=target,
                items=items,
                duration_ms=duration_ms,
            )
        return ExecutionResult(
            source=self.source,
            target=target,
            items=items,
            requests_made=self.requests.requests_made,
            success_rate=self.requests.success_rate,
            duration_ms=duration_ms,
            errors=list(self.requests.errors),
        )

    def close(self) -> None:
        if self.requests is not None:
            self.requests.close()
