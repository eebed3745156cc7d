"""Rotating proxy pool with health-based selection."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from crawl_fleet.queue.models import ProxyStatus, ProxyView
from crawl_fleet.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from crawl_fleet.storage.sqlmodel_models import Proxy

logger = logging.getLogger(__name__)

DEFAULT_PROBE_URL = "https://httpbin.org/ip"
DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0
DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS = 300.0
USAGE_FAILURE_THRESHOLD = 5
PROBE_FAILURE_THRESHOLD = 3
SUCCESS_RATE_WEIGHT = 0.1
RESPONSE_TIME_WEIGHT = 0.1
SUPPORTED_SCHEMES = frozenset({"http", "https", "socks5"})

ProxyProbe = Callable[[str], None]


@dataclass(slots=True)
class ProxyPoolStats:
    total: int = 0
    active: int = 0
    failed: int = 0
    testing: int = 0
    avg_success_rate: int = 0


@dataclass(slots=True)
class ProbeReport:
    """Outcome of one health-check sweep."""

    checked: int = 0
    healthy: int = 0
    unhealthy: int = 0
    skipped: bool = False


class ProxyPoolManager:
    """Hands out active proxies and tracks their health.

    Two failure counters are kept apart: ``consecutive_failures`` counts failed
    uses and demotes at five, ``probe_failures`` counts failed health probes and
    demotes at three. A successful probe clears both and (re)activates the proxy.
    Store errors are logged here and never reach the request path.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        probe_url: str = DEFAULT_PROBE_URL,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        probe: ProxyProbe | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.probe_url = probe_url
        self.probe_timeout_seconds = probe_timeout_seconds
        self._probe = probe or self._http_probe
        self._clock = clock
        self._health_lock = threading.Lock()
        self._health_stop = threading.Event()
        self._health_thread: threading.Thread | None = None

    def get_proxy(self) -> str | None:
        """Best active proxy: highest success rate, least recently used first."""

        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(Proxy)
                    .where(Proxy.status == ProxyStatus.ACTIVE.value)
                    .order_by(col(Proxy.success_rate).desc(), col(Proxy.last_used).asc())
                    .limit(1),
                ).one_or_none()
                if row is None:
                    return None
                session.execute(
                    sa_update(Proxy)
                    .where(col(Proxy.id) == row.id)
                    .values(last_used=to_db_datetime(self._clock())),
                )
                session.commit()
                return row.proxy_url
        except SQLAlchemyError:
            logger.exception("Proxy selection failed; continuing without proxy")
            return None

    def record_usage(
        self,
        proxy_url: str,
        *,
        success: bool,
        response_time_ms: int | None = None,
    ) -> None:
        """Fold one use into the proxy's EMA success rate and failure counter."""

        try:
            with Session(self.engine) as session:
                row = session.exec(select(Proxy).where(Proxy.proxy_url == proxy_url)).one_or_none()
                if row is None:
                    logger.debug("Usage reported for unknown proxy %s", proxy_url)
                    return
                observed = 100.0 if success else 0.0
                rate = (
                    row.success_rate * (1 - SUCCESS_RATE_WEIGHT) + observed * SUCCESS_RATE_WEIGHT
                )
                row.success_rate = max(0.0, min(100.0, rate))
                if response_time_ms is not None:
                    if row.avg_response_time_ms is None:
                        row.avg_response_time_ms = response_time_ms
                    else:
                        row.avg_response_time_ms = round(
                            row.avg_response_time_ms * (1 - RESPONSE_TIME_WEIGHT)
                            + response_time_ms * RESPONSE_TIME_WEIGHT,
                        )
                if success:
                    row.consecutive_failures = 0
                else:
                    row.consecutive_failures += 1
                    if (
                        row.consecutive_failures >= USAGE_FAILURE_THRESHOLD
                        and row.status != ProxyStatus.FAILED.value
                    ):
                        row.status = ProxyStatus.FAILED.value
                        logger.warning(
                            "Proxy %s marked failed after %d consecutive failures",
                            proxy_url,
                            row.consecutive_failures,
                        )
                row.last_used = to_db_datetime(self._clock())
                session.add(row)
                session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record usage for proxy %s", proxy_url)

    def perform_health_checks(self) -> ProbeReport:
        """Probe every proxy once. Overlapping sweeps are skipped."""

        if not self._health_lock.acquire(blocking=False):
            return ProbeReport(skipped=True)
        try:
            report = ProbeReport()
            try:
                urls = [view.proxy_url for view in self.list_proxies()]
            except SQLAlchemyError:
                logger.exception("Proxy health check could not list proxies")
                return report
            logger.info("Performing health checks on %d proxies", len(urls))
            for proxy_url in urls:
                healthy = self._check_one(proxy_url)
                report.checked += 1
                if healthy:
                    report.healthy += 1
                else:
                    report.unhealthy += 1
            logger.info(
                "Proxy health checks done: healthy=%d unhealthy=%d",
                report.healthy,
                report.unhealthy,
            )
            return report
        finally:
            self._health_lock.release()

    def add_proxy(self, proxy_url: str, *, probe: bool = True) -> ProxyView:
        """Insert a proxy in ``testing`` state; probes it right away unless told not to."""

        try:
            parsed = httpx.URL(proxy_url)
        except httpx.InvalidURL as exc:
            raise ValueError(f"Unsupported proxy URL: {proxy_url!r}") from exc
        if parsed.scheme not in SUPPORTED_SCHEMES or not parsed.host:
            raise ValueError(f"Unsupported proxy URL: {proxy_url!r}")

        with Session(self.engine) as session:
            existing = session.exec(
                select(Proxy).where(Proxy.proxy_url == proxy_url),
            ).one_or_none()
            if existing is not None:
                logger.info("Proxy already exists: %s", proxy_url)
                return _to_proxy_view(existing)
            session.add(
                Proxy(
                    proxy_url=proxy_url,
                    status=ProxyStatus.TESTING.value,
                    created_at=to_db_datetime(self._clock()),
                ),
            )
            session.commit()

        if probe:
            self._check_one(proxy_url)
        view = self.get(proxy_url)
        if view is None:
            raise RuntimeError(f"Proxy disappeared while adding: {proxy_url}")
        logger.info("Added proxy %s (%s)", proxy_url, view.status.value)
        return view

    def remove_proxy(self, proxy_url: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(select(Proxy).where(Proxy.proxy_url == proxy_url)).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
        logger.info("Removed proxy %s", proxy_url)
        return True

    def get(self, proxy_url: str) -> ProxyView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Proxy).where(Proxy.proxy_url == proxy_url)).one_or_none()
        return _to_proxy_view(row) if row is not None else None

    def list_proxies(self) -> list[ProxyView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Proxy).order_by(col(Proxy.id).asc())).all()
        return [_to_proxy_view(row) for row in rows]

    def stats(self) -> ProxyPoolStats:
        try:
            proxies = self.list_proxies()
        except SQLAlchemyError:
            logger.exception("Could not read proxy pool stats")
            return ProxyPoolStats()
        if not proxies:
            return ProxyPoolStats()
        return ProxyPoolStats(
            total=len(proxies),
            active=sum(1 for proxy in proxies if proxy.status == ProxyStatus.ACTIVE),
            failed=sum(1 for proxy in proxies if proxy.status == ProxyStatus.FAILED),
            testing=sum(1 for proxy in proxies if proxy.status == ProxyStatus.TESTING),
            avg_success_rate=round(sum(proxy.success_rate for proxy in proxies) / len(proxies)),
        )

    def start_health_checks(
        self,
        interval_seconds: float = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
    ) -> bool:
        """Run a sweep now and then every ``interval_seconds`` on a daemon thread."""

        if self._health_thread is not None and self._health_thread.is_alive():
            logger.warning("Proxy health checks already running")
            return False
        self._health_stop.clear()
        self._health_thread = threading.Thread(
            target=self._health_loop,
            args=(interval_seconds,),
            name="proxy-health",
            daemon=True,
        )
        self._health_thread.start()
        logger.info("Started proxy health checks every %.0fs", interval_seconds)
        return True

    def stop_health_checks(self, *, timeout_seconds: float = 5.0) -> None:
        self._health_stop.set()
        thread = self._health_thread
        self._health_thread = None
        if thread is not None:
            thread.join(timeout=timeout_seconds)
            logger.info("Proxy health checks stopped")

    def _health_loop(self, interval_seconds: float) -> None:
        while not self._health_stop.is_set():
            try:
                self.perform_health_checks()
            except Exception:
                logger.exception("Proxy health sweep crashed")
            if self._health_stop.wait(interval_seconds):
                return

    def _check_one(self, proxy_url: str) -> bool:
        started = time.monotonic()
        try:
            self._probe(proxy_url)
        except Exception as exc:  # noqa: BLE001
            logger.info("Proxy %s failed probe: %s", proxy_url, exc)
            healthy = False
        else:
            healthy = True
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._apply_probe_result(proxy_url, healthy=healthy, response_time_ms=elapsed_ms)
        return healthy

    def _apply_probe_result(self, proxy_url: str, *, healthy: bool, response_time_ms: int) -> None:
        try:
            with Session(self.engine) as session:
                row = session.exec(select(Proxy).where(Proxy.proxy_url == proxy_url)).one_or_none()
                if row is None:
                    return
                row.last_health_check = to_db_datetime(self._clock())
                if healthy:
                    if row.status != ProxyStatus.ACTIVE.value:
                        row.success_rate = 100.0
                    row.status = ProxyStatus.ACTIVE.value
                    row.probe_failures = 0
                    row.consecutive_failures = 0
                    if row.avg_response_time_ms is None:
                        row.avg_response_time_ms = response_time_ms
                else:
                    row.probe_failures += 1
                    if row.probe_failures >= PROBE_FAILURE_THRESHOLD:
                        if row.status != ProxyStatus.FAILED.value:
                            logger.warning(
                                "Proxy %s marked failed after %d failed probes",
                                proxy_url,
                                row.probe_failures,
                            )
                        row.status = ProxyStatus.FAILED.value
                session.add(row)
                session.commit()
        except SQLAlchemyError:
            logger.exception("Could not store probe result for proxy %s", proxy_url)

    def _http_probe(self, proxy_url: str) -> None:
        with httpx.Client(proxy=proxy_url, timeout=self.probe_timeout_seconds) as client:
            response = client.get(self.probe_url)
            response.raise_for_status()


def _to_proxy_view(row: Proxy) -> ProxyView:
    return ProxyView(
        proxy_url=row.proxy_url,
        status=ProxyStatus(row.status),
        success_rate=row.success_rate,
        avg_response_time_ms=row.avg_response_time_ms,
        consecutive_failures=row.consecutive_failures,
        probe_failures=row.probe_failures,
        last_used=optional_utc(row.last_used),
        last_health_check=optional_utc(row.last_health_check),
        created_at=to_utc_aware_datetime(row.created_at),
    )
