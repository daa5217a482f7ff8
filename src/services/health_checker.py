# src/services/health_checker.py

"""Connectivity probes for the rate provider and notification store."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from src.config.settings import Settings
from src.services.rate_provider import FrankfurterRateProvider
from src.storage.notification_db import SQLiteNotificationBackend

logger = logging.getLogger("marketplace_hub.health")

_HEALTH_TIMEOUT = 10  # seconds per probe


@dataclass
class HealthResult:
    """Result of a single component probe."""

    component: str
    status: str  # "ok", "slow", "down"
    latency_ms: float
    message: str


def _timed(component: str, probe: Callable[[], str]) -> HealthResult:
    """Run ``probe`` and classify it by outcome and latency."""
    start = time.monotonic()
    try:
        message = probe()
    except Exception as exc:
        elapsed_ms = (time.monotonic() - start) * 1000
        return HealthResult(
            component=component,
            status="down",
            latency_ms=elapsed_ms,
            message=str(exc)[:80],
        )
    elapsed_ms = (time.monotonic() - start) * 1000
    if elapsed_ms > Settings.HEALTH_SLOW_THRESHOLD_MS:
        return HealthResult(component, "slow", elapsed_ms, "High latency")
    return HealthResult(component, "ok", elapsed_ms, message)


def probe_rate_provider(
    provider: FrankfurterRateProvider | None = None,
) -> HealthResult:
    """Single GET against the rate endpoint, no retries."""
    target = provider or FrankfurterRateProvider()

    def _probe() -> str:
        resp = target.session.get(
            target.url,
            params=target.params,
            headers=target.settings.DEFAULT_HEADERS,
            timeout=_HEALTH_TIMEOUT,
        )
        if resp.status_code != 200:
            raise ConnectionError(f"HTTP {resp.status_code}")
        return ""

    return _timed("rate_provider", _probe)


def probe_notification_db(
    backend: SQLiteNotificationBackend | None = None,
    db_path: Path | None = None,
) -> HealthResult:
    """Open the notification database and count rows.

    Without ``backend`` the file at ``db_path`` (default
    ``Settings.NOTIFICATION_DB_PATH``) must already exist.
    """

    def _probe() -> str:
        if backend is not None:
            db = backend
        else:
            path = db_path or Settings.NOTIFICATION_DB_PATH
            if not path.exists():
                raise FileNotFoundError(f"database not found: {path}")
            db = SQLiteNotificationBackend(path)
        try:
            count = db.ping()
        finally:
            if backend is None:
                db.close()
        return f"{count} notifications"

    return _timed("notification_db", _probe)


class HealthChecker:
    """Runs every probe concurrently."""

    def __init__(
        self,
        probes: list[Callable[[], HealthResult]] | None = None,
    ) -> None:
        self.probes = probes or [probe_rate_provider, probe_notification_db]

    async def check_all(self) -> list[HealthResult]:
        """Run all probes in worker threads and log the outcome."""
        tasks = [asyncio.to_thread(probe) for probe in self.probes]
        results: list[HealthResult] = list(await asyncio.gather(*tasks))
        for r in results:
            logger.info(
                "Health check %s: %s (%.0fms) %s",
                r.component,
                r.status,
                r.latency_ms,
                r.message,
            )
        return results
