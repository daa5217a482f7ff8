# src/services/rate_provider.py

"""HTTP exchange-rate provider backed by curl_cffi."""

import asyncio
import logging
import time
from typing import Any, Protocol

from curl_cffi import requests as curl_requests

from src.config.settings import Settings

logger = logging.getLogger("marketplace_hub.rate_provider")


class RateFetchError(Exception):
    """Raised when the rate provider cannot produce a rate."""


class RateProvider(Protocol):
    """Anything able to fetch the current conversion factor."""

    async def fetch_rate(self) -> float:
        ...


class FrankfurterRateProvider:
    """Fetch the source→target rate from the Frankfurter API.

    Requests are blocking (curl_cffi ``Session``) and run in a worker
    thread so the event loop is never stalled.
    """

    def __init__(
        self,
        base: str | None = None,
        target: str | None = None,
        url: str | None = None,
    ) -> None:
        self.settings = Settings()
        self.base = base or self.settings.RATE_SOURCE_CURRENCY
        self.target = target or self.settings.RATE_TARGET_CURRENCY
        self.url = url or self.settings.RATE_API_URL
        self.session = curl_requests.Session(
            impersonate=self.settings.IMPERSONATE_BROWSER
        )

    @property
    def params(self) -> dict[str, str]:
        return {"base": self.base, "symbols": self.target}

    async def fetch_rate(self) -> float:
        """Return the current rate or raise :class:`RateFetchError`."""
        return await asyncio.to_thread(self._fetch_sync)

    def _fetch_sync(self) -> float:
        last_error = "no attempt made"
        for attempt in range(self.settings.MAX_RETRIES):
            try:
                resp = self.session.get(
                    self.url,
                    params=self.params,
                    headers=self.settings.DEFAULT_HEADERS,
                    timeout=self.settings.REQUEST_TIMEOUT,
                )
                if resp.status_code == 200:
                    return self._parse(resp.json())
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "Rate provider returned HTTP %d on attempt %d",
                    resp.status_code,
                    attempt + 1,
                )
                # Client errors will not improve with a retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    break
            except RateFetchError:
                raise
            except Exception as exc:
                last_error = str(exc)
                logger.warning(
                    "Rate request error on attempt %d: %s",
                    attempt + 1,
                    exc,
                    exc_info=True,
                )
            time.sleep(self.settings.REQUEST_DELAY * (attempt + 1))

        raise RateFetchError(
            f"{self.base}->{self.target} rate unavailable: {last_error}"
        )

    def _parse(self, data: Any) -> float:
        """Extract ``rates[target]`` from the JSON body."""
        try:
            value = float(data["rates"][self.target])
        except (KeyError, TypeError, ValueError) as exc:
            raise RateFetchError(
                f"Malformed rate response: {data!r}"
            ) from exc
        if value <= 0:
            raise RateFetchError(f"Non-positive rate: {value}")
        logger.info(
            "Fetched %s->%s rate %.6f", self.base, self.target, value
        )
        return value
