# src/services/rate_cache.py

"""Process-wide currency rate cache with single-flight refresh.

One :class:`RateCache` is shared by every consumer in the process (see
:func:`get_rate_cache`). Readers call :meth:`RateCache.get_rate` and get
the current best-known :class:`RateState` immediately; if the rate is
missing or stale, that call also starts a background refresh. All
callers within the same tick share one in-flight fetch, and subscribers
are told about every state change.

The last good rate is persisted under one key of a
:class:`JsonKeyValueStore` as ``{"rate": float, "fetched_at": float}``.
A persisted entry younger than ``Settings.RATE_CACHE_TTL`` is adopted
without touching the network; an older one is only used as a fallback
when a refetch fails. After a failure nothing retries on its own: the
next cold start or an explicit :meth:`RateCache.invalidate` does.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable

from src.config.settings import Settings
from src.models.exchange_rate import ExchangeRate, RateState
from src.services.rate_provider import (
    FrankfurterRateProvider,
    RateFetchError,
    RateProvider,
)
from src.storage.kv_store import JsonKeyValueStore
from src.utils.formatting import format_brl, is_number

logger = logging.getLogger("marketplace_hub.rate_cache")

RateListener = Callable[[RateState], None]


class RateCache:
    """Shared, persisted, single-flight view of one conversion rate."""

    def __init__(
        self,
        provider: RateProvider | None = None,
        store: JsonKeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
        ttl: float | None = None,
        cache_key: str | None = None,
    ) -> None:
        self._provider: RateProvider = (
            provider or FrankfurterRateProvider()
        )
        self._store = store or JsonKeyValueStore()
        self._clock = clock
        self._ttl: float = ttl if ttl is not None else Settings.RATE_CACHE_TTL
        self._key: str = cache_key or Settings.RATE_CACHE_KEY

        self._state = RateState()
        self._current: ExchangeRate | None = None
        self._inflight: asyncio.Task[None] | None = None
        self._failed = False
        self._force_refresh = False
        self._listeners: list[RateListener] = []

    # ── Read side ────────────────────────────────────────

    @property
    def state(self) -> RateState:
        """Current state, without triggering anything."""
        return self._state

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None

    def get_rate(self) -> RateState:
        """Return the current state, refreshing in the background if needed."""
        self._demand()
        return self._state

    def convert(self, amount: float) -> float | None:
        """Convert ``amount`` with the current rate, or ``None``."""
        rate = self.get_rate().rate
        if rate is None or not is_number(amount):
            return None
        return amount * rate

    def format_converted(self, amount: float) -> str | None:
        """Converted amount formatted for display (``1.234,56``)."""
        converted = self.convert(amount)
        if converted is None:
            return None
        return format_brl(converted)

    async def refresh(self) -> RateState:
        """Run the demand logic and wait for any in-flight fetch."""
        self._demand()
        inflight = self._inflight
        if inflight is not None:
            await asyncio.shield(inflight)
        return self._state

    # ── Subscriptions ────────────────────────────────────

    def subscribe(self, listener: RateListener) -> Callable[[], None]:
        """Register ``listener`` for state changes; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: RateState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.error(
                    "Rate listener %r failed", listener, exc_info=True
                )

    # ── Invalidation ─────────────────────────────────────

    def invalidate(self) -> None:
        """Force the next demand to refetch, even after a failure.

        The persisted entry is kept so a failing refetch can still fall
        back to it.
        """
        logger.info("Rate cache invalidated")
        self._failed = False
        self._force_refresh = True
        self._current = None

    # ── Internals ────────────────────────────────────────

    def _demand(self) -> None:
        if self._inflight is not None:
            return

        now = self._clock()
        if not self._force_refresh:
            if self._current is not None and self._current.is_fresh(
                now, self._ttl
            ):
                return
            cached = self._load_persisted()
            if cached is not None and cached.is_fresh(now, self._ttl):
                logger.debug(
                    "Adopting persisted rate %.6f (age %.0fs)",
                    cached.rate,
                    cached.age(now),
                )
                self._current = cached
                self._set_state(RateState(rate=cached.rate))
                return

        if self._failed:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, rate refresh deferred")
            return

        self._set_state(
            RateState(rate=self._state.rate, is_loading=True)
        )
        self._inflight = loop.create_task(self._fetch())

    async def _fetch(self) -> None:
        logger.info("Fetching exchange rate")
        try:
            value = await self._provider.fetch_rate()
            if not is_number(value) or value <= 0:
                raise RateFetchError(f"Invalid rate from provider: {value!r}")
        except Exception as exc:
            logger.warning(
                "Exchange rate fetch failed: %s", exc, exc_info=True
            )
            self._failed = True
            fallback = self._current or self._load_persisted()
            self._current = fallback
            self._set_state(
                RateState(
                    rate=fallback.rate if fallback else None,
                    error=Settings.RATE_ERROR_MESSAGE,
                )
            )
        else:
            entry = ExchangeRate(rate=value, fetched_at=self._clock())
            self._current = entry
            self._failed = False
            self._persist(entry)
            self._set_state(RateState(rate=value))
        finally:
            self._inflight = None
            self._force_refresh = False

    def _load_persisted(self) -> ExchangeRate | None:
        raw = self._store.get(self._key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            rate = float(data["rate"])
            fetched_at = float(data["fetched_at"])
            if not (is_number(rate) and rate > 0 and is_number(fetched_at)):
                raise ValueError(f"out of range: {data!r}")
        except (ValueError, TypeError, KeyError, OverflowError) as exc:
            logger.debug("Discarding malformed cached rate: %s", exc)
            self._store.remove(self._key)
            return None
        return ExchangeRate(rate=rate, fetched_at=fetched_at)

    def _persist(self, entry: ExchangeRate) -> None:
        payload = json.dumps(
            {"rate": entry.rate, "fetched_at": entry.fetched_at}
        )
        try:
            self._store.set(self._key, payload)
        except OSError:
            logger.error(
                "Could not persist exchange rate", exc_info=True
            )


_shared_cache: RateCache | None = None


def get_rate_cache() -> RateCache:
    """Return the process-wide :class:`RateCache`, creating it lazily."""
    global _shared_cache
    if _shared_cache is None:
        _shared_cache = RateCache()
    return _shared_cache


def reset_rate_cache() -> None:
    """Forget the shared instance (tests and user switches)."""
    global _shared_cache
    _shared_cache = None
