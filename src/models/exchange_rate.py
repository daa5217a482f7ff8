# src/models/exchange_rate.py

"""Currency conversion rate models."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ExchangeRate:
    """A conversion factor captured at a point in time.

    ``rate`` is the number of target-currency units per one
    source-currency unit; ``fetched_at`` is in epoch seconds.
    """

    rate: float
    fetched_at: float

    def age(self, now: float) -> float:
        """Seconds elapsed since the rate was fetched."""
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl: float) -> bool:
        """True while the rate is younger than ``ttl`` seconds."""
        return self.age(now) < ttl


@dataclass(frozen=True)
class RateState:
    """Snapshot of the shared rate cache handed to readers."""

    rate: float | None = None
    is_loading: bool = False
    error: str | None = None
