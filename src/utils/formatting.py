# src/utils/formatting.py

"""Display helpers for prices and notification timestamps."""

import math
import re
from datetime import datetime, timezone


def format_brl(value: float) -> str:
    """Format ``value`` the pt-BR way: ``1.234,56``."""
    us_style = f"{value:,.2f}"
    # Swap the separators through a placeholder
    return us_style.replace(",", "_").replace(".", ",").replace("_", ".")


def is_number(value: float) -> bool:
    """True for finite numbers (rejects NaN and infinities)."""
    return isinstance(value, (int, float)) and math.isfinite(value)


def parse_amount(text: str) -> float | None:
    """Read a typed price such as ``1.234,56`` or ``12.5``; None if invalid."""
    cleaned = re.sub(r"[^\d,.-]", "", text)
    if "," in cleaned:
        # pt-BR input: dots group thousands, the comma is the decimal mark
        cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if is_number(value) else None


_UNITS: tuple[tuple[str, int], ...] = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
)


def format_relative_time(
    moment: datetime, now: datetime | None = None
) -> str:
    """Describe ``moment`` relative to ``now``, e.g. ``5 minutes ago``."""
    current = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)

    seconds = int((current - moment).total_seconds())
    future = seconds < 0
    seconds = abs(seconds)
    if seconds < 60:
        return "just now"

    for unit, size in _UNITS:
        if seconds >= size:
            count = seconds // size
            label = f"{count} {unit}{'s' if count != 1 else ''}"
            return f"in {label}" if future else f"{label} ago"
    return "just now"
