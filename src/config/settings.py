# src/config/settings.py

"""Central configuration for the marketplace_hub client core."""

import os
from pathlib import Path

from curl_cffi.requests import BrowserTypeLiteral
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Central configuration for the marketplace_hub client core."""

    # --- HTTP ---
    REQUEST_DELAY: float = 1.0          # Base delay between retries (secs)
    REQUEST_TIMEOUT: int = 10           # Seconds before a request times out
    MAX_RETRIES: int = 3                # Retry count on transient failures
    IMPERSONATE_BROWSER: BrowserTypeLiteral = "chrome131"
    DEFAULT_HEADERS: dict[str, str] = {
        "Accept": "application/json",
        "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8",
    }

    # --- Currency rate ---
    RATE_SOURCE_CURRENCY: str = "CNY"
    RATE_TARGET_CURRENCY: str = "BRL"
    RATE_API_URL: str = os.getenv(
        "MARKETPLACE_RATE_URL",
        "https://api.frankfurter.dev/v1/latest",
    )
    RATE_CACHE_TTL: float = 3600.0      # One hour of freshness
    RATE_CACHE_KEY: str = "currency_rate_cny_brl"
    RATE_ERROR_MESSAGE: str = "Could not fetch the exchange rate"

    # --- Notifications ---
    NOTIFICATION_RECONCILE_INTERVAL: float = 300.0  # Full reload period
    NOTIFICATION_RETRY_BASE_DELAY: float = 1.0      # First backoff step
    NOTIFICATION_RETRY_MAX_DELAY: float = 60.0      # Backoff cap

    # --- Health ---
    HEALTH_SLOW_THRESHOLD_MS: float = 5000.0

    # --- Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(
        os.getenv("MARKETPLACE_DATA_DIR", str(BASE_DIR / "data"))
    )
    LOGS_DIR: Path = BASE_DIR / "logs"
    KV_STORE_PATH: Path = DATA_DIR / "local_storage.json"
    NOTIFICATION_DB_PATH: Path = Path(
        os.getenv(
            "MARKETPLACE_NOTIFICATION_DB",
            str(DATA_DIR / "notifications.db"),
        )
    )
