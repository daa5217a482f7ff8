# src/storage/kv_store.py

"""Small persisted key/value store, the local analogue of localStorage."""

import json
import logging
from pathlib import Path

from src.config.settings import Settings

logger = logging.getLogger("marketplace_hub.storage")


class JsonKeyValueStore:
    """String keys mapped to opaque string values in one JSON file.

    The file is re-read on every ``get`` so that several processes
    sharing it observe each other's writes. A missing or corrupt file
    reads as empty.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path: Path = path or Settings.KV_STORE_PATH
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("JsonKeyValueStore at %s", self.path)

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "Unreadable key/value file %s, treating as empty: %s",
                self.path,
                exc,
            )
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(k): v for k, v in data.items() if isinstance(v, str)
        }

    def _write_all(self, data: dict[str, str]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self.path)

    def get(self, key: str) -> str | None:
        """Return the stored value for ``key`` or ``None``."""
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def remove(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)
