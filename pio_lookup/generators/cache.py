"""Time-expiring, file-backed cache for network-derived artifacts.

Each key is stored as ``<folder>/<key>.json`` holding
``{"timestamp": <epoch seconds>, "data": <payload>}``. Reads fail open:
missing, unreadable or expired entries all come back as None, and an
expired entry's file is deleted on the read that detects it.

Writes are not synchronized; a cache folder is only ever used by one
pipeline run at a time.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .config import CACHE_DIR, DEFAULT_CACHE_EXPIRY_S

logger = logging.getLogger(__name__)


def get_timestamp_in_seconds() -> int:
    return int(time.time())


class FileCache:
    """Memoization store keyed by name, one JSON file per entry."""

    def __init__(
        self,
        folder: Optional[Path] = None,
        expiry_s: int = DEFAULT_CACHE_EXPIRY_S,
        clock: Callable[[], int] = get_timestamp_in_seconds,
    ) -> None:
        self.folder = Path(folder) if folder is not None else CACHE_DIR
        self.expiry_s = expiry_s
        self._clock = clock

    def get_cache_path(self, key: str, folder: Optional[Path] = None) -> Path:
        return Path(folder or self.folder) / f"{key}.json"

    def get(
        self,
        key: str,
        folder: Optional[Path] = None,
        expiry_s: Optional[int] = None,
    ) -> Optional[Any]:
        """Return the cached payload for key, or None.

        Args:
            key: Unique cache key
            folder: Overrides the cache folder for this call
            expiry_s: Overrides the expiry window for this call

        Returns:
            The cached data, or None if missing, unparseable or expired
        """
        cache_path = self.get_cache_path(key, folder)
        expiry = expiry_s if expiry_s is not None else self.expiry_s

        try:
            with open(cache_path, "r", encoding="utf-8") as f:
                cache = json.load(f)
        except (OSError, ValueError):
            return None

        if not isinstance(cache, dict) or "timestamp" not in cache or "data" not in cache:
            return None
        try:
            timestamp = float(cache["timestamp"])
        except (TypeError, ValueError):
            return None

        if timestamp + expiry > self._clock():
            return cache["data"]

        logger.debug(f"Cache entry {key} expired, removing {cache_path}")
        try:
            cache_path.unlink()
        except OSError as e:
            logger.warning(f"Could not delete expired cache file {cache_path}: {e}")
        return None

    def put(self, key: str, data: Any, folder: Optional[Path] = None) -> None:
        """Store data under key, replacing any existing entry."""
        cache_path = self.get_cache_path(key, folder)
        cache = {"timestamp": self._clock(), "data": data}
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        with open(cache_path, "w", encoding="utf-8") as f:
            json.dump(cache, f, ensure_ascii=False)
