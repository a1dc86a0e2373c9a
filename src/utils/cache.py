"""In-memory TTL cache with LRU eviction and optional JSON persistence."""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_MAX_ITEMS = 500


class CacheManager:
    """Key/value cache for JSON-serialisable entries.

    Entries expire ``ttl`` seconds after they were written. When the cache is
    full the least recently read or written entry is evicted. If
    ``persist_path`` is set, unexpired entries are loaded on first use and
    written back by :meth:`save`.
    """

    def __init__(
        self,
        max_items: int = DEFAULT_MAX_ITEMS,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        persist_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_items = max_items
        self.default_ttl = default_ttl
        self.persist_path = Path(persist_path) if persist_path else None
        self._clock = clock
        self._items: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._loaded = False
        self._dirty = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load persisted entries once; a missing or corrupt file is ignored."""
        if self._loaded or self.persist_path is None:
            return
        self._loaded = True
        if not self.persist_path.exists():
            return
        try:
            entries = json.loads(self.persist_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cache file %s: %s", self.persist_path, e)
            return
        try:
            loaded = [
                (key, item) for key, item in _valid_entries(entries)
                if not self._is_expired(item)
            ]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Ignoring malformed cache file %s: %s", self.persist_path, e)
            return
        self._items.update(loaded)
        logger.debug("Loaded %d cache entries from %s", len(self._items), self.persist_path)

    def save(self) -> None:
        if self.persist_path is None or not self._dirty:
            return
        entries = [
            [key, item] for key, item in self._items.items()
            if not self._is_expired(item)
        ]
        try:
            self.persist_path.parent.mkdir(parents=True, exist_ok=True)
            self.persist_path.write_text(json.dumps(entries), encoding="utf-8")
            self._dirty = False
            logger.debug("Saved %d cache entries to %s", len(entries), self.persist_path)
        except OSError as e:
            logger.warning("Failed to save cache to %s: %s", self.persist_path, e)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        item = self._items.get(key)
        if item is None:
            self._misses += 1
            return None
        if self._is_expired(item):
            del self._items[key]
            self._misses += 1
            return None
        self._items.move_to_end(key)
        self._hits += 1
        return item["data"]

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        if key not in self._items and len(self._items) >= self.max_items:
            evicted, _ = self._items.popitem(last=False)
            logger.debug("Evicted LRU cache key: %s", evicted)
        self._items[key] = {
            "data": data,
            "timestamp": self._clock(),
            "ttl": ttl if ttl is not None else self.default_ttl,
        }
        self._items.move_to_end(key)
        self._dirty = True

    def has(self, key: str) -> bool:
        item = self._items.get(key)
        if item is None:
            return False
        if self._is_expired(item):
            del self._items[key]
            return False
        return True

    def delete(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._dirty = True

    def clear(self) -> None:
        self._items.clear()
        self._hits = 0
        self._misses = 0
        self._dirty = True

    def cleanup_expired(self) -> int:
        expired = [k for k, item in self._items.items() if self._is_expired(item)]
        for key in expired:
            del self._items[key]
        if expired:
            logger.debug("Cleaned up %d expired cache items", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._items), "hits": self._hits, "misses": self._misses}

    def __len__(self) -> int:
        return len(self._items)

    def _is_expired(self, item: dict[str, Any]) -> bool:
        return self._clock() - item["timestamp"] > item["ttl"]


def _valid_entries(entries: Any) -> list[tuple[str, dict[str, Any]]]:
    """Check the persisted ``[[key, {data, timestamp, ttl}], ...]`` layout."""
    if not isinstance(entries, list):
        raise ValueError(f"expected a list of entries, got {type(entries).__name__}")
    valid = []
    for entry in entries:
        if not isinstance(entry, list) or len(entry) != 2:
            raise ValueError(f"malformed entry: {entry!r}")
        key, item = entry
        if not isinstance(key, str) or not isinstance(item, dict):
            raise ValueError(f"malformed entry: {entry!r}")
        if "data" not in item:
            raise KeyError(f"entry {key!r} has no data")
        if not all(isinstance(item[field], (int, float)) for field in ("timestamp", "ttl")):
            raise ValueError(f"malformed timestamps in entry {key!r}")
        valid.append((key, item))
    return valid
