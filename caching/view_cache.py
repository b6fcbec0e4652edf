"""
View Cache
Loader-backed in-memory cache of backend views, keyed by hierarchical tuples
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

ViewKey = Tuple[Any, ...]
Loader = Callable[[], Awaitable[Any]]


def key_matches(key: ViewKey, prefix: ViewKey, exact: bool = False) -> bool:
    """True when `key` equals `prefix` or (unless exact) extends it"""
    if exact:
        return key == prefix
    return key[:len(prefix)] == prefix


class ViewCache:
    """
    In-memory cache of fetched views.

    Values only enter through `fetch`/`refetch` (each entry remembers its loader)
    and only leave through invalidation or `clear`. Stale entries keep their last
    value so a view can still render while it is refetched.
    """

    def __init__(self, stale_after: Optional[float] = 300, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[ViewKey, Dict[str, Any]] = {}
        self._inflight: Dict[ViewKey, asyncio.Future] = {}
        self._invalidated_inflight: Set[ViewKey] = set()
        self.stale_after = stale_after
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "loads": 0, "invalidations": 0, "refetches": 0}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch(self, key: ViewKey, loader: Loader) -> Any:
        """Return the cached value, loading it when missing or stale"""
        entry = self._entries.get(key)
        if entry is not None:
            entry["loader"] = loader
            if not self.is_stale(key):
                self.stats["hits"] += 1
                return entry["value"]
        self.stats["misses"] += 1
        return await self._load(key, loader)

    async def refetch(self, key: ViewKey) -> Any:
        """Reload a known view with its remembered loader"""
        entry = self._entries.get(key)
        if entry is None or entry["loader"] is None:
            raise KeyError(f"No loader registered for view {key!r}")
        self.stats["refetches"] += 1
        return await self._load(key, entry["loader"])

    async def _load(self, key: ViewKey, loader: Loader) -> Any:
        # Concurrent loads of one view share a single request
        pending = self._inflight.get(key)
        if pending is not None:
            return await pending

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self._invalidated_inflight.discard(key)
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported by asyncio
            future.exception()
            raise
        else:
            self._entries[key] = {
                "value": value,
                "fetched_at": self._clock(),
                # Invalidated while loading: the value may predate the mutation
                "stale": key in self._invalidated_inflight,
                "loader": loader,
            }
            self.stats["loads"] += 1
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)
            self._invalidated_inflight.discard(key)

    def peek(self, key: ViewKey, default: Any = None) -> Any:
        """Last loaded value without triggering a load"""
        entry = self._entries.get(key)
        return entry["value"] if entry is not None else default

    def contains(self, key: ViewKey) -> bool:
        return key in self._entries

    def is_stale(self, key: ViewKey) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        if entry["stale"]:
            return True
        if self.stale_after is None:
            return False
        return self._clock() - entry["fetched_at"] >= self.stale_after

    def keys(self) -> List[ViewKey]:
        return list(self._entries.keys())

    def find(self, prefix: ViewKey, predicate: Optional[Callable[[ViewKey], bool]] = None) -> List[ViewKey]:
        """Cached keys under `prefix`, optionally filtered"""
        return [
            key for key in self._entries
            if key_matches(key, prefix) and (predicate is None or predicate(key))
        ]

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, key: ViewKey, exact: bool = False) -> List[ViewKey]:
        """Mark matching entries stale; returns the keys that were marked"""
        marked = []
        for entry_key, entry in self._entries.items():
            if key_matches(entry_key, key, exact):
                entry["stale"] = True
                marked.append(entry_key)
        for inflight_key in self._inflight:
            if key_matches(inflight_key, key, exact):
                self._invalidated_inflight.add(inflight_key)
        if marked:
            self.stats["invalidations"] += len(marked)
            logger.debug(f"Invalidated {len(marked)} view(s) under {key!r}")
        return marked

    def invalidate_many(self, keys: Iterable[ViewKey]) -> List[ViewKey]:
        marked = []
        for key in keys:
            marked.extend(self.invalidate(key))
        return marked

    def clear(self) -> None:
        """Drop every entry (session reset)"""
        cleared_count = len(self._entries)
        self._entries.clear()
        self._invalidated_inflight.update(self._inflight)
        logger.info(f"View cache cleared ({cleared_count} entries)")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._entries),
            "stale_entries": sum(1 for key in self._entries if self.is_stale(key)),
        }
