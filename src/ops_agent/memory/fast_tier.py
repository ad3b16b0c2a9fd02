"""Fast tier: in-process key/value and list store where every entry expires."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """Async TTL store with the subset of list/hash operations the memory layer needs."""

    def __init__(
        self,
        default_ttl: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl: float | None) -> float:
        return self._clock() + (self.default_ttl if ttl is None else ttl)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key)
            return None if entry is None else entry.value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._expiry(ttl))

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    async def get_list(self, key: str) -> list[Any]:
        async with self._lock:
            entry = self._live(key)
            return [] if entry is None else list(entry.value)

    async def set_list(self, key: str, items: list[Any], ttl: float | None = None) -> None:
        async with self._lock:
            self._entries[key] = _Entry(value=list(items), expires_at=self._expiry(ttl))

    async def append(
        self,
        key: str,
        item: Any,
        *,
        max_length: int | None = None,
        ttl: float | None = None,
        create: bool = True,
    ) -> bool:
        """Append to a list, keep only the newest `max_length` items, refresh the TTL.

        With `create=False` a missing or expired list is left absent so that the
        next read refills it completely from the durable tier.
        """
        async with self._lock:
            entry = self._live(key)
            if entry is None and not create:
                return False
            items = [] if entry is None else list(entry.value)
            items.append(item)
            if max_length is not None and max_length > 0:
                items = items[-max_length:]
            self._entries[key] = _Entry(value=items, expires_at=self._expiry(ttl))
            return True

    async def update_mapping(
        self, key: str, values: dict[str, Any], ttl: float | None = None
    ) -> None:
        """Overlay `values` onto a stored mapping."""
        async with self._lock:
            entry = self._live(key)
            merged = {} if entry is None else dict(entry.value)
            merged.update(values)
            self._entries[key] = _Entry(value=merged, expires_at=self._expiry(ttl))

    async def clear_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            now = self._clock()
            active = sum(1 for entry in self._entries.values() if now < entry.expires_at)
            return {
                "total_keys": len(self._entries),
                "active_keys": active,
                "expired_keys": len(self._entries) - active,
            }
