"""Short-lived memory of webhook deliveries that were already applied."""
from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class DeliveryCache(Protocol):
    """Cache operations used by the ledger and webhook handler."""

    def seen(self, key: str, now: Optional[datetime] = None) -> bool:
        ...

    def mark(self, key: str, now: Optional[datetime] = None) -> None:
        ...


class InMemoryDeliveryCache:
    """Bounded TTL cache keyed by delivery id.

    Entries are a latency optimisation only; the payment ledger remains the
    source of truth for whether a delivery was applied. When full, the oldest
    entry is evicted first.
    """

    def __init__(self, *, ttl_seconds: int = 24 * 60 * 60, max_entries: int = 1000) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, datetime]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def seen(self, key: str, now: Optional[datetime] = None) -> bool:
        current = now or datetime.now(timezone.utc)
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if current >= expires_at:
                self._entries.pop(key, None)
                return False
            return True

    def mark(self, key: str, now: Optional[datetime] = None) -> None:
        current = now or datetime.now(timezone.utc)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = current + self._ttl
            self._purge(current)

    def _purge(self, now: datetime) -> None:
        expired = [key for key, expires_at in self._entries.items() if now >= expires_at]
        for key in expired:
            self._entries.pop(key, None)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ["DeliveryCache", "InMemoryDeliveryCache"]
