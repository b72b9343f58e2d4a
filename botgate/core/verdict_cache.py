"""
Per-client verdict memo — client IP → (bot | pending | human) with a TTL.

Expiry is lazy: an expired entry reads as absent. Not a security boundary,
just saves re-classifying and re-challenging the same client.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from botgate.core.headers import UNKNOWN_CLIENT


@dataclass(frozen=True)
class ClientVerdict:
    client_key: str
    is_bot: bool
    expires_at: float
    pending: bool = False  # challenge issued, proof not yet seen


class VerdictCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 10000):
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._store: dict[str, ClientVerdict] = {}

    def lookup(self, client_key: str) -> ClientVerdict | None:
        now = self._clock()
        with self._lock:
            verdict = self._store.get(client_key)
            if verdict is None:
                return None
            if verdict.expires_at <= now:
                del self._store[client_key]
                return None
            return verdict

    def store(self, client_key: str, is_bot: bool, ttl: float, pending: bool = False) -> ClientVerdict | None:
        if not client_key or client_key == UNKNOWN_CLIENT:
            return None
        now = self._clock()
        verdict = ClientVerdict(
            client_key=client_key,
            is_bot=is_bot,
            expires_at=now + ttl,
            pending=pending,
        )
        with self._lock:
            self._store[client_key] = verdict
            # Periodic cleanup
            if len(self._store) > self._max_entries:
                self._sweep(now)
        return verdict

    def expire_stale(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            return self._expire(self._clock())

    def _expire(self, now: float) -> int:
        stale = [k for k, v in self._store.items() if v.expires_at <= now]
        for k in stale:
            del self._store[k]
        return len(stale)

    def _sweep(self, now: float) -> None:
        self._expire(now)
        overflow = len(self._store) - self._max_entries
        if overflow > 0:
            # Still full of live entries: drop the ones closest to expiry
            soonest = sorted(self._store, key=lambda k: self._store[k].expires_at)[:overflow]
            for k in soonest:
                del self._store[k]

    def __len__(self) -> int:
        return len(self._store)
