from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class _Entry:
    content: bytes
    expires_at: float


class ImageCache:
    """
    Short-lived cache of resolved image bytes, keyed by the image source.

    Owned by one AssetAttacher; build a fresh one per test or per process.
    Reads and writes are serialized through one lock so several steps can
    attach the same source concurrently.
    """

    def __init__(self, ttl_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._loading: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def get(self, source: str) -> Optional[bytes]:
        key = _key(source)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.content

    def put(self, source: str, content: bytes) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[_key(source)] = _Entry(content=content, expires_at=self._clock() + self.ttl_s)

    def get_or_load(self, source: str, loader: Callable[[str], bytes]) -> bytes:
        """Concurrent callers for the same source share a single `loader` call."""
        cached = self.get(source)
        if cached is not None:
            return cached

        key = _key(source)
        with self._lock:
            key_lock = self._loading.setdefault(key, threading.Lock())
        try:
            with key_lock:
                cached = self.get(source)
                if cached is not None:
                    return cached
                content = loader(source)
                self.put(source, content)
                return content
        finally:
            with self._lock:
                if self._loading.get(key) is key_lock:
                    del self._loading[key]

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]


def _key(source: str) -> str:
    # data URLs can be megabytes long
    return hashlib.sha256(source.encode("utf-8")).hexdigest()
