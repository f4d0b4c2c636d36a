from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Literal
from urllib.parse import urlsplit, urlunsplit

from mailshield.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

CacheType = Literal["url", "domain", "ip"]
CACHE_TYPES: tuple[CacheType, ...] = ("url", "domain", "ip")


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    checked_at: float


@dataclass(frozen=True)
class NamespaceConfig:
    ttl_s: float
    max_size: int


def normalize_key(cache_type: str, key: str) -> str:
    """Canonicalize a lookup subject so equivalent spellings share one entry."""
    key = key.strip()
    if cache_type == "domain":
        return key.lower().rstrip(".")
    if cache_type == "ip":
        try:
            return str(ipaddress.ip_address(key))
        except ValueError:
            return key.lower()
    if cache_type == "url":
        parts = urlsplit(key)
        if not parts.scheme or not parts.netloc:
            return key
        path = "" if parts.path == "/" else parts.path
        return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))
    raise ValueError(f"unknown cache type: {cache_type}")


class ThreatIntelCache:
    """In-process reputation cache with one TTL and size bound per namespace.

    Entries older than the namespace TTL read as absent and are dropped on
    access; `clean_expired` sweeps them eagerly. A full namespace evicts its
    oldest insertion before accepting a new key. All bookkeeping happens under
    one lock so coroutines and executor threads can share an instance.
    """

    def __init__(
        self,
        namespaces: dict[str, NamespaceConfig],
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._namespaces = dict(namespaces)
        self._time = time_source or time.monotonic
        self._lock = threading.Lock()
        self._entries: dict[str, OrderedDict[str, CacheEntry]] = {
            name: OrderedDict() for name in self._namespaces
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> "ThreatIntelCache":
        settings = settings or get_settings()
        return cls(
            {
                "url": NamespaceConfig(settings.cache_url_ttl_s, settings.cache_url_max_entries),
                "domain": NamespaceConfig(settings.cache_domain_ttl_s, settings.cache_domain_max_entries),
                "ip": NamespaceConfig(settings.cache_ip_ttl_s, settings.cache_ip_max_entries),
            },
            time_source=time_source,
        )

    def _namespace(self, cache_type: str) -> tuple[NamespaceConfig, OrderedDict[str, CacheEntry]]:
        if cache_type not in self._namespaces:
            raise ValueError(f"unknown cache type: {cache_type}")
        return self._namespaces[cache_type], self._entries[cache_type]

    def _expired(self, config: NamespaceConfig, entry: CacheEntry, now: float) -> bool:
        return now - entry.checked_at > config.ttl_s

    def get(self, cache_type: str, key: str) -> CacheEntry | None:
        config, entries = self._namespace(cache_type)
        normalized = normalize_key(cache_type, key)
        with self._lock:
            entry = entries.get(normalized)
            if entry is None:
                return None
            if self._expired(config, entry, self._time()):
                del entries[normalized]
                return None
            return entry

    def set(self, cache_type: str, key: str, value: Any) -> None:
        config, entries = self._namespace(cache_type)
        normalized = normalize_key(cache_type, key)
        with self._lock:
            if normalized in entries:
                # Refresh re-inserts at the tail without evicting anything.
                del entries[normalized]
            else:
                while entries and len(entries) >= config.max_size:
                    entries.popitem(last=False)
            if config.max_size > 0:
                entries[normalized] = CacheEntry(value=value, checked_at=self._time())

    def clear(self) -> None:
        with self._lock:
            for entries in self._entries.values():
                entries.clear()

    def clean_expired(self) -> dict[str, int]:
        removed: dict[str, int] = {}
        with self._lock:
            now = self._time()
            for name, entries in self._entries.items():
                config = self._namespaces[name]
                stale = [key for key, entry in entries.items() if self._expired(config, entry, now)]
                for key in stale:
                    del entries[key]
                removed[name] = len(stale)
        if any(removed.values()):
            logger.info("threat_intel_cache_swept removed=%s", removed)
        return removed

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {
                name: {"size": len(entries), "max_size": self._namespaces[name].max_size}
                for name, entries in self._entries.items()
            }
