from __future__ import annotations

# Re-export the cache for centralized imports.

from mailshield.services.threat_intel.cache import (
    CACHE_TYPES,
    CacheEntry,
    NamespaceConfig,
    ThreatIntelCache,
    normalize_key,
)

__all__ = [
    "CACHE_TYPES",
    "CacheEntry",
    "NamespaceConfig",
    "ThreatIntelCache",
    "normalize_key",
]
