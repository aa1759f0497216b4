"""Process-global TTL cache for resolved status-mapping rule lists.

Caches the ordered candidate rules per (tenant, provider) so hot
ingestion paths do not re-query provider_status_mappings for every
event. Entries expire after a TTL and are invalidated on every mapping
write in this process.

The cache is per-process. With several API workers a write in one
worker is only seen by the others after the TTL; a shared store with
expiry (e.g. Redis) is the replacement when that lag matters.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 60.0

_lock = threading.Lock()
_entries: dict[tuple[str, str], tuple[float, Any]] = {}


def _is_cache_enabled() -> bool:
    raw = os.environ.get("STATUS_MAPPING_CACHE_ENABLED", "true").strip().lower()
    return raw not in {"0", "false", "no", "off"}


def _resolve_ttl_seconds() -> float:
    """Resolve the TTL with a safe constant fallback."""
    raw = os.environ.get(
        "STATUS_MAPPING_CACHE_TTL_SECONDS",
        str(_DEFAULT_TTL_SECONDS),
    ).strip()
    try:
        value = float(raw)
    except ValueError:
        return _DEFAULT_TTL_SECONDS
    return max(0.0, value)


def get(tenant_id: str, provider: str) -> Any | None:
    """Return the cached rule list for (tenant, provider), or None on miss."""
    if not _is_cache_enabled():
        return None
    key = (tenant_id, provider)
    now = time.monotonic()
    with _lock:
        entry = _entries.get(key)
        if entry is None:
            return None
        expires_at, rules = entry
        if expires_at <= now:
            _entries.pop(key, None)
            logger.debug(
                "status_mapping_cache_expired tenant=%s provider=%s",
                tenant_id,
                provider,
            )
            return None
    logger.debug("status_mapping_cache_hit tenant=%s provider=%s", tenant_id, provider)
    return rules


def put(tenant_id: str, provider: str, rules: Any) -> None:
    """Store a rule list for (tenant, provider) until the TTL lapses."""
    if not _is_cache_enabled():
        return
    expires_at = time.monotonic() + _resolve_ttl_seconds()
    with _lock:
        _entries[(tenant_id, provider)] = (expires_at, rules)


def invalidate(tenant_id: str | None = None) -> None:
    """Drop cached entries for one tenant, or everything when tenant_id is None."""
    with _lock:
        if tenant_id is None:
            dropped = len(_entries)
            _entries.clear()
        else:
            keys = [key for key in _entries if key[0] == tenant_id]
            for key in keys:
                del _entries[key]
            dropped = len(keys)
    logger.info(
        "status_mapping_cache_invalidate tenant=%s dropped=%d",
        tenant_id or "*",
        dropped,
    )


def size() -> int:
    """Return the number of live cache entries."""
    with _lock:
        return len(_entries)
