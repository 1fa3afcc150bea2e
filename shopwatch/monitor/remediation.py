"""Remediation — cache invalidation across every layer that might be stale.

Backends are tried in descending priority: edge cache (CDN), full-page cache,
minified-asset cache, then the object-cache flush that always exists.
All active backends are purged, since more than one may be layered.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

import httpx

from shopwatch.config import Settings, settings
from shopwatch.monitor.incidents import IncidentLog
from shopwatch.monitor.models import IncidentKind, RemediationOutcome, utc_now
from shopwatch.monitor.store import LAST_FLUSH, StateStore

logger = logging.getLogger(__name__)

_PURGE_TIMEOUT = 10.0


class CacheBackend(Protocol):
    name: str

    def is_active(self) -> bool: ...

    def purge(self) -> None: ...


# ── Adapters ─────────────────────────────────────────────────────────────────


class EdgeCachePurge:
    """CDN purge-everything (Cloudflare-style zone API)."""

    name = "edge-cache"

    def __init__(self, zone_id: str, api_token: str, api_base: str) -> None:
        self.zone_id = zone_id
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")

    def is_active(self) -> bool:
        return bool(self.zone_id and self.api_token)

    def purge(self) -> None:
        with httpx.Client(timeout=_PURGE_TIMEOUT) as client:
            resp = client.post(
                f"{self.api_base}/zones/{self.zone_id}/purge_cache",
                headers={"Authorization": f"Bearer {self.api_token}"},
                json={"purge_everything": True},
            )
        resp.raise_for_status()


class PageCachePurge:
    """Full-page cache purge via an HTTP PURGE request (Varnish / LiteSpeed)."""

    name = "page-cache"

    def __init__(self, purge_url: str) -> None:
        self.purge_url = purge_url

    def is_active(self) -> bool:
        return bool(self.purge_url)

    def purge(self) -> None:
        with httpx.Client(timeout=_PURGE_TIMEOUT) as client:
            resp = client.request("PURGE", self.purge_url, headers={"X-Purge-Method": "regex"})
        resp.raise_for_status()


class MinifyCacheClear:
    """Remove the contents of a minified-asset cache directory."""

    name = "minify-cache"

    def __init__(self, cache_dir: str) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir else None

    def is_active(self) -> bool:
        return self.cache_dir is not None and self.cache_dir.is_dir()

    def purge(self) -> None:
        if self.cache_dir is None:
            return
        for entry in self.cache_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()


class ObjectCacheFlush:
    """Universal fallback: hit the site's object-cache flush hook if one is set."""

    name = "object-cache"

    def __init__(self, flush_url: str = "") -> None:
        self.flush_url = flush_url

    def is_active(self) -> bool:
        return True

    def purge(self) -> None:
        if not self.flush_url:
            logger.info("Object cache flush: no hook configured — nothing to call")
            return
        with httpx.Client(timeout=_PURGE_TIMEOUT) as client:
            resp = client.post(self.flush_url)
        resp.raise_for_status()


def default_backends(cfg: Settings | None = None) -> list[CacheBackend]:
    """Named backends in priority order (the fallback is passed separately)."""
    cfg = cfg or settings
    return [
        EdgeCachePurge(cfg.edge_cache_zone_id, cfg.edge_cache_api_token, cfg.edge_cache_api_base),
        PageCachePurge(cfg.page_cache_purge_url),
        MinifyCacheClear(cfg.minify_cache_dir),
    ]


# ── Dispatcher ───────────────────────────────────────────────────────────────


class RemediationDispatcher:
    """Purges every active cache backend; never raises."""

    def __init__(
        self,
        store: StateStore,
        incidents: IncidentLog,
        backends: list[CacheBackend] | None = None,
        fallback: CacheBackend | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.incidents = incidents
        self.backends = list(backends) if backends is not None else default_backends()
        self.fallback = fallback or ObjectCacheFlush(settings.object_cache_flush_url)
        self._clock = clock

    def _run(self, backend: CacheBackend) -> bool:
        try:
            backend.purge()
            return True
        except Exception as exc:
            logger.warning("Cache backend %s failed: %s: %s", backend.name, type(exc).__name__, exc)
            return False

    def flush(self) -> RemediationOutcome:
        invoked: list[str] = []
        failed: list[str] = []

        for backend in self.backends:
            try:
                active = backend.is_active()
            except Exception:
                logger.exception("Cache backend %s detection failed", backend.name)
                active = False
            if not active:
                continue
            if self._run(backend):
                invoked.append(backend.name)
            else:
                failed.append(backend.name)

        if not invoked:
            # The fallback counts as invoked even when its hook errors
            self._run(self.fallback)
            invoked.append(self.fallback.name)

        try:
            self.store.set(LAST_FLUSH, self._clock().isoformat())
            self.incidents.append(IncidentKind.INFO, "Cache flushed: " + ", ".join(invoked))
        except Exception:
            logger.exception("Failed to record cache flush")
        return RemediationOutcome(backends_invoked=tuple(invoked), failed=tuple(failed))
