"""Catalog probe — asks the shop whether any published product is visible.

Two independent queries:
- data query: the backing store (admin REST API, bypasses page caches)
- shop query: the customer-facing listing (may be served through a cache)
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from shopwatch.config import Settings, settings
from shopwatch.monitor.models import CheckResult, ProbeUnavailable

logger = logging.getLogger(__name__)


class CatalogProbe(Protocol):
    def probe(self) -> CheckResult: ...


def _has_items(body: Any) -> bool | None:
    """Whether a listing response carries at least one item; None if it is not a listing."""
    if isinstance(body, list):
        return len(body) > 0
    if isinstance(body, dict):
        for key in ("products", "items", "data", "results"):
            items = body.get(key)
            if isinstance(items, list):
                return len(items) > 0
        total = body.get("total")
        if isinstance(total, int):
            return total > 0
    return None


class HttpCatalogProbe:
    """Probe a WooCommerce-style REST catalog over HTTP."""

    def __init__(
        self,
        data_url: str,
        shop_url: str,
        auth: tuple[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.data_url = data_url
        self.shop_url = shop_url
        self.auth = auth
        self.timeout = timeout

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "HttpCatalogProbe":
        cfg = cfg or settings
        base = cfg.site_url.rstrip("/")
        auth = (cfg.catalog_api_key, cfg.catalog_api_secret) if cfg.catalog_api_key else None
        return cls(
            data_url=cfg.catalog_data_url or f"{base}/wp-json/wc/v3/products?status=publish&per_page=1",
            shop_url=cfg.catalog_shop_url or f"{base}/wp-json/wc/store/v1/products?per_page=1",
            auth=auth,
            timeout=cfg.probe_timeout_seconds,
        )

    def _query(self, client: httpx.Client, url: str, auth: tuple[str, str] | None) -> bool:
        try:
            resp = client.get(url, auth=auth)
        except httpx.HTTPError as e:
            raise ProbeUnavailable(f"Catalog unreachable ({url}): {type(e).__name__}: {e}") from e

        if resp.status_code == 404:
            # Listing endpoints answer 404 when the catalog layer is not installed
            raise ProbeUnavailable(f"Catalog endpoint not found: {url}")
        if resp.status_code != 200:
            raise ProbeUnavailable(f"Catalog query {url} returned {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise ProbeUnavailable(f"Catalog query {url} returned a non-JSON body") from e
        has_items = _has_items(body)
        if has_items is None:
            raise ProbeUnavailable(f"Catalog query {url} returned an unrecognised listing")
        return has_items

    def probe(self) -> CheckResult:
        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            products_exist = self._query(client, self.data_url, self.auth)
            # Storefront query goes out anonymously, as a shopper would see it
            shop_has_items = self._query(client, self.shop_url, None)

        result = CheckResult(products_exist=products_exist, shop_query_empty=not shop_has_items)
        logger.debug("Catalog probe: %s", result)
        return result
