from __future__ import annotations

"""
Offline cache gateway: classify every content request, then apply that
category's caching policy against the tile store and the asset store.

    category = classify(request, origin, rules)      # pure, no I/O
    response = await router.handle(request)          # None -> not intercepted

Decision table (first match wins):

    non-GET or cross-origin   PASS_THROUGH    not intercepted
    navigate flag             NAVIGATION      network-first, fallback chain
    {build_prefix}...         BUILD_ASSET     cache-first, hard network error
    {tiles_base}/{manifest}   TILE_MANIFEST   cache-first on tile store
    {tiles_base}/L/C_R.ext    TILE            cache-first on tile store
    anything else             SAME_ORIGIN     stale-while-revalidate

`handle` never raises for store or network problems; it always produces a
response (or None for pass-through).
"""

import asyncio
import enum
import functools
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set
from urllib.parse import urlsplit

from common.errors import NetworkFailure, StoreReadFailure, StoreWriteFailure
from common.logging_setup import get_logger
from common.types import PyramidSession, StoreEntry
from gateway.responses import TILE_CACHE_CONTROL, ContentRequest, GatewayResponse, normalize_redirect
from gateway.store import BlobStore


log = get_logger("gateway.router")

Fetcher = Callable[..., Awaitable[GatewayResponse]]

TILE_CONFIG_NOT_FOUND = "Tile config not found in cache"
TILE_NOT_FOUND = "Tile not found in cache"

# A 304 or 206 from upstream can never populate a cache entry
_CONDITIONAL_HEADERS = frozenset(
    {"if-none-match", "if-modified-since", "if-match", "if-unmodified-since", "if-range", "range"}
)


class Category(str, enum.Enum):
    NAVIGATION = "navigation"
    BUILD_ASSET = "build_asset"
    TILE_MANIFEST = "tile_manifest"
    TILE = "tile"
    SAME_ORIGIN = "same_origin"
    PASS_THROUGH = "pass_through"


@dataclass(frozen=True)
class RouteRules:
    """Path layout the classifier matches against."""
    session: PyramidSession
    build_prefix: str = "/build/"
    root_path: str = "/"
    offline_page: str = "/offline.html"

    @property
    def tile_pattern(self) -> "re.Pattern[str]":
        return _tile_pattern(self.session.tiles_base, self.session.encoding)


@functools.lru_cache(maxsize=8)
def _tile_pattern(tiles_base: str, ext: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(tiles_base)}/(\d+)/(\d+)_(\d+)\.{re.escape(ext)}$")


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def request_path(url: str) -> str:
    """Cache key for a same-origin URL: path plus query string."""
    parts = urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def classify(request: ContentRequest, origin: str, rules: RouteRules) -> Category:
    if request.method.upper() != "GET" or origin_of(request.url) != origin.lower().rstrip("/"):
        return Category.PASS_THROUGH
    if request.navigate:
        return Category.NAVIGATION

    path = urlsplit(request.url).path or "/"
    if path.startswith(rules.build_prefix):
        return Category.BUILD_ASSET
    session = rules.session
    if path == session.manifest_path and path.endswith(session.manifest_suffix):
        return Category.TILE_MANIFEST
    if rules.tile_pattern.match(path):
        return Category.TILE
    return Category.SAME_ORIGIN


class Router:
    """
    Applies the per-category policies. `asset_store` is a callable so the
    router always writes into the lifecycle manager's current generation.
    """

    def __init__(
        self,
        store: BlobStore,
        rules: RouteRules,
        *,
        origin: str,
        upstream: str,
        fetch: Fetcher,
        asset_store: Callable[[], str],
        tile_network_fallback: bool = False,
    ):
        self.store = store
        self.rules = rules
        self.origin = origin.rstrip("/")
        self.upstream = upstream.rstrip("/")
        self.fetch = fetch
        self.asset_store = asset_store
        self.tile_network_fallback = tile_network_fallback
        self._background: Set[asyncio.Task] = set()

    @property
    def session(self) -> PyramidSession:
        return self.rules.session

    # -------- public API --------

    async def handle(self, request: ContentRequest) -> Optional[GatewayResponse]:
        category = classify(request, self.origin, self.rules)
        log.debug("route", extra={"extra": {"url": request.url, "category": category.value}})
        if category is Category.PASS_THROUGH:
            return None
        try:
            if category is Category.NAVIGATION:
                return await self._network_first(request)
            if category is Category.BUILD_ASSET:
                return await self._cache_first_asset(request)
            if category is Category.TILE_MANIFEST:
                return await self._cache_first_tile(request, TILE_CONFIG_NOT_FOUND, "tile_config_not_found", immutable=False)
            if category is Category.TILE:
                return await self._cache_first_tile(request, TILE_NOT_FOUND, "tile_not_found", immutable=True)
            return await self._stale_while_revalidate(request)
        except Exception:
            # The router must always answer
            log.exception("router policy failed", extra={"extra": {"url": request.url, "category": category.value}})
            return GatewayResponse.offline()

    async def drain(self) -> None:
        """Wait for outstanding background refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def pending_refreshes(self) -> int:
        return len(self._background)

    # -------- store helpers --------

    async def _lookup(self, store_name: str, key: str) -> Optional[StoreEntry]:
        try:
            return await self.store.get(store_name, key)
        except StoreReadFailure as e:
            log.warning("store read failed, treating as miss", extra={"extra": {"store": store_name, "key": key, "err": str(e)}})
            return None

    async def _remember(self, store_name: str, key: str, resp: GatewayResponse) -> None:
        resp = normalize_redirect(resp)
        try:
            await self.store.put(store_name, key, resp.body, resp.content_type)
        except StoreWriteFailure as e:
            log.warning("store write failed, response not cached", extra={"extra": {"store": store_name, "key": key, "err": str(e)}})

    def _upstream_url(self, request: ContentRequest) -> str:
        return self.upstream + request_path(request.url)

    async def _fetch(self, request: ContentRequest) -> GatewayResponse:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _CONDITIONAL_HEADERS}
        return await self.fetch(self._upstream_url(request), headers=headers)

    # -------- policies --------

    async def _network_first(self, request: ContentRequest) -> GatewayResponse:
        key = request_path(request.url)
        store_name = self.asset_store()
        try:
            resp = await self._fetch(request)
        except NetworkFailure:
            return await self._navigation_fallback(store_name, key)
        if resp.ok:
            resp = normalize_redirect(resp)
            await self._remember(store_name, key, resp)
        return resp.with_source("network")

    async def _navigation_fallback(self, store_name: str, key: str) -> GatewayResponse:
        for candidate in (key, self.rules.root_path, self.rules.offline_page):
            entry = await self._lookup(store_name, candidate)
            if entry is not None:
                log.info("offline navigation served from cache", extra={"extra": {"requested": key, "served": candidate}})
                return GatewayResponse.from_entry(entry)
        return GatewayResponse.offline()

    async def _cache_first_asset(self, request: ContentRequest) -> GatewayResponse:
        key = request_path(request.url)
        store_name = self.asset_store()
        entry = await self._lookup(store_name, key)
        if entry is not None:
            return GatewayResponse.from_entry(entry)
        try:
            resp = await self._fetch(request)
        except NetworkFailure:
            return GatewayResponse.network_error()
        if resp.ok:
            await self._remember(store_name, key, resp)
        return resp.with_source("network")

    async def _cache_first_tile(
        self, request: ContentRequest, missing: str, reason: str, *, immutable: bool
    ) -> GatewayResponse:
        key = urlsplit(request.url).path
        store_name = self.session.tile_store
        # Tiles are only visible once the pyramid's manifest exists
        manifest = await self._lookup(store_name, self.session.manifest_path)
        if manifest is not None:
            if key == self.session.manifest_path:
                return GatewayResponse.from_entry(manifest)
            entry = await self._lookup(store_name, key)
            if entry is not None and await self._same_pyramid(manifest):
                return GatewayResponse.from_entry(entry, cache_control=TILE_CACHE_CONTROL if immutable else None)

        if self.tile_network_fallback:
            try:
                resp = await self._fetch(request)
            except NetworkFailure:
                resp = None
            if resp is not None and resp.ok:
                await self._remember(store_name, key, resp)
                return resp.with_source("network")
        return GatewayResponse.text(404, missing, reason)

    async def _same_pyramid(self, manifest: StoreEntry) -> bool:
        """A rebuild may have purged and rewritten tiles between the two reads."""
        current = await self._lookup(self.session.tile_store, self.session.manifest_path)
        if current is None or current.payload != manifest.payload:
            log.info("pyramid changed during tile lookup", extra={"extra": {"manifest": self.session.manifest_path}})
            return False
        return True

    async def _stale_while_revalidate(self, request: ContentRequest) -> GatewayResponse:
        key = request_path(request.url)
        store_name = self.asset_store()
        entry = await self._lookup(store_name, key)
        if entry is not None:
            self._spawn_refresh(request, store_name, key)
            return GatewayResponse.from_entry(entry)
        try:
            resp = await self._fetch(request)
        except NetworkFailure:
            return GatewayResponse.offline()
        if resp.ok:
            await self._remember(store_name, key, resp)
        return resp.with_source("network")

    def _spawn_refresh(self, request: ContentRequest, store_name: str, key: str) -> None:
        task = asyncio.create_task(self._refresh(request, store_name, key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, request: ContentRequest, store_name: str, key: str) -> None:
        try:
            resp = await self._fetch(request)
            if resp.ok:
                await self._remember(store_name, key, resp)
                log.debug("background refresh stored", extra={"extra": {"key": key}})
            else:
                log.info("background refresh got non-ok status", extra={"extra": {"key": key, "status": resp.status}})
        except Exception as e:
            log.info("background refresh failed", extra={"extra": {"key": key, "err": str(e)}})
