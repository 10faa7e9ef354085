from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional, Set

from common.errors import NetworkFailure, StoreWriteFailure
from common.types import CacheGeneration
from gateway.responses import GatewayResponse, normalize_redirect
from gateway.store import BlobStore


log = logging.getLogger(__name__)


class LifecycleManager:
    """
    Owns the current store generation.

    - on_install(tag): precache the app shell into the tag's asset store
    - on_activate(tag): make tag current, delete every other store except the tile store
    - on_clear_requested(): delete everything, tile store included

    The tile store is generation-independent: tiles survive app updates.
    """

    def __init__(self, store: BlobStore, tile_store: str, asset_prefix: str = "assets", version: str = "v1"):
        self.store = store
        self.tile_store = tile_store
        self.asset_prefix = asset_prefix
        self._current = self.generation_for(version)

    @property
    def current(self) -> CacheGeneration:
        return self._current

    def generation_for(self, tag: str) -> CacheGeneration:
        if not tag:
            raise ValueError("generation tag must be non-empty")
        return CacheGeneration(version=tag, store_names=frozenset({f"{self.asset_prefix}-{tag}"}))

    def asset_store(self) -> str:
        """Name of the asset store that caches writes go to."""
        return min(self._current.store_names)

    async def on_install(
        self,
        tag: str,
        fetch: Callable[..., Awaitable[GatewayResponse]],
        upstream: str,
        precache_paths: Iterable[str],
    ) -> Set[str]:
        """
        Fetch `precache_paths` from upstream into the asset store of `tag`.
        Returns the paths stored; individual failures are logged and skipped.
        """
        target = min(self.generation_for(tag).store_names)
        paths = list(precache_paths)
        stored: Set[str] = set()
        for path in paths:
            try:
                resp = await fetch(upstream.rstrip("/") + path)
            except NetworkFailure as e:
                log.warning("precache fetch failed: %s (%s)", path, e)
                continue
            if not resp.ok:
                log.warning("precache got status %s for %s", resp.status, path)
                continue
            resp = normalize_redirect(resp)
            try:
                await self.store.put(target, path, resp.body, resp.content_type)
            except StoreWriteFailure as e:
                log.warning("precache write failed: %s (%s)", path, e)
                continue
            stored.add(path)
        log.info("install complete: %s (%d/%d precached)", tag, len(stored), len(paths))
        return stored

    async def on_activate(self, tag: Optional[str] = None) -> Set[str]:
        """Switch to `tag` (default: keep the current one) and evict stale stores."""
        if tag:
            self._current = self.generation_for(tag)
        keep = set(self._current.store_names) | {self.tile_store}
        deleted: Set[str] = set()
        for name in sorted(await self.store.store_names()):
            if name in keep:
                continue
            if await self.store.delete(name):
                deleted.add(name)
        log.info("activated generation %s; evicted %s", self._current.version, sorted(deleted) or "nothing")
        return deleted

    async def on_clear_requested(self) -> Set[str]:
        """Explicit user reset: drop every store."""
        deleted: Set[str] = set()
        for name in sorted(await self.store.store_names()):
            if await self.store.delete(name):
                deleted.add(name)
        log.warning("all stores cleared: %s", sorted(deleted))
        return deleted
