from __future__ import annotations

"""
Pyramid builder: rasterize each level, cut it into tiles, store the tiles,
and write the manifest last.

    builder = PyramidBuilder(store, PyramidSession())
    manifest = await builder.build(rasterizer, w, h, 256, progress_sink=print)

Levels are built coarsest first and strictly one after another; all tile
writes of level L are awaited before level L+1 is rasterized, so at most one
level raster is in memory and an aborted build always leaves a complete
prefix of levels. Without the manifest, the router serves none of them.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from common.errors import BuildCancelled, RasterizationFailure, StoreWriteFailure
from common.logging_setup import get_logger
from common.types import MANIFEST_CONTENT_TYPE, PyramidManifest, PyramidSession, TileAddress
from common.utils import Stopwatch, clamp, iso_now_ms
from gateway.store import BlobStore
from tiler.encode import WHITE, encode_tile, slice_tile
from tiler.geometry import (
    compute_level_dims,
    compute_max_level,
    iter_tile_addresses,
    level_reduction,
    tile_grid,
)
from tiler.rasterize import Rasterizer


log = get_logger("tiler.builder")

ProgressSink = Callable[[float], None]


class CancelToken:
    """Cooperative cancellation, checked by the builder between levels."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BuildStatus:
    """Observable state of the most recent build, for polling UIs."""
    state: str = "idle"  # idle | running | done | failed | cancelled
    progress: float = 0.0
    level: int = -1
    max_level: int = 0
    message: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    manifest: Optional[dict] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "progress": round(self.progress, 4),
            "level": self.level,
            "maxLevel": self.max_level,
            "message": self.message,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "manifest": self.manifest,
        }


class PyramidBuilder:
    def __init__(
        self,
        store: BlobStore,
        session: PyramidSession,
        *,
        workers: int = 4,
        background: Tuple[int, int, int] = WHITE,
    ):
        self.store = store
        self.session = session
        self.workers = max(1, int(workers))
        self.background = background

    # -------- public API --------

    async def build(
        self,
        rasterizer: Rasterizer,
        full_width: int,
        full_height: int,
        tile_edge: int,
        progress_sink: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PyramidManifest:
        """
        Build the whole pyramid and return its manifest.

        Raises InvalidGeometry, RasterizationFailure, StoreWriteFailure or
        BuildCancelled; in every case the manifest is absent afterwards.
        """
        manifest = PyramidManifest.derive(
            full_width,
            full_height,
            tile_edge,
            tiles_base=self.session.tiles_base,
            encoding=self.session.encoding,
        )
        max_level = manifest.max_level
        sw = Stopwatch()
        log.info(
            "build start",
            extra={"extra": {"width": full_width, "height": full_height, "tile_edge": tile_edge, "max_level": max_level}},
        )

        # Stale tiles of the previous document must never show under the new addressing
        await self.store.delete(self.session.tile_store)

        for level in range(max_level + 1):
            if cancel is not None and cancel.cancelled:
                log.warning("build cancelled", extra={"extra": {"completed_levels": level}})
                raise BuildCancelled(last_level=level - 1)
            written = await self._build_level(rasterizer, manifest, level)
            if progress_sink is not None:
                progress_sink(1.0 if max_level == 0 else clamp(level / max_level, 0.0, 1.0))
            log.info("level done", extra={"extra": {"level": level, "tiles": written, "ms": sw.ms()}})

        await self._write_manifest(manifest)
        log.info("build done", extra={"extra": {"max_level": max_level, "ms": sw.ms()}})
        return manifest

    # -------- internals --------

    async def _build_level(self, rasterizer: Rasterizer, manifest: PyramidManifest, level: int) -> int:
        reduction = level_reduction(level, manifest.max_level)
        level_w, level_h = compute_level_dims(level, manifest.max_level, manifest.full_width, manifest.full_height)
        scale = rasterizer.base_scale / reduction

        try:
            raster = await asyncio.to_thread(rasterizer.render_at_scale, scale)
        except RasterizationFailure as e:
            e.level = level
            raise
        except Exception as e:
            raise RasterizationFailure(f"rasterizer failed at level {level}: {e}", level=level) from e

        raster = self._check_raster(raster, level, (level_w, level_h))
        cols, rows = tile_grid(level_w, level_h, manifest.tile_edge)
        sem = asyncio.Semaphore(self.workers)

        async def one(addr: TileAddress) -> None:
            async with sem:
                data = await asyncio.to_thread(self._encode, raster, addr, manifest)
                await self.store.put(self.session.tile_store, manifest.tile_key(addr), data, manifest.content_type)

        tasks: List[asyncio.Task] = [asyncio.create_task(one(a)) for a in iter_tile_addresses(level, cols, rows)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return len(tasks)

    def _encode(self, raster: np.ndarray, addr: TileAddress, manifest: PyramidManifest) -> bytes:
        tile = slice_tile(raster, addr.col, addr.row, manifest.tile_edge, self.background)
        try:
            return encode_tile(tile, manifest.encoding)
        except RasterizationFailure as e:
            e.level = addr.level
            raise

    @staticmethod
    def _check_raster(raster: np.ndarray, level: int, expected: Tuple[int, int]) -> np.ndarray:
        if not isinstance(raster, np.ndarray) or raster.ndim != 3 or raster.shape[2] < 3:
            raise RasterizationFailure(f"level {level}: rasterizer must return an (H, W, 3) array", level=level)
        h, w = raster.shape[:2]
        if (w, h) != expected:
            raise RasterizationFailure(
                f"level {level}: raster is {w}x{h}, geometry requires {expected[0]}x{expected[1]}",
                level=level,
            )
        if raster.dtype != np.uint8:
            raster = raster.astype(np.uint8)
        return raster[..., :3]

    async def _write_manifest(self, manifest: PyramidManifest) -> None:
        try:
            await self.store.put(
                self.session.tile_store, self.session.manifest_path, manifest.to_json(), MANIFEST_CONTENT_TYPE
            )
        except StoreWriteFailure:
            log.error("manifest write failed", extra={"extra": {"path": self.session.manifest_path}})
            raise


async def run_build(
    builder: PyramidBuilder,
    rasterizer: Rasterizer,
    tile_edge: int,
    status: BuildStatus,
    cancel: Optional[CancelToken] = None,
) -> Optional[PyramidManifest]:
    """
    Run a build while keeping `status` current. Failures are logged with
    their cause and reported to the user only as "conversion failed".
    """
    status.state, status.progress, status.level = "running", 0.0, -1
    status.message, status.manifest = "", None
    status.started_at, status.finished_at = iso_now_ms(), None

    def sink(fraction: float) -> None:
        status.progress = fraction
        status.level += 1

    try:
        full_w, full_h = await asyncio.to_thread(lambda: rasterizer.full_size)
        status.max_level = compute_max_level(full_w, full_h, tile_edge)
        manifest = await builder.build(rasterizer, full_w, full_h, tile_edge, progress_sink=sink, cancel=cancel)
    except BuildCancelled:
        status.state, status.message = "cancelled", "conversion cancelled"
        return None
    except Exception:
        log.exception("conversion failed")
        status.state, status.message = "failed", "conversion failed"
        return None
    finally:
        status.finished_at = iso_now_ms()

    status.state, status.progress, status.message = "done", 1.0, "conversion complete"
    status.manifest = manifest.to_dict()
    return manifest
