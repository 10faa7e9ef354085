#!/usr/bin/env python3
"""
Build the offline tile pyramid for one document page.

Writes {tiles_base}/{level}/{col}_{row}.png tiles and {tiles_base}/osd_config.json
into the tile store configured in config/params.yaml (tiles.store_root).
The previous pyramid is purged first; the manifest is written last.

- If --src is a PDF: render page --page with poppler at every level.
- If --src is an image: treat it as the page rendered at --scale.
- Else (--synthetic WxH): draw a feature-rich test page (grid, shapes, text).

Examples:
  python -m scripts.build_pyramid --src docs/plan.pdf --page 1
  python -m scripts.build_pyramid --src scan.png --tile-size 256
  python -m scripts.build_pyramid --synthetic 1000x700
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Tuple

import cv2
import numpy as np

from common.config import load_config
from common.errors import BuildCancelled, PyramidError
from common.logging_setup import get_logger, setup_logging
from common.types import PyramidManifest, PyramidSession
from gateway.store import FileBlobStore
from tiler.builder import PyramidBuilder
from tiler.rasterize import ImageRasterizer, Rasterizer, open_rasterizer


log = get_logger("scripts.build_pyramid")


def synthesize_page(size: Tuple[int, int], seed: int = 1234) -> np.ndarray:
    """Generate a page-like RGB image with edges, boxes and text at every scale."""
    w, h = size
    rng = np.random.default_rng(seed)
    page = np.full((h, w, 3), 250, dtype=np.uint8)

    # Ruled grid
    step = max(8, min(w, h) // 24)
    for x in range(0, w, step):
        cv2.line(page, (x, 0), (x, h - 1), (220, 220, 235), 1)
    for y in range(0, h, step):
        cv2.line(page, (0, y), (w - 1, y), (220, 220, 235), 1)

    # Boxes and circles
    for _ in range(40):
        x1, y1 = int(rng.integers(0, w)), int(rng.integers(0, h))
        x2, y2 = int(rng.integers(0, w)), int(rng.integers(0, h))
        color = tuple(int(c) for c in rng.integers(30, 200, size=3))
        cv2.rectangle(page, (min(x1, x2), min(y1, y2)), (max(x1, x2), max(y1, y2)), color, 2)
    for _ in range(25):
        c = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        r = int(rng.integers(6, max(7, min(w, h) // 8)))
        cv2.circle(page, c, r, (40, 40, 160), 1)

    font_scale = max(0.5, min(w, h) / 600.0)
    cv2.putText(page, "OFFLINE PYRAMID TEST PAGE", (step, h - step), cv2.FONT_HERSHEY_SIMPLEX, font_scale, (20, 20, 20), 2, cv2.LINE_AA)
    return page


def parse_size(s: str) -> Tuple[int, int]:
    try:
        w, h = [int(v) for v in s.lower().split("x")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WxH, got {s!r}") from None
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError("width and height must be > 0")
    return w, h


def _progress(fraction: float) -> None:
    print(f"[..] {fraction * 100:5.1f}%", flush=True)


async def _run(rasterizer: Rasterizer, cfg: dict, tile_size: int) -> PyramidManifest:
    session = PyramidSession.from_config(cfg)
    store = FileBlobStore(cfg["tiles"]["store_root"])
    builder = PyramidBuilder(store, session, workers=int(cfg["tiles"]["workers"]))
    full_w, full_h = rasterizer.full_size
    return await builder.build(rasterizer, full_w, full_h, tile_size, progress_sink=_progress)


def main() -> int:
    ap = argparse.ArgumentParser(description="Build the offline tile pyramid for one page")
    ap.add_argument("--config", default=None, help="YAML config (default: $APP_CONFIG or config/params.yaml)")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--src", default="", help="PDF or page image")
    src.add_argument("--synthetic", type=parse_size, default=None, help="Draw a WxH test page instead")
    ap.add_argument("--page", type=int, default=1, help="1-based PDF page number")
    ap.add_argument("--tile-size", type=int, default=None, help="Tile edge in pixels")
    ap.add_argument("--scale", type=float, default=None, help="Base render scale")
    ap.add_argument("--seed", type=int, default=1234, help="Seed for the synthetic page")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg["logging"]["level"], force=True)
    tile_size = int(args.tile_size or cfg["tiles"]["tile_size"])
    scale = float(args.scale or cfg["tiles"]["base_scale"])

    try:
        if args.synthetic:
            rasterizer: Rasterizer = ImageRasterizer(synthesize_page(args.synthetic, seed=args.seed), base_scale=scale)
        else:
            rasterizer = open_rasterizer(args.src, page=args.page, base_scale=scale)
        manifest = asyncio.run(_run(rasterizer, cfg, tile_size))
    except BuildCancelled:
        print("[!!] conversion cancelled", file=sys.stderr)
        return 130
    except (PyramidError, OSError):
        log.exception("conversion failed")
        print("[!!] conversion failed", file=sys.stderr)
        return 1

    print(f"[ok] {manifest.full_width}x{manifest.full_height}, levels 0..{manifest.max_level}, tiles at {manifest.tile_url_template}")
    print("Serve them offline with:")
    print("  uvicorn gateway.server:create_app --factory --port 8000")
    return 0


if __name__ == "__main__":
    sys.exit(main())
