from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from common.errors import RasterizationFailure


WHITE: Tuple[int, int, int] = (255, 255, 255)

_CV2_EXT = {"png": ".png", "jpg": ".jpg", "jpeg": ".jpg", "webp": ".webp"}


def slice_tile(
    raster: np.ndarray,
    col: int,
    row: int,
    tile_edge: int,
    background: Tuple[int, int, int] = WHITE,
) -> np.ndarray:
    """
    Cut the (col, row) tile out of an RGB raster. The result is always
    tile_edge x tile_edge; the part outside the raster is `background`.
    """
    h, w = raster.shape[:2]
    sx, sy = col * tile_edge, row * tile_edge
    sw = min(tile_edge, w - sx)
    sh = min(tile_edge, h - sy)

    if sw == tile_edge and sh == tile_edge:
        return np.ascontiguousarray(raster[sy : sy + sh, sx : sx + sw])

    tile = np.empty((tile_edge, tile_edge, 3), dtype=np.uint8)
    tile[:] = background
    if sw > 0 and sh > 0:
        tile[:sh, :sw] = raster[sy : sy + sh, sx : sx + sw]
    return tile


def encode_tile(tile_rgb: np.ndarray, encoding: str = "png") -> bytes:
    """Encode an RGB tile with OpenCV (which expects BGR)."""
    ext = _CV2_EXT.get(encoding.lower())
    if ext is None:
        raise RasterizationFailure(f"unsupported tile encoding: {encoding}")
    bgr = cv2.cvtColor(tile_rgb, cv2.COLOR_RGB2BGR)
    ok, buf = cv2.imencode(ext, bgr)
    if not ok:
        raise RasterizationFailure(f"{encoding} encode failed")
    return buf.tobytes()


def decode_tile(data: bytes) -> np.ndarray:
    """Inverse of encode_tile (RGB out); used by tooling and tests."""
    arr = np.frombuffer(data, dtype=np.uint8)
    bgr = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if bgr is None:
        raise ValueError("failed to decode tile bytes")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
