from __future__ import annotations

"""
Tile geometry for a power-of-two pyramid.

Level 0 is the coarsest level; max_level is the full-resolution page.
Every function here is pure integer arithmetic so that rounding is identical
wherever it is used (builder, rasterizers, manifest).

Example (1000 x 700 page, 256 px tiles):
    compute_max_level(1000, 700, 256)            -> 2
    compute_level_dims(0, 2, 1000, 700)          -> (250, 175)
    compute_level_dims(2, 2, 1000, 700)          -> (1000, 700)
    tile_grid(1000, 700, 256)                    -> (4, 3)
"""

from typing import Iterator, Tuple

from common.errors import InvalidGeometry
from common.types import TileAddress


def _require_positive(**values: int) -> None:
    for name, v in values.items():
        if int(v) <= 0:
            raise InvalidGeometry(f"{name} must be > 0 (got {v})")


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def compute_max_level(width: int, height: int, tile_edge: int) -> int:
    """
    ceil(log2(max(width, height) / tile_edge)), clamped at 0.

    Computed as the smallest k >= 0 with tile_edge * 2**k >= max(width, height)
    to avoid float log2 error at exact powers of two.
    """
    _require_positive(width=width, height=height, tile_edge=tile_edge)
    longest = max(int(width), int(height))
    k = 0
    while int(tile_edge) << k < longest:
        k += 1
    return k


def level_reduction(level: int, max_level: int) -> int:
    """Downscale factor 2**(max_level - level) of a level relative to full resolution."""
    if max_level < 0 or not (0 <= level <= max_level):
        raise InvalidGeometry(f"level {level} outside 0..{max_level}")
    return 1 << (max_level - level)


def reduced_dims(full_width: int, full_height: int, reduction: int) -> Tuple[int, int]:
    """(ceil(full_width / reduction), ceil(full_height / reduction))"""
    _require_positive(full_width=full_width, full_height=full_height, reduction=reduction)
    return _ceil_div(int(full_width), int(reduction)), _ceil_div(int(full_height), int(reduction))


def compute_level_dims(level: int, max_level: int, full_width: int, full_height: int) -> Tuple[int, int]:
    return reduced_dims(full_width, full_height, level_reduction(level, max_level))


def tile_grid(level_width: int, level_height: int, tile_edge: int) -> Tuple[int, int]:
    """(cols, rows) needed to cover a level with tile_edge x tile_edge tiles."""
    _require_positive(level_width=level_width, level_height=level_height, tile_edge=tile_edge)
    return _ceil_div(int(level_width), int(tile_edge)), _ceil_div(int(level_height), int(tile_edge))


def iter_tile_addresses(level: int, cols: int, rows: int) -> Iterator[TileAddress]:
    """Row-major walk over one level's grid."""
    for row in range(rows):
        for col in range(cols):
            yield TileAddress(level=level, col=col, row=row)


def count_tiles(width: int, height: int, tile_edge: int) -> int:
    """Total number of tiles across levels 0..max_level."""
    max_level = compute_max_level(width, height, tile_edge)
    total = 0
    for level in range(max_level + 1):
        lw, lh = compute_level_dims(level, max_level, width, height)
        cols, rows = tile_grid(lw, lh, tile_edge)
        total += cols * rows
    return total
