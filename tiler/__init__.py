"""
Tiler: tile pyramid construction

- geometry.py: level count, per-level dimensions and tile grids (pure)
- rasterize.py: Rasterizer capability + image / PDF page adapters
- encode.py: tile slicing with background padding, PNG encoding
- builder.py: PyramidBuilder (level-by-level build, manifest written last)

Entry point:
    python -m scripts.build_pyramid --src page.pdf
"""
from .geometry import compute_level_dims, compute_max_level, tile_grid

__all__ = ["compute_max_level", "compute_level_dims", "tile_grid"]
