"""
Unit tests for tile geometry (tiler.geometry)
"""

import math

import pytest

from common.errors import InvalidGeometry
from tiler.geometry import (
    compute_level_dims,
    compute_max_level,
    count_tiles,
    iter_tile_addresses,
    level_reduction,
    tile_grid,
)


class TestMaxLevel:
    """compute_max_level = ceil(log2(max(w, h) / edge)), never negative"""

    def test_scenario_1000x700(self):
        """Test the 1000x700 reference page at 256 px"""
        assert compute_max_level(1000, 700, 256) == 2

    @pytest.mark.parametrize(
        "w,h,edge,expected",
        [
            (256, 256, 256, 0),
            (100, 50, 256, 0),
            (257, 10, 256, 1),
            (512, 512, 256, 1),
            (513, 1, 256, 2),
            (10, 4096, 256, 4),
            (1, 1, 1, 0),
        ],
    )
    def test_known_values(self, w, h, edge, expected):
        """Test max level for hand-computed sizes"""
        assert compute_max_level(w, h, edge) == expected

    @pytest.mark.parametrize("w,h,edge", [(1000, 700, 256), (1224, 1584, 256), (3000, 17, 100), (999, 999, 7)])
    def test_matches_log2_formula(self, w, h, edge):
        """Test integer max level agrees with ceil(log2(max / edge))"""
        expected = max(0, math.ceil(math.log2(max(w, h) / edge)))
        assert compute_max_level(w, h, edge) == expected

    @pytest.mark.parametrize("w,h,edge", [(0, 10, 256), (10, 0, 256), (10, 10, 0), (-5, 10, 256), (10, 10, -1)])
    def test_degenerate_inputs_raise(self, w, h, edge):
        """Test non-positive sizes raise InvalidGeometry"""
        with pytest.raises(InvalidGeometry):
            compute_max_level(w, h, edge)

    def test_invalid_geometry_is_a_value_error(self):
        """Test InvalidGeometry can be caught as ValueError"""
        with pytest.raises(ValueError):
            compute_max_level(0, 0, 0)


class TestLevelDims:
    def test_scenario_levels(self):
        """Test level dimensions of the reference page"""
        assert compute_level_dims(0, 2, 1000, 700) == (250, 175)
        assert compute_level_dims(1, 2, 1000, 700) == (500, 350)
        assert compute_level_dims(2, 2, 1000, 700) == (1000, 700)

    def test_rounds_up(self):
        """Test level dimensions round up"""
        # 1001 / 4 = 250.25 -> 251 ; 701 / 4 = 175.25 -> 176
        assert compute_level_dims(0, 2, 1001, 701) == (251, 176)

    @pytest.mark.parametrize("w,h,edge", [(1000, 700, 256), (1, 1, 256), (4097, 33, 64), (1224, 1584, 256)])
    def test_round_trip_recovers_full_size(self, w, h, edge):
        """Test the top level equals the full page size"""
        max_level = compute_max_level(w, h, edge)
        assert compute_level_dims(max_level, max_level, w, h) == (w, h)

    def test_level_zero_fits_in_one_tile(self):
        """Test level 0 always fits in a single tile"""
        w, h, edge = 5000, 3000, 256
        max_level = compute_max_level(w, h, edge)
        lw, lh = compute_level_dims(0, max_level, w, h)
        assert tile_grid(lw, lh, edge) == (1, 1)

    @pytest.mark.parametrize("level,max_level", [(-1, 2), (3, 2), (0, -1)])
    def test_level_out_of_range(self, level, max_level):
        """Test levels outside 0..maxLevel raise"""
        with pytest.raises(InvalidGeometry):
            compute_level_dims(level, max_level, 1000, 700)

    def test_reduction_is_power_of_two(self):
        """Test per-level reduction halves each level"""
        assert [level_reduction(l, 3) for l in range(4)] == [8, 4, 2, 1]


class TestTileGrid:
    def test_scenario_top_level_grid(self):
        """Test the reference page top level is 4x3 tiles"""
        assert tile_grid(1000, 700, 256) == (4, 3)

    def test_exact_multiple(self):
        """Test sizes that are exact tile multiples add no extra column"""
        assert tile_grid(512, 256, 256) == (2, 1)

    def test_degenerate(self):
        """Test an empty level or zero edge raises"""
        with pytest.raises(InvalidGeometry):
            tile_grid(0, 10, 256)

    def test_addresses_cover_grid_once(self):
        """Test addresses enumerate each grid cell once in row-major order"""
        addrs = list(iter_tile_addresses(2, 4, 3))
        assert len(addrs) == 12
        assert len(set(addrs)) == 12
        assert {(a.col, a.row) for a in addrs} == {(c, r) for c in range(4) for r in range(3)}
        assert all(a.level == 2 for a in addrs)

    def test_count_tiles_scenario(self):
        """Test total tile count of the reference page"""
        # level 0: 250x175 -> 1x1, level 1: 500x350 -> 2x2, level 2: 1000x700 -> 4x3
        assert count_tiles(1000, 700, 256) == 1 + 4 + 12
