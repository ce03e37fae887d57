import numpy as np
import pytest

from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.post_processing import connected_pixel_count, filter_small_components
from mangrove_mapper.raster_tile import RasterTile


def _classification(values, mask=None):
    return RasterTile({"classification": np.asarray(values, dtype=float)}, mask)


def test_isolated_pixel_removed_block_kept():
    grid = np.zeros((12, 12))
    grid[0, 0] = 1
    grid[4:10, 4:10] = 1

    out = filter_small_components(_classification(grid))

    assert not out.mask[0, 0]
    assert out.mask[4:10, 4:10].all()
    assert out.valid_count == 36


def test_counts_are_capped():
    counts = connected_pixel_count(np.ones((20, 20), dtype=bool), max_size=100)
    assert counts.max() == 100
    assert (counts == 100).all()


def test_counts_background_zero():
    foreground = np.zeros((5, 5), dtype=bool)
    foreground[1:3, 1:3] = True
    counts = connected_pixel_count(foreground)
    assert counts[0, 0] == 0
    np.testing.assert_array_equal(counts[1:3, 1:3], 4)


def test_diagonal_neighbours_depend_on_connectivity():
    foreground = np.eye(4, dtype=bool)
    np.testing.assert_array_equal(connected_pixel_count(foreground, connectivity=4)[foreground], 1)
    np.testing.assert_array_equal(connected_pixel_count(foreground, connectivity=8)[foreground], 4)


def test_min_size_is_strict():
    grid = np.zeros((10, 10))
    grid[0:5, 0:5] = 1  # exactly 25 pixels
    assert filter_small_components(_classification(grid), min_size=25).valid_count == 0
    assert filter_small_components(_classification(grid), min_size=24).valid_count == 25


def test_lower_min_size_never_removes_pixels():
    rng = np.random.default_rng(8)
    tile = _classification((rng.random((40, 40)) > 0.45).astype(float))
    kept = {m: filter_small_components(tile, min_size=m).mask for m in (40, 25, 10, 3, 0)}
    sizes = sorted(kept)
    for lower, higher in zip(sizes, sizes[1:]):
        assert not (kept[higher] & ~kept[lower]).any()


def test_invalid_and_background_pixels_not_retained():
    grid = np.ones((8, 8))
    grid[:, 0] = 0
    mask = np.ones((8, 8), dtype=bool)
    mask[:, 4] = False
    out = filter_small_components(_classification(grid, mask), min_size=2)
    assert not out.mask[:, 0].any()
    assert not out.mask[:, 4].any()
    assert out.mask[:, 1:4].all()


def test_target_classes_selector():
    grid = np.zeros((10, 10))
    grid[:, 5:] = 2
    out = filter_small_components(_classification(grid), min_size=10, target_classes=(2,))
    assert out.valid_count == 50
    assert out.mask[:, 5:].all()


def test_bad_connectivity():
    with pytest.raises(ConfigurationError, match="Connectivity"):
        connected_pixel_count(np.ones((3, 3), dtype=bool), connectivity=6)
