import numpy as np
import pytest
from rasterio.transform import from_origin

from mangrove_mapper.compositor import composite, median_composite, quality_mosaic
from mangrove_mapper.errors import ConfigurationError, DataGapError
from mangrove_mapper.raster_tile import RasterTile


def _tile(value, mask=None, ndvi=None, shape=(2, 2), transform=None):
    bands = {"B4": np.full(shape, float(value))}
    if ndvi is not None:
        bands["NDVI"] = np.full(shape, float(ndvi))
    return RasterTile(bands, mask, transform)


def test_median_of_valid_observations():
    tiles = [_tile(1), _tile(5), _tile(3)]
    out = median_composite(tiles)
    np.testing.assert_allclose(out.band("B4"), 3.0)
    assert out.mask.all()


def test_median_ignores_masked_observations():
    masked = np.array([[False, True], [True, True]])
    tiles = [_tile(100, mask=masked), _tile(2), _tile(4)]
    out = median_composite(tiles)
    assert out.band("B4")[0, 0] == pytest.approx(3.0)
    assert out.band("B4")[1, 1] == pytest.approx(4.0)


def test_median_is_order_independent():
    rng = np.random.default_rng(7)
    tiles = [
        RasterTile({"B4": rng.random((8, 8)), "B5": rng.random((8, 8))}, rng.random((8, 8)) > 0.3)
        for _ in range(5)
    ]
    forward = median_composite(tiles)
    backward = median_composite(tiles[::-1])
    shuffled = median_composite([tiles[i] for i in (2, 0, 4, 1, 3)])

    np.testing.assert_array_equal(forward.mask, backward.mask)
    np.testing.assert_array_equal(forward.mask, shuffled.mask)
    for band in ("B4", "B5"):
        np.testing.assert_allclose(forward.band(band), backward.band(band), equal_nan=True)
        np.testing.assert_allclose(forward.band(band), shuffled.band(band), equal_nan=True)


def test_pixel_without_observation_is_invalid():
    never = np.array([[False, True], [True, True]])
    out = median_composite([_tile(1, mask=never), _tile(2, mask=never)])
    assert not out.mask[0, 0]
    assert out.valid_count == 3


def test_quality_mosaic_takes_best_observation():
    tiles = [_tile(10, ndvi=0.2), _tile(20, ndvi=0.8), _tile(30, ndvi=0.5)]
    out = quality_mosaic(tiles)
    np.testing.assert_allclose(out.band("B4"), 20.0)
    np.testing.assert_allclose(out.band("NDVI"), 0.8)


def test_quality_mosaic_skips_invalid_and_breaks_ties_early():
    masked = np.zeros((2, 2), dtype=bool)
    tiles = [_tile(10, ndvi=0.9, mask=masked), _tile(20, ndvi=0.5), _tile(30, ndvi=0.5)]
    out = quality_mosaic(tiles)
    np.testing.assert_allclose(out.band("B4"), 20.0)


def test_quality_band_must_exist():
    with pytest.raises(ConfigurationError, match="NDVI"):
        quality_mosaic([_tile(1), _tile(2)])


def test_custom_reducer():
    def first_valid(values, valid, band_names):
        return values[0], valid[0]

    out = composite([_tile(7), _tile(9)], reducer=first_valid)
    np.testing.assert_allclose(out.band("B4"), 7.0)


def test_chunked_matches_whole_grid():
    rng = np.random.default_rng(11)
    tiles = [
        RasterTile({"B4": rng.random((13, 6))}, rng.random((13, 6)) > 0.4)
        for _ in range(4)
    ]
    whole = median_composite(tiles)
    chunked = median_composite(tiles, chunk_rows=4)
    np.testing.assert_array_equal(whole.mask, chunked.mask)
    np.testing.assert_allclose(whole.band("B4"), chunked.band("B4"), equal_nan=True)


def test_empty_stack_is_a_data_gap():
    with pytest.raises(DataGapError):
        median_composite([])


def test_mismatched_bands_rejected():
    with pytest.raises(ConfigurationError, match="bands"):
        median_composite([_tile(1), _tile(1, ndvi=0.1)])


def test_mismatched_grid_rejected():
    shifted = from_origin(30.0, 0.0, 30.0, 30.0)
    with pytest.raises(ConfigurationError, match="aligned"):
        median_composite([_tile(1), _tile(1, transform=shifted)])


def test_unknown_reducer_rejected():
    with pytest.raises(ConfigurationError, match="reducer"):
        composite([_tile(1)], reducer="mean")
