import numpy as np
import pytest
from rasterio.transform import from_origin

from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.raster_tile import RasterTile
from mangrove_mapper.threshold_mask import (
    ThresholdPredicate,
    apply_thresholds,
    default_predicates,
    threshold_mask,
)


def _composite(ndvi, mndwi, shape=(3, 3)):
    return RasterTile({"NDVI": np.full(shape, ndvi), "MNDWI": np.full(shape, mndwi)})


def _elevation(value, shape=(3, 3)):
    return RasterTile({"elevation": np.full(shape, float(value))})


def test_low_vegetated_wet_pixels_kept():
    masked = apply_thresholds(_composite(0.30, -0.40), reference=_elevation(10))
    assert masked.valid_count == 9


def test_high_elevation_pixels_masked():
    masked = apply_thresholds(_composite(0.30, -0.40), reference=_elevation(100))
    assert masked.valid_count == 0


@pytest.mark.parametrize("ndvi, mndwi", [(0.20, -0.40), (0.30, -0.60), (0.25, -0.40)])
def test_failing_index_predicates(ndvi, mndwi):
    masked = apply_thresholds(_composite(ndvi, mndwi), reference=_elevation(10))
    assert masked.valid_count == 0


def test_predicate_order_does_not_matter():
    rng = np.random.default_rng(5)
    tile = RasterTile({"NDVI": rng.uniform(-1, 1, (10, 10)), "MNDWI": rng.uniform(-1, 1, (10, 10))})
    elevation = RasterTile({"elevation": rng.uniform(0, 130, (10, 10))})

    predicates = list(default_predicates())
    forward = threshold_mask(tile, predicates, elevation)
    backward = threshold_mask(tile, predicates[::-1], elevation)
    np.testing.assert_array_equal(forward, backward)


def test_existing_mask_is_kept():
    tile = _composite(0.5, 0.0).with_mask(np.eye(3, dtype=bool))
    assert apply_thresholds(tile, reference=_elevation(0)).valid_count == 3


def test_invalid_reference_pixels_fail():
    elevation = RasterTile({"elevation": np.zeros((3, 3))}, mask=np.eye(3, dtype=bool))
    assert apply_thresholds(_composite(0.5, 0.0), reference=elevation).valid_count == 3


def test_inclusive_comparators():
    tile = RasterTile({"NDVI": np.array([[0.24, 0.25, 0.26]])})
    np.testing.assert_array_equal(threshold_mask(tile, [("NDVI", ">=", 0.25)]), [[False, True, True]])
    np.testing.assert_array_equal(threshold_mask(tile, [("NDVI", "<=", 0.25)]), [[True, True, False]])


def test_nan_fails_predicate():
    tile = RasterTile({"NDVI": np.array([[np.nan, 0.9]])})
    np.testing.assert_array_equal(threshold_mask(tile, [("NDVI", ">", 0.25)]), [[False, True]])


def test_unknown_comparator():
    with pytest.raises(ConfigurationError, match="comparator"):
        threshold_mask(_composite(0.3, 0.0), [ThresholdPredicate("NDVI", "==", 0.3)])


def test_missing_band():
    with pytest.raises(ConfigurationError, match="elevation"):
        apply_thresholds(_composite(0.3, 0.0))


def test_reference_shape_mismatch():
    with pytest.raises(ConfigurationError, match="grid"):
        apply_thresholds(_composite(0.3, 0.0), reference=_elevation(0, shape=(2, 2)))


def test_reference_on_another_grid_rejected():
    composite = RasterTile(
        {"NDVI": np.full((3, 3), 0.5), "MNDWI": np.zeros((3, 3))},
        transform=from_origin(0.0, 90.0, 30.0, 30.0),
    )
    elevation = RasterTile({"elevation": np.zeros((3, 3))}, transform=from_origin(500000.0, 9000000.0, 30.0, 30.0))

    with pytest.raises(ConfigurationError, match="grid"):
        apply_thresholds(composite, reference=elevation)


def test_reference_in_another_crs_rejected():
    composite = RasterTile({"NDVI": np.full((3, 3), 0.5), "MNDWI": np.zeros((3, 3))}, crs="EPSG:32618")
    elevation = RasterTile({"elevation": np.zeros((3, 3))}, crs="EPSG:32619")

    with pytest.raises(ConfigurationError, match="grid"):
        apply_thresholds(composite, reference=elevation)
