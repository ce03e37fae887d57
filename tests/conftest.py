"""Shared fixtures: synthetic Landsat scenes on a 30 m grid."""

from datetime import date

import numpy as np
import pytest

from rasterio.transform import from_origin

from mangrove_mapper.raster_tile import RasterTile
from mangrove_mapper.training_samples import LabeledGeometry

QA_CLEAR = 322   # bits 1, 6, 8
QA_CLOUD = 352   # bit 5 set
QA_SHADOW = 328  # bit 3 set

# Surface reflectance of the two synthetic cover types
MANGROVE_SR = {"B2": 0.03, "B3": 0.06, "B4": 0.04, "B5": 0.30, "B6": 0.12, "B7": 0.06}
FOREST_SR = {"B2": 0.04, "B3": 0.08, "B4": 0.06, "B5": 0.35, "B6": 0.22, "B7": 0.12}

SCENE_SIZE = 20
PIXEL = 30.0
ORIGIN_Y = SCENE_SIZE * PIXEL
CRS = "EPSG:32618"  # UTM 18N


@pytest.fixture
def transform():
    return from_origin(0.0, ORIGIN_Y, PIXEL, PIXEL)


@pytest.fixture
def make_scene(transform):
    """
    Factory of 20x20 Landsat tiles: mangrove in the left half, forest in the right half.
    """
    def _make(acquired=date(2019, 6, 1), qa=None, seed=0, noise=0.002):
        rng = np.random.default_rng(seed)
        bands = {}
        for band in MANGROVE_SR:
            values = np.empty((SCENE_SIZE, SCENE_SIZE))
            values[:, : SCENE_SIZE // 2] = MANGROVE_SR[band]
            values[:, SCENE_SIZE // 2:] = FOREST_SR[band]
            bands[band] = values + rng.uniform(-noise, noise, values.shape)
        if qa is None:
            qa = np.full((SCENE_SIZE, SCENE_SIZE), QA_CLEAR)
        bands["pixel_qa"] = qa
        return RasterTile(bands, transform=transform, acquired=acquired, crs=CRS)

    return _make


@pytest.fixture
def elevation(transform):
    return RasterTile({"elevation": np.full((SCENE_SIZE, SCENE_SIZE), 10.0)}, transform=transform, crs=CRS)


def _box(col0, row0, col1, row1):
    """Polygon covering pixel columns col0..col1-1 and rows row0..row1-1."""
    x0, x1 = col0 * PIXEL, col1 * PIXEL
    y0, y1 = ORIGIN_Y - row0 * PIXEL, ORIGIN_Y - row1 * PIXEL
    return {"type": "Polygon", "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]]}


@pytest.fixture
def box():
    return _box


@pytest.fixture
def training_geometries():
    return [
        LabeledGeometry(_box(1, 1, 9, 19), 1, "mangrove"),
        LabeledGeometry(_box(11, 1, 19, 19), 0, "forest"),
    ]
