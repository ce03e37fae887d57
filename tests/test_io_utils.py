import json
from datetime import date

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from rasterio.crs import CRS
from rasterio.transform import from_origin
from shapely.geometry import Point

from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.io_utils import (
    TileArchive,
    export_tile,
    load_geometries,
    load_tile,
    resolve_region,
    save_tile,
)
from mangrove_mapper.raster_tile import RasterTile

UTM_18N = "EPSG:32618"


def _tile(acquired=None, origin_x=0.0, shape=(4, 4)):
    mask = np.ones(shape, dtype=bool)
    mask[0, 0] = False
    return RasterTile(
        {"B4": np.full(shape, 0.1), "B5": np.full(shape, 0.3)},
        mask,
        from_origin(origin_x, 120.0, 30.0, 30.0),
        acquired,
        UTM_18N,
    )


def test_saved_tile_keeps_mask_grid_and_date(tmp_path):
    tile = _tile(date(2019, 3, 2), origin_x=60.0)
    path = save_tile(tile, tmp_path / "scene")

    loaded = load_tile(path)

    assert path == tmp_path / "scene.tif"
    assert loaded.band_names == ["B4", "B5"]
    np.testing.assert_array_equal(loaded.mask, tile.mask)
    np.testing.assert_allclose(loaded.band("B5"), tile.band("B5"))
    assert loaded.transform.almost_equals(tile.transform)
    assert loaded.crs == tile.crs
    assert loaded.acquired == date(2019, 3, 2)
    assert loaded.same_grid(tile)


def test_save_tile_keeps_dotted_names(tmp_path):
    assert save_tile(_tile(), tmp_path / "scene.v2") == tmp_path / "scene.v2.tif"
    assert save_tile(_tile(), tmp_path / "scene.tif") == tmp_path / "scene.tif"


def test_load_band_subset(tmp_path):
    path = save_tile(_tile(), tmp_path / "scene")
    assert load_tile(path, ["B5"]).band_names == ["B5"]
    with pytest.raises(ConfigurationError, match="B7"):
        load_tile(path, ["B7"])


def test_band_names_override_descriptions(tmp_path):
    path = tmp_path / "dem.tif"
    profile = {
        "driver": "GTiff", "height": 3, "width": 3, "count": 1, "dtype": "float32",
        "crs": UTM_18N, "transform": from_origin(0.0, 90.0, 30.0, 30.0),
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(np.full((3, 3), 12.0, dtype=np.float32), 1)

    assert load_tile(path).band_names == ["band_1"]
    dem = load_tile(path, band_names=["elevation"])
    assert dem.band_names == ["elevation"]
    assert dem.valid_count == 9
    with pytest.raises(ConfigurationError, match="band names"):
        load_tile(path, band_names=["elevation", "slope"])


def test_load_missing_tile(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_tile(tmp_path / "nothing.tif")


def test_archive_filters_by_date_and_sorts(tmp_path):
    save_tile(_tile(date(2020, 5, 1)), tmp_path / "c")
    save_tile(_tile(date(2018, 2, 1)), tmp_path / "a")
    save_tile(_tile(date(2017, 12, 31)), tmp_path / "b")
    save_tile(_tile(None), tmp_path / "undated")

    archive = TileArchive(tmp_path)
    tiles = archive.load_stack(["B4"], date(2018, 1, 1), date(2020, 12, 31))

    assert [t.acquired for t in tiles] == [date(2018, 2, 1), date(2020, 5, 1)]
    assert all(t.band_names == ["B4"] for t in tiles)
    assert archive.crs == CRS.from_user_input(UTM_18N)


def test_archive_filters_by_region(tmp_path):
    save_tile(_tile(date(2019, 1, 1), origin_x=0.0), tmp_path / "west")
    save_tile(_tile(date(2019, 1, 2), origin_x=10_000.0), tmp_path / "east")
    # shares only the x=120 edge with the region
    save_tile(_tile(date(2019, 1, 3), origin_x=120.0), tmp_path / "touching")

    tiles = TileArchive(tmp_path).load_stack(
        ["B4"], date(2019, 1, 1), date(2019, 12, 31), region=(0.0, 0.0, 120.0, 100.0)
    )
    assert [t.acquired for t in tiles] == [date(2019, 1, 1)]


def test_archive_root_must_exist(tmp_path):
    with pytest.raises(NotADirectoryError):
        TileArchive(tmp_path / "missing")


def test_empty_archive_has_no_crs(tmp_path):
    assert TileArchive(tmp_path).crs is None


def test_resolve_region_bbox():
    assert resolve_region("0,0,600,600") == (0.0, 0.0, 600.0, 600.0)


def test_resolve_named_region(tmp_path):
    regions = tmp_path / "regions.json"
    regions.write_text(json.dumps({"lake_x": [1, 2, 3, 4]}))
    assert resolve_region("lake_x", str(regions)) == (1.0, 2.0, 3.0, 4.0)
    with pytest.raises(ConfigurationError, match="Unknown region"):
        resolve_region("lake_y", str(regions))


@pytest.mark.parametrize("region", ["0,0,0,10", "a,b,c,d", "nowhere"])
def test_resolve_region_errors(region, tmp_path):
    with pytest.raises(ConfigurationError):
        resolve_region(region, str(tmp_path / "regions.json"))


def _write_points(path, rows, crs=UTM_18N, label_column="class"):
    frame = gpd.GeoDataFrame(
        {label_column: [r[0] for r in rows], "name": [r[1] for r in rows]},
        geometry=[Point(r[2], r[3]) for r in rows],
        crs=crs,
    )
    frame.to_file(path, driver="GPKG")
    return path


def test_load_geometries(tmp_path):
    path = _write_points(tmp_path / "training.gpkg", [(1, "m1", 15.0, 15.0), (0, "f1", 45.0, 15.0)])

    geometries = load_geometries(path, crs=UTM_18N)

    assert [g.label for g in geometries] == [1, 0]
    assert geometries[0].name == "m1"
    assert geometries[1].geometry.geom_type == "Point"
    assert (geometries[1].geometry.x, geometries[1].geometry.y) == pytest.approx((45.0, 15.0))


def test_load_geometries_reprojects_to_tile_crs(tmp_path):
    # the equator on the UTM 18N central meridian
    path = _write_points(tmp_path / "wgs84.gpkg", [(1, "m1", -75.0, 0.0)], crs="EPSG:4326")

    point = load_geometries(path, crs=UTM_18N)[0].geometry

    assert point.x == pytest.approx(500_000.0, abs=1e-3)
    assert point.y == pytest.approx(0.0, abs=1e-3)


def test_load_geometries_requires_label(tmp_path):
    path = _write_points(tmp_path / "bad.gpkg", [(1, "m1", 15.0, 15.0)], label_column="kind")
    with pytest.raises(ConfigurationError, match="class"):
        load_geometries(path)


def test_load_geometries_rejects_missing_label_values(tmp_path):
    path = _write_points(tmp_path / "nan.gpkg", [(1.0, "m1", 15.0, 15.0), (np.nan, "m2", 45.0, 15.0)])
    with pytest.raises(ConfigurationError, match="#1"):
        load_geometries(path)


def test_load_missing_geometries(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_geometries(tmp_path / "nothing.gpkg")


def test_export_tile_writes_outputs(tmp_path):
    classification = RasterTile(
        {"classification": np.eye(4)}, np.eye(4, dtype=bool), from_origin(0.0, 120.0, 30.0, 30.0), crs=UTM_18N
    )
    path = export_tile(classification, "run", region=(0, 0, 120, 120), out_dir=tmp_path)

    assert path == tmp_path / "run.tif"
    assert (tmp_path / "run.png").exists()
    with rasterio.open(path) as src:
        tags = src.tags()
    assert float(tags["SCALE"]) == 30.0
    assert json.loads(tags["REGION"]) == [0, 0, 120, 120]
    np.testing.assert_array_equal(load_tile(path).mask, np.eye(4, dtype=bool))


def test_export_tile_keeps_dotted_output_name(tmp_path):
    classification = RasterTile({"classification": np.eye(4)})

    path = export_tile(classification, "mangroves_v1.2", out_dir=tmp_path)

    assert path == tmp_path / "mangroves_v1.2.tif"
    assert path.exists()
    assert (tmp_path / "mangroves_v1.2.png").exists()
    assert not (tmp_path / "mangroves_v1.tif").exists()


def test_export_tile_max_pixels(tmp_path):
    with pytest.raises(ConfigurationError, match="max_pixels"):
        export_tile(_tile(), "big", max_pixels=10, out_dir=tmp_path)
