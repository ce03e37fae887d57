"""
Input/Output utilities: tile archive, reference rasters, training geometries, export sink.

On-disk tile format is a GeoTIFF:
    - one band per tile band, named through the band descriptions
    - the validity mask as the dataset mask
    - the acquisition date in the ACQUIRED tag
"""

import json
import os
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from PIL import Image
from rasterio.coords import disjoint_bounds
from rasterio.crs import CRS

from mangrove_mapper.cste import ClassInfo, ExportConfig, GeneralPath
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import CrsLike, RasterTile
from mangrove_mapper.training_samples import LabeledGeometry

log = get_logger("io_utils")

TILE_SUFFIXES = (".tif", ".tiff")
ACQUIRED_TAG = "ACQUIRED"
Region = Tuple[float, float, float, float]
PathLike = Union[str, Path]


# ============================================================================
# REGIONS
# ============================================================================

def check_region(region: Sequence[float]) -> Region:
    """Validate a (minx, miny, maxx, maxy) bounding box."""
    if len(region) != 4:
        raise ConfigurationError(f"Region must be (minx, miny, maxx, maxy), got {region}")
    minx, miny, maxx, maxy = (float(v) for v in region)
    if maxx <= minx or maxy <= miny:
        raise ConfigurationError(f"Region {region} has zero area")
    return minx, miny, maxx, maxy


def resolve_region(region: str, regions_json: str = GeneralPath.REGIONS_JSON) -> Region:
    """
    Resolve a region identifier.

    Accepts 'minx,miny,maxx,maxy' or a name defined in a JSON file
    mapping names to [minx, miny, maxx, maxy].
    """
    parts = region.split(",")
    if len(parts) == 4:
        try:
            bounds = [float(p) for p in parts]
        except ValueError as e:
            raise ConfigurationError(f"Invalid region bounds '{region}': {e}") from e
        return check_region(bounds)

    if not os.path.exists(regions_json):
        raise ConfigurationError(f"Region '{region}' is not a bbox and {regions_json} does not exist")
    with open(regions_json, "r") as f:
        regions = json.load(f)
    if region not in regions:
        raise ConfigurationError(f"Unknown region '{region}'; known regions: {sorted(regions)}")
    return check_region(regions[region])


# ============================================================================
# TILE FILES
# ============================================================================

def tile_path(path: PathLike) -> Path:
    """Path of a GeoTIFF; '.tif' is appended unless the name already ends with a TIFF suffix."""
    path = Path(path)
    if path.suffix.lower() in TILE_SUFFIXES:
        return path
    return path.parent / f"{path.name}.tif"


def save_tile(tile: RasterTile, path: PathLike, tags: Optional[Dict[str, str]] = None) -> Path:
    """
    Write a tile as a float64 GeoTIFF.

    Args:
        tile: Tile to write
        path: Output path ('.tif' appended when missing)
        tags: Extra dataset tags

    Returns:
        Path of the written file
    """
    path = tile_path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    height, width = tile.shape

    profile = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": len(tile.band_names),
        "dtype": "float64",
        "crs": tile.crs,
        "transform": tile.transform,
        "compress": "deflate",
    }

    all_tags = dict(tags or {})
    if tile.acquired is not None:
        all_tags[ACQUIRED_TAG] = tile.acquired.isoformat()

    #! Keep the mask inside the GeoTIFF instead of a .msk sidecar
    with rasterio.Env(GDAL_TIFF_INTERNAL_MASK=True):
        with rasterio.open(path, "w", **profile) as dst:
            for i, name in enumerate(tile.band_names, start=1):
                dst.write(tile.band(name), i)
                dst.set_band_description(i, name)
            dst.write_mask(np.where(tile.mask, 255, 0).astype(np.uint8))
            if all_tags:
                dst.update_tags(**all_tags)
    return path


def _intersects(footprint: Sequence[float], region: Sequence[float]) -> bool:
    """Bounding boxes overlap with a non-zero area; touching edges do not count."""
    if disjoint_bounds(footprint, region):
        return False
    return footprint[0] < region[2] and region[0] < footprint[2] and footprint[1] < region[3] and region[1] < footprint[3]


def _band_names(src: rasterio.io.DatasetReader) -> List[str]:
    """Band descriptions, 'band_<i>' for undescribed bands."""
    return [desc if desc else f"band_{i}" for i, desc in enumerate(src.descriptions, start=1)]


def _acquired(tags: Dict[str, str]) -> Optional[date]:
    value = tags.get(ACQUIRED_TAG)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {ACQUIRED_TAG} tag '{value}': {e}") from e


def load_tile(
    path: PathLike,
    bands: Optional[Iterable[str]] = None,
    band_names: Optional[Sequence[str]] = None,
) -> RasterTile:
    """
    Load a GeoTIFF as a tile.

    Args:
        path: GeoTIFF path
        bands: Subset of bands to load (default: all)
        band_names: Names of the file bands in order, overriding the band
            descriptions (e.g. ['elevation'] for a plain DEM)

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If a requested band is missing
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tile not found: {path}")

    with rasterio.open(path) as src:
        names = list(band_names) if band_names is not None else _band_names(src)
        if len(names) != src.count:
            raise ConfigurationError(f"{len(names)} band names given for {src.count} bands in {path.name}")
        selected = list(bands) if bands is not None else names
        missing = [b for b in selected if b not in names]
        if missing:
            raise ConfigurationError(f"Tile {path.name} lacks bands {missing}; available: {names}")

        arrays = {name: src.read(names.index(name) + 1) for name in selected}
        mask = src.dataset_mask() != 0
        return RasterTile(arrays, mask, src.transform, _acquired(src.tags()), src.crs)


class TileArchive:
    """
    Directory of co-registered GeoTIFF tiles (one file per time-step).
    """

    def __init__(self, root: PathLike):
        self.root = Path(root)
        if not self.root.is_dir():
            raise NotADirectoryError(f"Not a directory: {self.root}")

    def list_tiles(self) -> List[Path]:
        return sorted(p for p in self.root.iterdir() if p.suffix.lower() in TILE_SUFFIXES)

    @property
    def crs(self) -> Optional[CRS]:
        """CRS of the first tile (None for an empty archive)."""
        for path in self.list_tiles():
            with rasterio.open(path) as src:
                return src.crs
        return None

    def load_stack(
        self,
        bands: Sequence[str],
        start: date,
        end: date,
        region: Optional[Sequence[float]] = None,
    ) -> List[RasterTile]:
        """
        Load the tiles acquired in [start, end] whose footprint intersects region.

        Args:
            bands: Bands to load from each tile
            start, end: Inclusive acquisition window
            region: (minx, miny, maxx, maxy) in the tiles' CRS

        Returns:
            Tiles ordered by acquisition date
        """
        if region is not None:
            region = check_region(region)

        selected = []
        for path in self.list_tiles():
            with rasterio.open(path) as src:
                acquired = _acquired(src.tags())
                footprint = tuple(src.bounds)
            if acquired is None:
                log.warning(f"Tile {path.name} has no acquisition date, skipped")
                continue
            if not start <= acquired <= end:
                continue
            if region is not None and not _intersects(footprint, region):
                continue
            selected.append((acquired, path))

        selected.sort(key=lambda item: item[0])
        tiles = [load_tile(path, bands) for _, path in selected]
        log.info(f"Loaded {len(tiles)} tiles between {start} and {end} from {self.root}")
        return tiles


# ============================================================================
# TRAINING / VALIDATION GEOMETRIES
# ============================================================================

def load_geometries(
    path: PathLike,
    label_property: str = "class",
    crs: CrsLike = None,
) -> List[LabeledGeometry]:
    """
    Read labelled geometries from any vector file readable by geopandas.

    Args:
        path: GeoJSON, GeoPackage, Shapefile...
        label_property: Integer class column
        crs: Target CRS (the tiles' CRS); geometries are reprojected to it

    Returns:
        Labelled shapely geometries in file order
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Geometry file not found: {path}")

    gdf = gpd.read_file(path)
    if label_property not in gdf.columns:
        raise ConfigurationError(f"Column '{label_property}' not found in {path}; columns: {list(gdf.columns)}")

    if crs is not None:
        if gdf.crs is None:
            log.warning(f"{path.name} has no CRS, assuming the tile CRS {crs}")
            gdf = gdf.set_crs(crs)
        else:
            gdf = gdf.to_crs(crs)

    geometries = []
    for i, (geometry, label) in enumerate(zip(gdf.geometry, gdf[label_property])):
        try:
            label = int(label)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Feature #{i} of {path} has an invalid '{label_property}': {label!r}") from e
        if geometry is None:
            raise ConfigurationError(f"Feature #{i} of {path} has no geometry")
        name = gdf["name"].iloc[i] if "name" in gdf.columns else None
        geometries.append(LabeledGeometry(geometry, label, str(name) if name else f"feature_{i}"))

    log.info(f"Loaded {len(geometries)} geometries from {path}")
    return geometries


# ============================================================================
# EXPORT SINK
# ============================================================================

def save_quicklook(tile: RasterTile, save_path: PathLike, band: str = ExportConfig.OUTPUT_BAND) -> None:
    """
    Save an RGBA PNG of a classification band; masked pixels are transparent.
    """
    classification = tile.band(band).astype(np.int64)
    rgba = np.zeros(tile.shape + (4,), dtype=np.uint8)
    for class_id, color in ClassInfo.CLASS_COLORS.items():
        rgba[classification == class_id, :3] = color
    rgba[..., 3] = np.where(tile.mask, 255, 0)

    Path(save_path).parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(rgba).save(save_path)


def export_tile(
    tile: RasterTile,
    name: str,
    region: Optional[Sequence[float]] = None,
    scale: float = ExportConfig.SCALE,
    max_pixels: float = ExportConfig.MAX_PIXELS,
    out_dir: PathLike = GeneralPath.OUTPUT_PATH,
    quicklook: bool = True,
) -> Path:
    """
    Persist a final tile as <out_dir>/<name>.tif with its export metadata as tags.

    Args:
        tile: Tile to export
        name: Output name, used verbatim as the file stem
        region: Bounding box recorded in the metadata
        scale: Pixel scale in meters recorded in the metadata
        max_pixels: Maximum number of pixels accepted
        out_dir: Output directory
        quicklook: Also write <name>.png of the classification band

    Returns:
        Path of the written GeoTIFF

    Raises:
        ConfigurationError: If the tile exceeds max_pixels
    """
    n_pixels = tile.shape[0] * tile.shape[1]
    if n_pixels > max_pixels:
        raise ConfigurationError(f"Export '{name}' has {n_pixels} pixels, above max_pixels={max_pixels:g}")
    if abs(abs(tile.transform.a) - scale) > 1e-9:
        log.warning(
            f"Export scale {scale} m differs from the tile pixel size "
            f"{abs(tile.transform.a)} m; no resampling is applied"
        )

    out_path = save_tile(
        tile,
        Path(out_dir) / f"{name}.tif",
        tags={
            "NAME": name,
            "REGION": json.dumps(list(region) if region is not None else None),
            "SCALE": str(scale),
            "MAX_PIXELS": f"{max_pixels:g}",
        },
    )
    if quicklook and tile.has_band(ExportConfig.OUTPUT_BAND):
        save_quicklook(tile, Path(out_dir) / f"{name}.png")

    log.info(f"Exported '{name}' to {out_path}")
    return out_path
