"""
Training sample extraction and reproducible train/test splitting.

Samples are taken at the centers of the pixels covered by labelled geometries
(polygons are burned at pixel centers, points map to the pixel that contains them).
Each sample carries a uniform random draw so the same seed always yields the same
partition.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask
from rasterio.transform import xy
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from mangrove_mapper.cste import ClassifierConfig, GeneralConfig
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import CrsLike, RasterTile

log = get_logger("training_samples")

GeometryLike = Union[BaseGeometry, Mapping[str, Any]]

SAMPLED_GEOMETRY_TYPES = ("Point", "MultiPoint", "Polygon", "MultiPolygon")


class LabeledGeometry(NamedTuple):
    """Shapely geometry (or GeoJSON-like mapping) with an integer class label."""
    geometry: GeometryLike
    label: int
    name: str = ""


@dataclass(frozen=True)
class Sample:
    """One labelled feature vector sampled at a pixel."""
    band_names: Tuple[str, ...]
    values: Tuple[float, ...]
    label: int
    random: float
    row: int = -1
    col: int = -1
    x: float = float("nan")
    y: float = float("nan")

    def feature(self, name: str) -> float:
        try:
            return self.values[self.band_names.index(name)]
        except ValueError:
            raise ConfigurationError(
                f"Band '{name}' missing from sample at ({self.row}, {self.col}); "
                f"sample bands: {list(self.band_names)}"
            ) from None


class TrainingSet:
    """Ordered sequence of samples."""

    def __init__(self, samples: Iterable[Sample]):
        self.samples: Tuple[Sample, ...] = tuple(samples)

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    def __getitem__(self, idx: int) -> Sample:
        return self.samples[idx]

    def labels(self) -> np.ndarray:
        return np.array([s.label for s in self.samples], dtype=np.int64)

    def feature_matrix(self, band_names: Sequence[str]) -> np.ndarray:
        """(N, len(band_names)) matrix; raises if a sample lacks a band."""
        if not self.samples:
            return np.empty((0, len(band_names)), dtype=np.float64)
        return np.array(
            [[s.feature(name) for name in band_names] for s in self.samples],
            dtype=np.float64,
        )

    def class_counts(self) -> Dict[int, int]:
        labels, counts = np.unique(self.labels(), return_counts=True)
        return {int(l): int(c) for l, c in zip(labels, counts)}

    def split(self, fraction: float = ClassifierConfig.SPLIT_FRACTION) -> Tuple["TrainingSet", "TrainingSet"]:
        """
        Partition by the stored random draw: random < fraction goes to training.

        Returns:
            Tuple (training, testing); |training| + |testing| == |samples|
        """
        if not 0.0 <= fraction <= 1.0:
            raise ConfigurationError(f"Split fraction must be in [0, 1], got {fraction}")
        training = [s for s in self.samples if s.random < fraction]
        testing = [s for s in self.samples if s.random >= fraction]
        log.info(f"Split {len(self)} samples: {len(training)} training / {len(testing)} testing")
        return TrainingSet(training), TrainingSet(testing)

    def to_frame(self) -> pd.DataFrame:
        """One row per sample: band values, label, random, row, col, x, y."""
        rows = []
        for s in self.samples:
            row = dict(zip(s.band_names, s.values))
            row.update({"label": s.label, "random": s.random, "row": s.row, "col": s.col,
                        "x": s.x, "y": s.y})
            rows.append(row)
        return pd.DataFrame(rows)

    def to_geodataframe(self, crs: CrsLike = None) -> gpd.GeoDataFrame:
        """Samples as points at their pixel centers."""
        frame = self.to_frame()
        if frame.empty:
            return gpd.GeoDataFrame(frame, geometry=gpd.GeoSeries([], crs=crs), crs=crs)
        geometry = gpd.points_from_xy(frame["x"], frame["y"], crs=crs)
        return gpd.GeoDataFrame(frame, geometry=geometry, crs=crs)


# ============================================================================
# GEOMETRY RASTERIZATION
# ============================================================================

def as_shape(geometry: GeometryLike) -> BaseGeometry:
    """Shapely geometry from a shapely object or a GeoJSON-like mapping."""
    if isinstance(geometry, BaseGeometry):
        return geometry
    try:
        return shape(geometry)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid geometry {geometry!r}: {e}") from e


def geometry_pixels(geometry: GeometryLike, tile: RasterTile) -> np.ndarray:
    """
    Boolean (H, W) footprint of a Point, MultiPoint, Polygon or MultiPolygon.

    Polygons cover the pixels whose centers fall inside them (holes excluded).
    """
    geom = as_shape(geometry)
    if geom.geom_type not in SAMPLED_GEOMETRY_TYPES:
        raise ConfigurationError(
            f"Unsupported geometry type '{geom.geom_type}'; use one of {SAMPLED_GEOMETRY_TYPES}"
        )
    if geom.is_empty:
        return np.zeros(tile.shape, dtype=bool)

    return geometry_mask(
        [geom],
        out_shape=tile.shape,
        transform=tile.transform,
        all_touched=False,
        invert=True,
    )


# ============================================================================
# SAMPLE EXTRACTION
# ============================================================================

def extract_samples(
    tile: RasterTile,
    geometries: Sequence[LabeledGeometry],
    band_names: Optional[Sequence[str]] = None,
    seed: int = GeneralConfig.RANDOM_SEED,
) -> TrainingSet:
    """
    Sample the tile at every valid pixel covered by each labelled geometry.

    Args:
        tile: Composite tile to sample
        geometries: Labelled geometries in the tile CRS
        band_names: Bands to record (default: every tile band)
        seed: Seed of the per-sample uniform random draw

    Returns:
        TrainingSet in geometry order, then row-major pixel order
    """
    band_names = tuple(band_names) if band_names is not None else tuple(tile.band_names)
    stack = tile.stack(band_names)
    rng = np.random.default_rng(seed)

    samples: List[Sample] = []
    for i, geom in enumerate(geometries):
        geom = LabeledGeometry(*geom)
        footprint = geometry_pixels(geom.geometry, tile) & tile.mask
        rows, cols = np.nonzero(footprint)
        if rows.size == 0:
            log.warning(
                f"Geometry #{i} {geom.name!r} (class {geom.label}) covers no valid pixel, skipped"
            )
            continue
        draws = rng.random(rows.size)
        xs, ys = xy(tile.transform, rows, cols, offset="center")
        for r, c, u, px, py in zip(rows, cols, draws, np.atleast_1d(xs), np.atleast_1d(ys)):
            samples.append(Sample(
                band_names=band_names,
                values=tuple(float(v) for v in stack[r, c]),
                label=int(geom.label),
                random=float(u),
                row=int(r),
                col=int(c),
                x=float(px),
                y=float(py),
            ))

    training_set = TrainingSet(samples)
    log.info(f"Extracted {len(training_set)} samples, class counts {training_set.class_counts()}")
    return training_set
