"""
In-memory multi-band raster with a per-pixel validity mask.

A RasterTile is never modified in place: every operation returns a new tile.
Band arrays and the mask are stored as read-only numpy arrays. The grid is a
north-up rasterio Affine transform plus an optional CRS.
"""

from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.windows import Window
from rasterio.windows import transform as window_transform

from mangrove_mapper.errors import ConfigurationError

# 30 m Landsat grid anchored at the map origin
DEFAULT_TRANSFORM = from_origin(0.0, 0.0, 30.0, 30.0)

CrsLike = Union[CRS, str, int, None]


def pixel_area_ha(transform: Affine) -> float:
    """Area of one pixel in hectares: |det(transform)| / 10 000."""
    return abs(transform.determinant) / 10_000.0


def _readonly(array: np.ndarray, dtype) -> np.ndarray:
    out = np.array(array, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


def _as_crs(crs: CrsLike) -> Optional[CRS]:
    if crs is None or isinstance(crs, CRS):
        return crs
    return CRS.from_user_input(crs)


def _same_crs(a: Optional[CRS], b: Optional[CRS]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a == b


def _window_bounds(index: slice, size: int, axis: str) -> Tuple[int, int]:
    """Normalised [start, stop) of a slice along one axis; steps are not allowed."""
    start, stop, step = index.indices(size)
    if step != 1:
        raise ConfigurationError(f"Window {axis} slice must have step 1, got {step}")
    if stop <= start:
        raise ConfigurationError(f"Window {axis} slice {index} is empty for size {size}")
    return start, stop


class RasterTile:
    """
    Ordered named bands sharing one grid, plus a boolean validity mask.

    Invariants:
        - every band is 2D and all bands have the same shape
        - the mask has the band shape (defaults to all valid)
    """

    def __init__(
        self,
        bands: Mapping[str, np.ndarray],
        mask: Optional[np.ndarray] = None,
        transform: Optional[Affine] = None,
        acquired: Optional[date] = None,
        crs: CrsLike = None,
    ):
        if not bands:
            raise ConfigurationError("A RasterTile needs at least one band")

        shape = None
        stored: Dict[str, np.ndarray] = {}
        for name, values in bands.items():
            values = np.asarray(values)
            if values.ndim != 2:
                raise ConfigurationError(
                    f"Band '{name}' must be 2D, got shape {values.shape} (tile {acquired})"
                )
            if shape is None:
                shape = values.shape
            elif values.shape != shape:
                raise ConfigurationError(
                    f"Band '{name}' has shape {values.shape}, expected {shape} (tile {acquired})"
                )
            stored[name] = _readonly(values, np.float64)

        if mask is None:
            mask = np.ones(shape, dtype=bool)
        mask = np.asarray(mask)
        if mask.shape != shape:
            raise ConfigurationError(
                f"Mask shape {mask.shape} does not match band shape {shape} (tile {acquired})"
            )

        self._bands = stored
        self._mask = _readonly(mask, bool)
        self.transform: Affine = transform if transform is not None else DEFAULT_TRANSFORM
        self.crs: Optional[CRS] = _as_crs(crs)
        self.acquired = acquired

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def band_names(self) -> List[str]:
        return list(self._bands)

    @property
    def shape(self) -> Tuple[int, int]:
        return next(iter(self._bands.values())).shape

    @property
    def mask(self) -> np.ndarray:
        return self._mask

    @property
    def pixel_area_ha(self) -> float:
        return pixel_area_ha(self.transform)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(west, south, east, north) in CRS units."""
        height, width = self.shape
        return array_bounds(height, width, self.transform)

    @property
    def valid_count(self) -> int:
        return int(self._mask.sum())

    def band(self, name: str) -> np.ndarray:
        try:
            return self._bands[name]
        except KeyError:
            raise ConfigurationError(
                f"Band '{name}' not found in tile {self.acquired}; available: {self.band_names}"
            ) from None

    def has_band(self, name: str) -> bool:
        return name in self._bands

    def stack(self, names: Optional[Iterable[str]] = None) -> np.ndarray:
        """Bands as a (H, W, C) array in the requested order."""
        names = list(names) if names is not None else self.band_names
        return np.stack([self.band(n) for n in names], axis=-1)

    # ------------------------------------------------------------------
    # Derivations (all return new tiles)
    # ------------------------------------------------------------------
    def _derive(self, bands: Mapping[str, np.ndarray], mask: np.ndarray,
                transform: Optional[Affine] = None) -> "RasterTile":
        return RasterTile(
            bands, mask,
            transform if transform is not None else self.transform,
            self.acquired, self.crs,
        )

    def with_mask(self, mask: np.ndarray) -> "RasterTile":
        return self._derive(self._bands, mask)

    def update_mask(self, mask: np.ndarray) -> "RasterTile":
        """Intersect (AND) the current mask with another one."""
        return self.with_mask(self._mask & np.asarray(mask, dtype=bool))

    def with_bands(self, bands: Mapping[str, np.ndarray]) -> "RasterTile":
        """Add or replace bands, keeping mask and grid."""
        merged = dict(self._bands)
        merged.update(bands)
        return self._derive(merged, self._mask)

    def select(self, names: Iterable[str]) -> "RasterTile":
        return self._derive({n: self.band(n) for n in names}, self._mask)

    def drop(self, names: Iterable[str]) -> "RasterTile":
        names = set(names)
        return self.select([n for n in self.band_names if n not in names])

    def window(self, rows: slice, cols: slice = slice(None)) -> "RasterTile":
        """
        Sub-tile covering rows x cols with the matching transform.

        Negative bounds count from the end, as in numpy; stepped slices are rejected.
        """
        height, width = self.shape
        row_start, row_stop = _window_bounds(rows, height, "row")
        col_start, col_stop = _window_bounds(cols, width, "column")

        win = Window(col_start, row_start, col_stop - col_start, row_stop - row_start)
        rows, cols = slice(row_start, row_stop), slice(col_start, col_stop)
        return self._derive(
            {n: b[rows, cols] for n, b in self._bands.items()},
            self._mask[rows, cols],
            window_transform(win, self.transform),
        )

    def same_grid(self, other: "RasterTile") -> bool:
        return (
            self.shape == other.shape
            and self.transform.almost_equals(other.transform)
            and _same_crs(self.crs, other.crs)
        )

    def __repr__(self) -> str:
        return (
            f"RasterTile(bands={self.band_names}, shape={self.shape}, "
            f"valid={self.valid_count}, acquired={self.acquired})"
        )
