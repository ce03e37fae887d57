"""Conjunctive threshold masks applied before classification."""

import operator
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from mangrove_mapper.cste import ThresholdConfig
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile

log = get_logger("threshold_mask")

COMPARATORS: Dict[str, Callable[[np.ndarray, float], np.ndarray]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


class ThresholdPredicate(NamedTuple):
    """(band, comparator, threshold), e.g. ("NDVI", ">", 0.25)."""
    band: str
    comparator: str
    threshold: float

    def evaluate(self, values: np.ndarray) -> np.ndarray:
        if self.comparator not in COMPARATORS:
            raise ConfigurationError(
                f"Unknown comparator '{self.comparator}' for band '{self.band}'. "
                f"Use one of {list(COMPARATORS)}"
            )
        with np.errstate(invalid="ignore"):
            return COMPARATORS[self.comparator](values, self.threshold) & np.isfinite(values)

    def __str__(self) -> str:
        return f"{self.band} {self.comparator} {self.threshold}"


PredicateLike = Union[ThresholdPredicate, Tuple[str, str, float]]


def default_predicates() -> Tuple[ThresholdPredicate, ...]:
    return tuple(ThresholdPredicate(*p) for p in ThresholdConfig.DEFAULT_PREDICATES)


def _resolve_band(band: str, tile: RasterTile, reference: Optional[RasterTile]) -> Tuple[np.ndarray, np.ndarray]:
    """Band values and validity, looked up in the tile first, then in the reference raster."""
    if tile.has_band(band):
        return tile.band(band), tile.mask
    if reference is not None and reference.has_band(band):
        if not reference.same_grid(tile):
            raise ConfigurationError(
                f"Reference raster grid (shape {reference.shape}, origin "
                f"{reference.transform.c}, {reference.transform.f}, crs {reference.crs}) does not match "
                f"tile grid (shape {tile.shape}, origin {tile.transform.c}, {tile.transform.f}, crs {tile.crs})"
            )
        return reference.band(band), reference.mask
    raise ConfigurationError(
        f"Threshold band '{band}' not found in tile {tile.band_names}"
        + (f" nor in reference {reference.band_names}" if reference is not None else "")
    )


def threshold_mask(
    tile: RasterTile,
    predicates: Iterable[PredicateLike],
    reference: Optional[RasterTile] = None,
) -> np.ndarray:
    """Boolean AND of all predicates (invalid reference pixels fail their predicate)."""
    keep = np.ones(tile.shape, dtype=bool)
    for predicate in predicates:
        predicate = ThresholdPredicate(*predicate)
        values, valid = _resolve_band(predicate.band, tile, reference)
        passed = predicate.evaluate(values) & valid
        log.debug(f"Predicate '{predicate}': {int(passed.sum())}/{passed.size} pixels pass")
        keep &= passed
    return keep


def apply_thresholds(
    tile: RasterTile,
    predicates: Optional[Sequence[PredicateLike]] = None,
    reference: Optional[RasterTile] = None,
) -> RasterTile:
    """
    Intersect the tile mask with a chain of threshold predicates.

    Args:
        tile: Composite tile (not modified)
        predicates: (band, comparator, threshold) triples (default: elevation, NDVI, MNDWI)
        reference: Extra raster on the same grid, e.g. elevation

    Returns:
        New tile whose mask only keeps pixels passing every predicate
    """
    predicates = default_predicates() if predicates is None else predicates
    masked = tile.update_mask(threshold_mask(tile, predicates, reference))
    log.info(f"Threshold masks kept {masked.valid_count}/{tile.valid_count} valid pixels")
    return masked
