"""
Temporal compositing of a stack of co-registered tiles.

Pipeline:
    1. Validate that every tile shares the grid and the band list
    2. Stack band values (T, H, W, C) and validity masks (T, H, W)
    3. Reduce along time with a pluggable reducer (median, quality mosaic, custom)
    4. Optionally process row chunks independently to bound peak memory
"""

import warnings
from functools import partial
from typing import Callable, Dict, List, Sequence, Tuple, Union

import numpy as np

from mangrove_mapper.cste import CompositeConfig
from mangrove_mapper.errors import ConfigurationError, DataGapError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile

log = get_logger("compositor")

# reducer(values (T, H, W, C), valid (T, H, W), band_names) -> (values (H, W, C), valid (H, W))
Reducer = Callable[[np.ndarray, np.ndarray, List[str]], Tuple[np.ndarray, np.ndarray]]


# ============================================================================
# REDUCERS
# ============================================================================

def median_reducer(values: np.ndarray, valid: np.ndarray, band_names: List[str]) -> Tuple[np.ndarray, np.ndarray]:
    """Per-pixel, per-band median of the valid observations."""
    masked = np.where(valid[..., None], values, np.nan)
    with warnings.catch_warnings():
        # ! All-NaN slices are pixels with no valid observation: they become invalid
        warnings.simplefilter("ignore", category=RuntimeWarning)
        reduced = np.nanmedian(masked, axis=0)
    return reduced, valid.any(axis=0)


def quality_mosaic_reducer(
    values: np.ndarray,
    valid: np.ndarray,
    band_names: List[str],
    quality_band: str = CompositeConfig.QUALITY_BAND,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per pixel, take every band from the time-step with the highest valid quality score.

    Ties go to the earliest time-step in the stack.
    """
    if quality_band not in band_names:
        raise ConfigurationError(
            f"Quality band '{quality_band}' not in composite bands {band_names}"
        )
    q_idx = band_names.index(quality_band)
    score = values[..., q_idx]
    score = np.where(valid & np.isfinite(score), score, -np.inf)

    best = np.argmax(score, axis=0)  # (H, W), first max wins
    picked = np.take_along_axis(values, best[None, ..., None], axis=0)[0]
    out_valid = valid.any(axis=0)
    picked = np.where(out_valid[..., None], picked, np.nan)
    return picked, out_valid


REDUCERS: Dict[str, Callable[..., Tuple[np.ndarray, np.ndarray]]] = {
    "median": median_reducer,
    "quality_mosaic": quality_mosaic_reducer,
}


def get_reducer(reducer: Union[str, Reducer], quality_band: str = CompositeConfig.QUALITY_BAND) -> Reducer:
    """Resolve a reducer name (or pass a callable through)."""
    if callable(reducer):
        return reducer
    if reducer not in REDUCERS:
        raise ConfigurationError(f"Unknown reducer '{reducer}'. Use one of {list(REDUCERS)}")
    if reducer == "quality_mosaic":
        return partial(quality_mosaic_reducer, quality_band=quality_band)
    return REDUCERS[reducer]


# ============================================================================
# COMPOSITING
# ============================================================================

def _check_stack(tiles: Sequence[RasterTile]) -> List[str]:
    if len(tiles) == 0:
        raise DataGapError("Cannot composite an empty stack of tiles")

    reference = tiles[0]
    band_names = reference.band_names
    for i, tile in enumerate(tiles[1:], start=1):
        if tile.band_names != band_names:
            raise ConfigurationError(
                f"Tile #{i} ({tile.acquired}) has bands {tile.band_names}, expected {band_names}"
            )
        if not tile.same_grid(reference):
            raise ConfigurationError(
                f"Tile #{i} ({tile.acquired}) is not aligned with the stack grid "
                f"(shape {tile.shape} vs {reference.shape})"
            )
    return band_names


def _reduce_block(tiles: Sequence[RasterTile], band_names: List[str], reducer: Reducer,
                  rows: slice) -> Tuple[np.ndarray, np.ndarray]:
    values = np.stack([t.stack(band_names)[rows] for t in tiles], axis=0)
    valid = np.stack([t.mask[rows] for t in tiles], axis=0)
    return reducer(values, valid, band_names)


def composite(
    tiles: Sequence[RasterTile],
    reducer: Union[str, Reducer] = CompositeConfig.REDUCER,
    quality_band: str = CompositeConfig.QUALITY_BAND,
    chunk_rows: int = CompositeConfig.CHUNK_ROWS,
) -> RasterTile:
    """
    Reduce a stack of tiles to a single composite tile.

    Args:
        tiles: Time-ordered tiles sharing grid and bands
        reducer: 'median', 'quality_mosaic' or a callable reducer
        quality_band: Scoring band of the quality mosaic
        chunk_rows: Rows per processing block (0 = whole grid at once)

    Returns:
        Composite tile; pixels without any valid observation are invalid

    Raises:
        DataGapError: If the stack is empty
        ConfigurationError: If tiles do not share grid and bands
    """
    band_names = _check_stack(tiles)
    reduce_fn = get_reducer(reducer, quality_band)
    height, width = tiles[0].shape

    step = chunk_rows if chunk_rows and chunk_rows > 0 else height
    out_values = np.full((height, width, len(band_names)), np.nan, dtype=np.float64)
    out_valid = np.zeros((height, width), dtype=bool)

    for start in range(0, height, step):
        rows = slice(start, min(start + step, height))
        block_values, block_valid = _reduce_block(tiles, band_names, reduce_fn, rows)
        out_values[rows] = block_values
        out_valid[rows] = block_valid

    log.info(
        f"Composited {len(tiles)} tiles with '{reducer if isinstance(reducer, str) else 'custom'}' "
        f"reducer: {int(out_valid.sum())}/{height * width} pixels with data"
    )

    return RasterTile(
        {name: out_values[..., i] for i, name in enumerate(band_names)},
        out_valid,
        tiles[0].transform,
        crs=tiles[0].crs,
    )


def median_composite(tiles: Sequence[RasterTile], chunk_rows: int = CompositeConfig.CHUNK_ROWS) -> RasterTile:
    return composite(tiles, "median", chunk_rows=chunk_rows)


def quality_mosaic(
    tiles: Sequence[RasterTile],
    quality_band: str = CompositeConfig.QUALITY_BAND,
    chunk_rows: int = CompositeConfig.CHUNK_ROWS,
) -> RasterTile:
    return composite(tiles, "quality_mosaic", quality_band=quality_band, chunk_rows=chunk_rows)
