"""Bit-flag cloud and cloud-shadow masking of Landsat quality bands."""

from typing import Iterable

import numpy as np

from mangrove_mapper.cste import CloudMaskConfig, LandsatBands
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile

log = get_logger("cloud_mask")


def bit_is_set(qa: np.ndarray, bit: int) -> np.ndarray:
    """Boolean map of pixels whose quality code has the given bit set."""
    if bit < 0:
        raise ConfigurationError(f"Bit position must be >= 0, got {bit}")
    qa = np.asarray(qa)
    codes = np.where(np.isfinite(qa), qa, 0).astype(np.int64)
    return np.bitwise_and(codes, 1 << bit) != 0


def clear_pixels(qa: np.ndarray, bits: Iterable[int]) -> np.ndarray:
    """True where none of the flag bits is set; non-finite quality codes are never clear."""
    clear = np.isfinite(np.asarray(qa, dtype=np.float64))
    for bit in bits:
        clear &= ~bit_is_set(qa, bit)
    return clear


def mask_clouds(
    tile: RasterTile,
    qa_band: str = LandsatBands.QA,
    shadow_bit: int = CloudMaskConfig.SHADOW_BIT,
    cloud_bit: int = CloudMaskConfig.CLOUD_BIT,
    drop_qa: bool = False,
) -> RasterTile:
    """
    Mask cloud and cloud-shadow pixels of a tile.

    A pixel stays valid only if both the shadow bit and the cloud bit of its
    quality code are zero. Masked pixels are treated as missing downstream.
    Applying the mask twice with the same bits gives the same mask.

    Args:
        tile: Tile carrying the quality band
        qa_band: Name of the bit-packed quality band
        shadow_bit: Bit position of the cloud-shadow flag
        cloud_bit: Bit position of the cloud flag
        drop_qa: If True, remove the quality band from the output

    Returns:
        New tile with an updated mask

    Raises:
        ConfigurationError: If the quality band is missing
    """
    if not tile.has_band(qa_band):
        raise ConfigurationError(
            f"Quality band '{qa_band}' missing from tile {tile.acquired}; "
            f"available: {tile.band_names}"
        )

    clear = clear_pixels(tile.band(qa_band), (shadow_bit, cloud_bit))
    masked = tile.update_mask(clear)

    if masked.valid_count == 0:
        log.info(f"Tile {tile.acquired}: no clear pixel left after cloud masking")
    else:
        log.debug(
            f"Tile {tile.acquired}: {tile.valid_count - masked.valid_count} cloudy pixels masked"
        )

    if drop_qa:
        masked = masked.drop([qa_band])
    return masked
