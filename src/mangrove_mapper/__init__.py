"""
Mangrove mapping from Landsat imagery.

Cloud masking, spectral indices, temporal compositing, Random Forest
classification, connected-component denoising and accuracy assessment
over in-memory raster tiles.
"""

from .errors import ConfigurationError, DataGapError, MangroveMapperError
from .raster_tile import RasterTile, pixel_area_ha

__version__ = "0.1.0"

__all__ = [
    'ConfigurationError',
    'DataGapError',
    'MangroveMapperError',
    'RasterTile',
    'pixel_area_ha',
]
