"""
Band algebra and spectral index derivation.

Indices live in an open registry: each entry maps an index name to the names of
its input bands and a pure function of those band arrays. Every index function
returns a (values, valid) pair; pixels where the formula is degenerate
(e.g. a zero denominator) are flagged invalid instead of raising.

# ! TO ADD A NEW INDEX !
# 1. write a pure function taking the input band arrays and returning (values, valid)
#    (normalized_difference, simple_ratio and expression cover most cases)
# 2. register it with register_index("NAME", ["B1", "B2"], func)
#    or decorate the function with @register_index("NAME", ["B1", "B2"])
# 3. add the name to ClassifierConfig.INDEX_NAMES in cste.py if it is a classifier feature
"""

from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from mangrove_mapper.cste import LandsatBands
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile

log = get_logger("band_math")

IndexResult = Tuple[np.ndarray, np.ndarray]


# ============================================================================
# ELEMENTWISE FORMULAS
# ============================================================================

def normalized_difference(a: np.ndarray, b: np.ndarray) -> IndexResult:
    """
    (a - b) / (a + b), invalid where a + b == 0.

    Returns:
        Tuple (values, valid); values are NaN where invalid
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    denominator = a + b
    valid = denominator != 0
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.where(valid, (a - b) / denominator, np.nan)
    return values, valid & np.isfinite(values)


def simple_ratio(a: np.ndarray, b: np.ndarray) -> IndexResult:
    """a / b, invalid where b == 0."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    valid = b != 0
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.where(valid, a / b, np.nan)
    return values, valid & np.isfinite(values)


def expression(func: Callable[..., np.ndarray], *bands: np.ndarray) -> IndexResult:
    """
    Evaluate an arbitrary elementwise expression over band arrays.

    Non-finite results (division by zero, log of negatives...) are flagged invalid.
    """
    arrays = [np.asarray(b, dtype=np.float64) for b in bands]
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        values = np.asarray(func(*arrays), dtype=np.float64)
    valid = np.isfinite(values)
    return np.where(valid, values, np.nan), valid


# ============================================================================
# INDEX REGISTRY
# ============================================================================

class IndexDefinition(NamedTuple):
    name: str
    inputs: Tuple[str, ...]
    func: Callable[..., IndexResult]


INDEX_REGISTRY: Dict[str, IndexDefinition] = {}


def register_index(
    name: str,
    inputs: Sequence[str],
    func: Optional[Callable[..., IndexResult]] = None,
    overwrite: bool = False,
    registry: Optional[Dict[str, IndexDefinition]] = None,
):
    """
    Register a named spectral index.

    Can be called directly or used as a decorator when func is omitted.

    Raises:
        ConfigurationError: If the name is already registered and overwrite is False
    """
    target = INDEX_REGISTRY if registry is None else registry

    def _register(f: Callable[..., IndexResult]) -> Callable[..., IndexResult]:
        if name in target and not overwrite:
            raise ConfigurationError(f"Index '{name}' is already registered")
        target[name] = IndexDefinition(name, tuple(inputs), f)
        return f

    if func is None:
        return _register
    return _register(func)


def list_indices(registry: Optional[Dict[str, IndexDefinition]] = None) -> List[str]:
    return list((INDEX_REGISTRY if registry is None else registry).keys())


def compute_index(
    tile: RasterTile,
    name: str,
    registry: Optional[Dict[str, IndexDefinition]] = None,
) -> IndexResult:
    """Compute one registered index on a tile, returning (values, valid)."""
    registry = INDEX_REGISTRY if registry is None else registry
    if name not in registry:
        raise ConfigurationError(f"Unknown index '{name}'; registered: {list(registry)}")

    definition = registry[name]
    missing = [b for b in definition.inputs if not tile.has_band(b)]
    if missing:
        raise ConfigurationError(
            f"Index '{name}' needs bands {missing} missing from tile {tile.acquired}"
        )
    return definition.func(*[tile.band(b) for b in definition.inputs])


def add_indices(
    tile: RasterTile,
    names: Optional[Iterable[str]] = None,
    registry: Optional[Dict[str, IndexDefinition]] = None,
) -> RasterTile:
    """
    Append derived index bands to a tile.

    Pixels where any derivation is degenerate are removed from the tile mask.

    Args:
        tile: Input tile (not modified)
        names: Index names to compute (default: every registered index)
        registry: Index registry (default: module registry)

    Returns:
        New tile with the index bands appended
    """
    names = list(names) if names is not None else list_indices(registry)
    derived = {}
    valid = np.ones(tile.shape, dtype=bool)

    for name in names:
        values, index_valid = compute_index(tile, name, registry)
        degenerate = int((tile.mask & ~index_valid).sum())
        if degenerate:
            log.debug(f"{name}: {degenerate} degenerate pixels masked (tile {tile.acquired})")
        derived[name] = values
        valid &= index_valid

    return tile.with_bands(derived).update_mask(valid)


# ============================================================================
# DEFAULT LANDSAT 8 INDICES
# ============================================================================

_B = LandsatBands

register_index("NDVI", [_B.NIR, _B.RED], normalized_difference)
register_index("NDMI", [_B.SWIR2, _B.GREEN], normalized_difference)
register_index("MNDWI", [_B.GREEN, _B.SWIR1], normalized_difference)
register_index("SR", [_B.NIR, _B.RED], simple_ratio)
register_index("R54", [_B.SWIR1, _B.NIR], simple_ratio)
register_index("R35", [_B.RED, _B.SWIR1], simple_ratio)


@register_index("GCVI", [_B.NIR, _B.GREEN])
def green_chlorophyll_index(nir: np.ndarray, green: np.ndarray) -> IndexResult:
    """Green chlorophyll vegetation index: NIR / GREEN - 1."""
    return expression(lambda n, g: n / g - 1.0, nir, green)
