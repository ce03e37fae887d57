"""
Constants and configuration for the mangrove mapping pipeline.
"""

from typing import Dict, List, Tuple

# ============================================================================
# GENERAL CONFIGURATION
# ============================================================================
class GeneralConfig:
    """General project configuration."""
    RANDOM_SEED: int = 42
    NB_JOBS: int = 1  # Number of parallel workers for per-tile preprocessing


class GeneralPath:
    """General project paths."""
    LOG_PATH: str = r".logs/"
    OUTPUT_PATH: str = r"data/results/"
    MODEL_DIR: str = r"data/models/"
    REGIONS_JSON: str = r"data/metadata/regions.json"


# ============================================================================
# SENSOR DEFINITIONS
# ============================================================================

class LandsatBands:
    """Landsat 8 surface reflectance band names."""

    BLUE: str = "B2"
    GREEN: str = "B3"
    RED: str = "B4"
    NIR: str = "B5"
    SWIR1: str = "B6"
    SWIR2: str = "B7"
    QA: str = "pixel_qa"

    OPTICAL: List[str] = ["B2", "B3", "B4", "B5", "B6", "B7"]
    ALL: List[str] = OPTICAL + [QA]

    # Elevation band name of the reference raster
    ELEVATION: str = "elevation"


class CloudMaskConfig:
    """Bit positions of the quality band."""
    SHADOW_BIT: int = 3
    CLOUD_BIT: int = 5


# ============================================================================
# CLASS DEFINITIONS
# ============================================================================

class ClassInfo:
    """Semantic class definitions."""

    CLASS_NAMES: Dict[int, str] = {
        0: "Non-mangrove",
        1: "Mangrove",
    }
    MANGROVE: int = 1

    # Classes treated as foreground after classification
    TARGET_CLASSES: Tuple[int, ...] = (MANGROVE,)

    # Quicklook colors
    CLASS_COLORS: Dict[int, list] = {
        0: [0, 0, 0],        # Black
        1: [0, 255, 0],      # Green
    }


# ============================================================================
# PROCESSING PARAMETERS
# ============================================================================

class ThresholdConfig:
    """Pre-classification threshold masks: (band, comparator, value)."""
    ELEVATION_MAX: float = 65.0
    NDVI_MIN: float = 0.25
    MNDWI_MIN: float = -0.50

    DEFAULT_PREDICATES: List[Tuple[str, str, float]] = [
        (LandsatBands.ELEVATION, "<", ELEVATION_MAX),
        ("NDVI", ">", NDVI_MIN),
        ("MNDWI", ">", MNDWI_MIN),
    ]


class ClassifierConfig:
    """Random Forest hyperparameters and feature selection."""
    TREE_COUNT: int = 100
    FEATURES_PER_SPLIT: int = 5
    SPLIT_FRACTION: float = 0.8
    PREDICT_BATCH_SIZE: int = 1_000_000  # pixels per inference batch

    INDEX_NAMES: List[str] = ["NDVI", "NDMI", "MNDWI", "SR", "R54", "R35", "GCVI"]
    FEATURE_BANDS: List[str] = LandsatBands.OPTICAL + INDEX_NAMES


class PostProcessingConfig:
    """Connected-component filtering."""
    MAX_COMPONENT_SIZE: int = 100
    MIN_COMPONENT_SIZE: int = 25  # pixels must have a count strictly above this
    CONNECTIVITY: int = 4


class CompositeConfig:
    """Temporal compositing."""
    REDUCER: str = "median"
    QUALITY_BAND: str = "NDVI"
    CHUNK_ROWS: int = 0  # 0 = process the whole grid at once


class ExportConfig:
    """Export sink parameters."""
    SCALE: float = 30.0
    MAX_PIXELS: float = 1e13
    OUTPUT_BAND: str = "classification"
