"""
End-to-end mangrove mapping pipeline.

Processing order:
    1. Load the tiles of the [Y-1-01-01, Y+1-12-31] window over the region
    2. Per tile: cloud/shadow masking and spectral indices (optionally in parallel)
    3. Temporal composite (median by default)
    4. Threshold masks (elevation, NDVI, MNDWI)
    5. Sample training geometries, split, train the Random Forest
    6. Classify and remove small connected components
    7. Area statistics and validation on held-out samples
    8. Export (failures are logged, never fatal)
"""

import multiprocessing as mp
import time
from dataclasses import dataclass, field
from datetime import date
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from mangrove_mapper.band_math import add_indices
from mangrove_mapper.class_models import RandomForestPixelClassifier, TrainedModel, predict_samples
from mangrove_mapper.cloud_mask import mask_clouds
from mangrove_mapper.compositor import composite
from mangrove_mapper.cste import (
    ClassInfo,
    ClassifierConfig,
    CloudMaskConfig,
    CompositeConfig,
    ExportConfig,
    GeneralConfig,
    GeneralPath,
    LandsatBands,
    PostProcessingConfig,
    ThresholdConfig,
)
from mangrove_mapper.errors import DataGapError
from mangrove_mapper.evaluation_metrics import (
    ConfusionMatrix,
    area_estimate,
    error_matrix,
    print_evaluation_summary,
    save_evaluation_report,
)
from mangrove_mapper.io_utils import TileArchive, check_region, export_tile
from mangrove_mapper.logger import get_logger
from mangrove_mapper.post_processing import filter_small_components
from mangrove_mapper.raster_tile import RasterTile
from mangrove_mapper.threshold_mask import apply_thresholds
from mangrove_mapper.training_samples import LabeledGeometry, TrainingSet, extract_samples

log = get_logger("pipeline")

STATUS_OK = "ok"
STATUS_NO_DATA = "no_data"


def year_window(year: int) -> Tuple[date, date]:
    """Three-year window centered on `year`: [year-1-01-01, year+1-12-31]."""
    return date(year - 1, 1, 1), date(year + 1, 12, 31)


@dataclass
class RunConfig:
    """Run-level options; defaults come from cste.py."""
    year: int
    region: Tuple[float, float, float, float]
    output_name: str
    out_dir: str = GeneralPath.OUTPUT_PATH

    # Preprocessing
    qa_band: str = LandsatBands.QA
    shadow_bit: int = CloudMaskConfig.SHADOW_BIT
    cloud_bit: int = CloudMaskConfig.CLOUD_BIT
    index_names: List[str] = field(default_factory=lambda: list(ClassifierConfig.INDEX_NAMES))
    num_workers: int = GeneralConfig.NB_JOBS

    # Compositing
    reducer: str = CompositeConfig.REDUCER
    quality_band: str = CompositeConfig.QUALITY_BAND
    chunk_rows: int = CompositeConfig.CHUNK_ROWS

    # Masking
    predicates: List[Tuple[str, str, float]] = field(
        default_factory=lambda: list(ThresholdConfig.DEFAULT_PREDICATES)
    )

    # Classification
    feature_bands: List[str] = field(default_factory=lambda: list(ClassifierConfig.FEATURE_BANDS))
    tree_count: int = ClassifierConfig.TREE_COUNT
    features_per_split: int = ClassifierConfig.FEATURES_PER_SPLIT
    split_fraction: float = ClassifierConfig.SPLIT_FRACTION
    seed: int = GeneralConfig.RANDOM_SEED
    batch_size: int = ClassifierConfig.PREDICT_BATCH_SIZE
    model_dir: Optional[str] = None  # save the trained model there when set

    # Post-processing
    min_component_size: int = PostProcessingConfig.MIN_COMPONENT_SIZE
    max_component_size: int = PostProcessingConfig.MAX_COMPONENT_SIZE
    connectivity: int = PostProcessingConfig.CONNECTIVITY
    target_classes: Tuple[int, ...] = ClassInfo.TARGET_CLASSES

    # Export
    export: bool = True
    export_scale: float = ExportConfig.SCALE
    max_pixels: float = ExportConfig.MAX_PIXELS

    def __post_init__(self):
        self.region = check_region(self.region)

    @property
    def window(self) -> Tuple[date, date]:
        return year_window(self.year)


@dataclass
class PipelineResult:
    """Terminal outputs of a run."""
    status: str
    message: str = ""
    area_ha: Optional[float] = None
    confusion_matrix: Optional[ConfusionMatrix] = None
    model: Optional[TrainedModel] = None
    classification: Optional[RasterTile] = None
    n_tiles: int = 0
    n_training: int = 0
    n_validation: int = 0
    export_path: Optional[Path] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def accuracy(self) -> Optional[float]:
        return self.confusion_matrix.accuracy() if self.confusion_matrix is not None else None

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "area_ha": self.area_ha,
            "accuracy": self.accuracy,
            "confusion_matrix": self.confusion_matrix,
            "n_tiles": self.n_tiles,
            "n_training": self.n_training,
            "n_validation": self.n_validation,
            "export_path": str(self.export_path) if self.export_path else None,
            "timings": self.timings,
        }


# ============================================================================
# PER-TILE PREPROCESSING
# ============================================================================

def preprocess_tile(
    tile: RasterTile,
    index_names: Sequence[str] = ClassifierConfig.INDEX_NAMES,
    qa_band: str = LandsatBands.QA,
    shadow_bit: int = CloudMaskConfig.SHADOW_BIT,
    cloud_bit: int = CloudMaskConfig.CLOUD_BIT,
) -> RasterTile:
    """
    Cloud-mask a tile and append its spectral indices.
    Side-effect free, safe to run in worker processes.
    """
    masked = mask_clouds(tile, qa_band, shadow_bit, cloud_bit, drop_qa=True)
    return add_indices(masked, index_names)


def preprocess_stack(
    tiles: Sequence[RasterTile],
    num_workers: int = GeneralConfig.NB_JOBS,
    **kwargs
) -> List[RasterTile]:
    """
    Preprocess every tile, in a process pool when num_workers > 1.

    Only indices registered at import time are visible to worker processes.
    """
    worker_fn = partial(preprocess_tile, **kwargs)

    if num_workers <= 1 or len(tiles) <= 1:
        return [worker_fn(t) for t in tqdm(tiles, desc="Preprocessing tiles", disable=len(tiles) < 2)]

    with mp.Pool(processes=num_workers) as pool:
        return list(
            tqdm(
                pool.imap(worker_fn, tiles),
                total=len(tiles),
                desc="Preprocessing tiles"
            )
        )


# ============================================================================
# PIPELINE
# ============================================================================

def build_composite(tiles: Sequence[RasterTile], config: RunConfig) -> RasterTile:
    """
    Preprocess and composite a stack of tiles.

    Raises:
        DataGapError: If no tile keeps a clear pixel
    """
    start, end = config.window
    if not tiles:
        raise DataGapError(f"No tile between {start} and {end}", start, end, config.region)

    preprocessed = preprocess_stack(
        tiles,
        num_workers=config.num_workers,
        index_names=config.index_names,
        qa_band=config.qa_band,
        shadow_bit=config.shadow_bit,
        cloud_bit=config.cloud_bit,
    )
    usable = [t for t in preprocessed if t.valid_count > 0]
    for t in preprocessed:
        if t.valid_count == 0:
            log.warning(f"Tile {t.acquired} has no clear pixel, skipped")

    if not usable:
        raise DataGapError(
            f"All {len(tiles)} tiles between {start} and {end} are fully cloud-masked",
            start, end, config.region,
        )

    return composite(usable, config.reducer, config.quality_band, config.chunk_rows)


def run_pipeline(
    config: RunConfig,
    tiles: Sequence[RasterTile],
    elevation: Optional[RasterTile],
    training_geometries: Sequence[LabeledGeometry],
    validation_geometries: Optional[Sequence[LabeledGeometry]] = None,
) -> PipelineResult:
    """
    Run the full workflow on in-memory inputs.

    Held-out validation uses validation_geometries when given, otherwise the
    testing partition of the training samples.

    Returns:
        PipelineResult with status 'ok', or 'no_data' on a data gap

    Raises:
        ConfigurationError: On any fatal misconfiguration
    """
    timings: Dict[str, float] = {}
    t0 = time.time()

    log.info("=" * 60)
    log.info(f"MANGROVE MAPPING {config.output_name}: year {config.year}, window {config.window}")
    log.info("=" * 60)

    #! Composite
    try:
        composite_tile = build_composite(tiles, config)
    except DataGapError as e:
        log.warning(f"No data: {e}")
        return PipelineResult(status=STATUS_NO_DATA, message=str(e), n_tiles=len(tiles))
    timings["composite"] = time.time() - t0

    #! Threshold masks
    masked = apply_thresholds(composite_tile, config.predicates, reference=elevation)

    #! Training
    t1 = time.time()
    samples = extract_samples(masked, training_geometries, config.feature_bands, seed=config.seed)
    training, testing = samples.split(config.split_fraction)
    if validation_geometries:
        testing = extract_samples(masked, validation_geometries, config.feature_bands, seed=config.seed)

    classifier = RandomForestPixelClassifier(
        tree_count=config.tree_count,
        features_per_split=config.features_per_split,
        random_state=config.seed,
        n_jobs=config.num_workers,
    )
    model = classifier.train(training, config.feature_bands)
    timings["training"] = time.time() - t1

    #! Classification and denoising
    t2 = time.time()
    classified = classifier.classify(masked, model, batch_size=config.batch_size)
    filtered = filter_small_components(
        classified,
        min_size=config.min_component_size,
        max_size=config.max_component_size,
        connectivity=config.connectivity,
        target_classes=config.target_classes,
    )
    timings["classification"] = time.time() - t2

    #! Statistics
    area_ha = sum(area_estimate(filtered, target_class=c) for c in config.target_classes)
    matrix = validate(testing, model, classifier.class_ids)
    print_evaluation_summary(matrix, area_ha)

    result = PipelineResult(
        status=STATUS_OK,
        area_ha=area_ha,
        confusion_matrix=matrix,
        model=model,
        classification=filtered,
        n_tiles=len(tiles),
        n_training=len(training),
        n_validation=len(testing),
        timings=timings,
    )

    #! Export (fire-and-forget)
    if config.export:
        try:
            result.export_path = export_tile(
                filtered,
                config.output_name,
                region=config.region,
                scale=config.export_scale,
                max_pixels=config.max_pixels,
                out_dir=config.out_dir,
            )
            save_evaluation_report(result.summary(), config.out_dir, config.output_name)
            samples.to_geodataframe(filtered.crs).to_file(
                Path(config.out_dir) / f"{config.output_name}_samples.gpkg", driver="GPKG"
            )
            if config.model_dir:
                classifier.save(model, config.model_dir)
        except OSError as e:
            log.warning(f"Export of '{config.output_name}' failed: {e}")

    timings["total"] = time.time() - t0
    log.info(f"Pipeline completed in {timings['total']:.2f} seconds: {area_ha:.2f} ha mapped")
    return result


def validate(testing: TrainingSet, model: TrainedModel, class_ids: Sequence[int]) -> ConfusionMatrix:
    """Confusion matrix of the held-out samples."""
    if len(testing) == 0:
        log.warning("No held-out sample: the confusion matrix is empty")
    predicted = predict_samples(testing, model)
    return error_matrix(testing.labels(), predicted, labels=class_ids)


def run_from_archive(
    config: RunConfig,
    archive: TileArchive,
    elevation: Optional[RasterTile],
    training_geometries: Sequence[LabeledGeometry],
    validation_geometries: Optional[Sequence[LabeledGeometry]] = None,
) -> PipelineResult:
    """Load the window's tiles from an archive, then run the pipeline."""
    start, end = config.window
    tiles = archive.load_stack(LandsatBands.ALL, start, end, config.region)
    return run_pipeline(config, tiles, elevation, training_geometries, validation_geometries)
