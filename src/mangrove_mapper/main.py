"""
Command-line entry point of the mangrove mapping pipeline.

Example:
    mangrove-mapper --year 2019 --region lake_x --output mangroves_2019 \
        --archive data/landsat --elevation data/srtm.tif \
        --training data/training.geojson --validation data/validation.geojson
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from mangrove_mapper.cste import (
    ClassifierConfig,
    CompositeConfig,
    GeneralConfig,
    GeneralPath,
    LandsatBands,
    PostProcessingConfig,
)
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.io_utils import TileArchive, load_geometries, load_tile, resolve_region
from mangrove_mapper.logger import configure_logging, get_logger
from mangrove_mapper.pipeline import STATUS_OK, RunConfig, run_from_archive

log = get_logger("main")

EXIT_OK = 0
EXIT_CONFIGURATION_ERROR = 2
EXIT_NO_DATA = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mangrove-mapper",
        description="Map mangrove cover from a Landsat archive with a Random Forest classifier.",
    )
    parser.add_argument("--year", type=int, required=True,
                        help="Central year Y; tiles from Y-1-01-01 to Y+1-12-31 are composited")
    parser.add_argument("--region", required=True,
                        help="Region name (see --regions) or 'minx,miny,maxx,maxy'")
    parser.add_argument("--output", required=True, help="Output name")
    parser.add_argument("--archive", required=True, help="Directory of GeoTIFF tiles")
    parser.add_argument("--elevation", help="Single-band elevation GeoTIFF on the tile grid")
    parser.add_argument("--training", required=True, help="Training geometries (GeoJSON, GeoPackage, Shapefile)")
    parser.add_argument("--validation", help="Validation geometries")
    parser.add_argument("--regions", default=GeneralPath.REGIONS_JSON, help="JSON file of named regions")
    parser.add_argument("--out-dir", default=GeneralPath.OUTPUT_PATH, help="Output directory")

    parser.add_argument("--reducer", default=CompositeConfig.REDUCER, choices=["median", "quality_mosaic"])
    parser.add_argument("--quality-band", default=CompositeConfig.QUALITY_BAND)
    parser.add_argument("--chunk-rows", type=int, default=CompositeConfig.CHUNK_ROWS)
    parser.add_argument("--trees", type=int, default=ClassifierConfig.TREE_COUNT)
    parser.add_argument("--features-per-split", type=int, default=ClassifierConfig.FEATURES_PER_SPLIT)
    parser.add_argument("--split", type=float, default=ClassifierConfig.SPLIT_FRACTION)
    parser.add_argument("--seed", type=int, default=GeneralConfig.RANDOM_SEED)
    parser.add_argument("--workers", type=int, default=GeneralConfig.NB_JOBS)
    parser.add_argument("--min-component", type=int, default=PostProcessingConfig.MIN_COMPONENT_SIZE)
    parser.add_argument("--max-component", type=int, default=PostProcessingConfig.MAX_COMPONENT_SIZE)
    parser.add_argument("--connectivity", type=int, default=PostProcessingConfig.CONNECTIVITY, choices=[4, 8])
    parser.add_argument("--no-export", action="store_true", help="Skip the export step")
    parser.add_argument("--save-model", action="store_true",
                        help=f"Save the trained Random Forest under {GeneralPath.MODEL_DIR}<output>/")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", action="store_true", help="Also log to a rotating file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(getattr(logging, args.log_level), log_to_file=args.log_file)

    try:
        config = RunConfig(
            year=args.year,
            region=resolve_region(args.region, args.regions),
            output_name=args.output,
            out_dir=args.out_dir,
            num_workers=args.workers,
            reducer=args.reducer,
            quality_band=args.quality_band,
            chunk_rows=args.chunk_rows,
            tree_count=args.trees,
            features_per_split=args.features_per_split,
            split_fraction=args.split,
            seed=args.seed,
            min_component_size=args.min_component,
            max_component_size=args.max_component,
            connectivity=args.connectivity,
            export=not args.no_export,
            model_dir=os.path.join(GeneralPath.MODEL_DIR, args.output) if args.save_model else None,
        )
        archive = TileArchive(args.archive)
        elevation = (
            load_tile(args.elevation, band_names=[LandsatBands.ELEVATION]) if args.elevation else None
        )
        #! Geometries are reprojected to the tile CRS
        crs = archive.crs
        training = load_geometries(args.training, crs=crs)
        validation = load_geometries(args.validation, crs=crs) if args.validation else None

        result = run_from_archive(config, archive, elevation, training, validation)
    except (ConfigurationError, FileNotFoundError, NotADirectoryError) as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR

    if result.status != STATUS_OK:
        log.warning(f"No data for {args.output}: {result.message}")
        return EXIT_NO_DATA

    log.info(f"{args.output}: {result.area_ha:.2f} ha, accuracy {result.accuracy:.4f}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
