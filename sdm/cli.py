"""
Command-line interface for the species distribution pipeline.
"""

import argparse
import logging
from pathlib import Path

from .config import (
    DEFAULT_DATA_SPLIT,
    DEFAULT_NB_RUN_EVAL,
    DEFAULT_SAMPLE_SIZE,
    DEFAULT_VARIABLES,
    KNOWN_ALGORITHMS,
    KNOWN_METRICS,
    LAND_CONTAMINATION,
    REGIONS,
    ExclusionRule,
    PipelineConfig,
)
from .pipeline import run_pipeline


def _mask_pair(value: str) -> tuple[str, str]:
    try:
        target, source = value.split(":")
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected TARGET:SOURCE, got '{value}'") from None
    return target, source


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Turn parsed arguments into a PipelineConfig."""
    if args.region:
        bbox = REGIONS[args.region]["bbox"]
    elif args.bbox:
        bbox = tuple(args.bbox)
    else:
        bbox = None

    if args.no_land_filter:
        rules = ()
    elif args.land_latitude is not None:
        rules = (ExclusionRule(LAND_CONTAMINATION.name, "latitude", greater_than=args.land_latitude, label=1),)
    else:
        rules = (LAND_CONTAMINATION,)

    return PipelineConfig(
        species_name=args.species,
        catalog_root=Path(args.catalog),
        output_dir=Path(args.output_dir),
        start_date=args.start,
        end_date=args.end,
        target_month=args.month,
        variables=tuple(args.variables),
        period=args.period,
        sample_size=args.sample_size,
        exclusion_rules=rules,
        algorithms=tuple(args.algorithms),
        nb_run_eval=args.runs,
        data_split=args.split,
        metrics=tuple(args.metrics),
        seed=args.seed,
        source=args.source,
        bbox=bbox,
        mask_from=tuple(args.mask),
        proj_name=args.proj_name,
        basemap=Path(args.basemap) if args.basemap else None,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Fit a presence/background species distribution model")
    parser.add_argument("species", help="Scientific name of the species (e.g., 'Calanus finmarchicus')")
    parser.add_argument("--catalog", "-c", required=True, help="Directory of OBPG L3 mapped raster files")
    parser.add_argument("--start", required=True, help="First layer date (YYYY-MM-DD)")
    parser.add_argument("--end", required=True, help="Last layer date (YYYY-MM-DD)")
    parser.add_argument("--month", type=int, required=True, help="Target month (1-12)")
    parser.add_argument("--output-dir", "-o", default="./output", help="Output directory")
    parser.add_argument("--variables", nargs="+", default=list(DEFAULT_VARIABLES),
                        help="Covariates; the first is used for background sampling")
    parser.add_argument("--period", default="MO", help="OBPG aggregation period code")
    parser.add_argument("--sample-size", type=int, default=DEFAULT_SAMPLE_SIZE, help="Background cells to draw")
    parser.add_argument("--algorithms", "-m", nargs="+", default=["GAM"], choices=list(KNOWN_ALGORITHMS),
                        help="Model algorithms")
    parser.add_argument("--metrics", nargs="+", default=["ROC"], choices=list(KNOWN_METRICS),
                        help="Evaluation metrics")
    parser.add_argument("--runs", type=int, default=DEFAULT_NB_RUN_EVAL, help="Number of evaluation runs")
    parser.add_argument("--split", type=float, default=DEFAULT_DATA_SPLIT, help="Percent of data for calibration")
    parser.add_argument("--source", default="obis", choices=["obis", "gbif"], help="Occurrence service")
    parser.add_argument("--region", choices=list(REGIONS), help="Predefined region bbox")
    parser.add_argument("--bbox", nargs=4, type=float, metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"),
                        help="Crop window and occurrence query box")
    parser.add_argument("--mask", nargs="*", type=_mask_pair, default=[], metavar="TARGET:SOURCE",
                        help="Force SOURCE no-data cells onto TARGET (e.g., chlor_a:sst)")
    parser.add_argument("--land-latitude", type=float, help="Drop presences north of this latitude")
    parser.add_argument("--no-land-filter", action="store_true", help="Disable the land-contamination rule")
    parser.add_argument("--proj-name", default="current", help="Projection name")
    parser.add_argument("--basemap", help="Coastline vector file for the map")
    parser.add_argument("--seed", "-s", type=int, default=42, help="Random seed")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    result = run_pipeline(build_config(args))

    for label, path in result.paths.items():
        print(f"{label}: {path}")

    return result


if __name__ == "__main__":
    main()
