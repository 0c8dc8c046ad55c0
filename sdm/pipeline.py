"""
Main pipeline: occurrences + environmental layers -> fitted models -> probability map.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from .config import PipelineConfig
from .layers import RasterStack, build_catalog, load_variable, mask_stack, stack_covariates
from .model import FormattedData, ModelingOutput, fit_models, format_data
from .occurrences import fetch_occurrences, occurrences_to_geojson
from .plotting import plot_projection
from .predict import Projection, project
from .sampling import build_sample_table

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one run produced, stage by stage."""

    config: PipelineConfig
    occurrences: pd.DataFrame
    stacks: dict[str, RasterStack]
    samples: pd.DataFrame
    data: FormattedData
    modeling: ModelingOutput
    projection: Projection
    paths: dict[str, Path] = field(default_factory=dict)


def load_environment(
    catalog_root: Path,
    variables: tuple[str, ...],
    period: str,
    start,
    end,
    bbox: Optional[tuple[float, float, float, float]] = None,
    mask_from: tuple[tuple[str, str], ...] = (),
) -> dict[str, RasterStack]:
    """
    Load one stack per variable from the catalog and apply cross-variable masks.

    Args:
        catalog_root: Directory of OBPG raster files
        variables: Variables to load
        period: Aggregation period code
        start, end: Inclusive date window
        bbox: Optional crop window
        mask_from: (target, source) pairs; source no-data is forced onto target

    Returns:
        Mapping of variable name to RasterStack
    """
    catalog = build_catalog(catalog_root)
    stacks = {
        variable: load_variable(catalog, variable, period, start, end, bbox=bbox)
        for variable in variables
    }
    for target, source in mask_from:
        stacks[target] = mask_stack(stacks[target], stacks[source])
    return stacks


def run_pipeline(
    config: PipelineConfig,
    occurrences: Optional[pd.DataFrame] = None,
    session=None,
) -> PipelineResult:
    """
    Run the five stages once, in order.

    Args:
        config: Run configuration
        occurrences: Pre-fetched occurrence table; skips the network query
        session: Optional requests session for the occurrence service

    Returns:
        PipelineResult with every stage's output
    """
    config.validate()
    output_dir = config.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {}

    logger.info("=" * 60)
    logger.info(f"Species distribution model for: {config.species_name}")
    logger.info("=" * 60)

    # 1. Occurrences
    logger.info(f"[1/5] Fetching {config.source.upper()} occurrences...")
    if occurrences is None:
        occurrences = fetch_occurrences(
            config.species_name, source=config.source, bbox=config.bbox, session=session
        )
    else:
        logger.info(f"  Using {len(occurrences)} supplied occurrences")

    occ_path = output_dir / f"{config.species_name.replace(' ', '_').lower()}_occurrences.geojson"
    with open(occ_path, "w") as f:
        json.dump(occurrences_to_geojson(occurrences, config.species_name), f)
    logger.info(f"Saved occurrences: {occ_path}")
    paths["occurrences"] = occ_path

    # 2. Environmental layers
    logger.info("[2/5] Loading environmental layers...")
    stacks = load_environment(
        config.catalog_root, config.variables, config.period,
        config.start_date, config.end_date, bbox=config.bbox, mask_from=config.mask_from,
    )

    # 3. Presence/background samples
    logger.info(f"[3/5] Building samples for month {config.target_month}...")
    reference = stacks[config.sampling_variable]
    layer_name = reference.layer_for_month(config.target_month)
    samples = build_sample_table(
        occurrences, reference, config.target_month,
        layer_name=layer_name,
        sample_size=config.sample_size,
        exclusion_rules=config.exclusion_rules,
        seed=config.seed,
    )
    samples_path = output_dir / "samples.csv"
    samples.to_csv(samples_path, index=False)
    paths["samples"] = samples_path

    # 4. Model fitting
    logger.info(f"[4/5] Fitting {', '.join(config.algorithms)} ({config.nb_run_eval} runs, {config.data_split}% split)...")
    covariates = stack_covariates(stacks, month=config.target_month)
    data = format_data(
        samples["label"], samples[["longitude", "latitude"]], covariates, config.species_name
    )
    modeling = fit_models(
        data,
        algorithms=config.algorithms,
        nb_run_eval=config.nb_run_eval,
        data_split=config.data_split,
        metrics=config.metrics,
        seed=config.seed,
    )
    paths["models"] = modeling.save(output_dir)

    for algorithm in config.algorithms:
        for metric in config.metrics:
            scores = modeling.get_evaluations(metric, algorithm)
            logger.info(f"  {algorithm} {metric}: mean {scores.mean():.3f} over {len(scores)} runs")

    # 5. Projection and map
    logger.info(f"[5/5] Projecting to '{config.proj_name}'...")
    projection = project(modeling, covariates, proj_name=config.proj_name, output_dir=output_dir)
    paths["projection"] = projection.path

    probability = projection.probability()
    map_path = projection.path.with_suffix(".png")
    plot_projection(
        probability,
        projection.extent,
        occurrences=samples,
        basemap=config.basemap,
        title=f"{config.species_name}: {layer_name}",
        out_path=map_path,
    )
    paths["map"] = map_path

    logger.info("=" * 60)
    logger.info("COMPLETE")
    logger.info("=" * 60)

    return PipelineResult(
        config=config,
        occurrences=occurrences,
        stacks=stacks,
        samples=samples,
        data=data,
        modeling=modeling,
        projection=projection,
        paths=paths,
    )
