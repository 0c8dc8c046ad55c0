"""
Species Distribution Modelling from Ocean-Colour Rasters

Fit presence/background models for marine species using OBIS/GBIF
occurrences and NASA OBPG Level-3 sea-surface temperature and
chlorophyll layers, then project probability-of-presence maps.
"""

from .config import LAND_CONTAMINATION, PROBABILITY_SCALE, ExclusionRule, PipelineConfig
from .exceptions import (
    ConfigurationError,
    EmptySelectionError,
    LayerAlignmentError,
    ModelFittingError,
    OccurrenceFetchError,
    SDMError,
)
from .occurrences import fetch_occurrences, occurrences_to_frame, occurrences_to_geojson
from .layers import RasterStack, build_catalog, load_stack, load_variable, mask_stack, select_layers, stack_covariates
from .sampling import build_sample_table, dedup_key, sample_background, subset_occurrences
from .model import ModelingOptions, ModelingOutput, fit_models, format_data
from .predict import Projection, load_projection, project, to_probability, to_raw
from .pipeline import run_pipeline

__all__ = [
    "LAND_CONTAMINATION",
    "PROBABILITY_SCALE",
    "ExclusionRule",
    "PipelineConfig",
    "ConfigurationError",
    "EmptySelectionError",
    "LayerAlignmentError",
    "ModelFittingError",
    "OccurrenceFetchError",
    "SDMError",
    "fetch_occurrences",
    "occurrences_to_frame",
    "occurrences_to_geojson",
    "RasterStack",
    "build_catalog",
    "load_stack",
    "load_variable",
    "mask_stack",
    "select_layers",
    "stack_covariates",
    "build_sample_table",
    "dedup_key",
    "sample_background",
    "subset_occurrences",
    "ModelingOptions",
    "ModelingOutput",
    "fit_models",
    "format_data",
    "Projection",
    "load_projection",
    "project",
    "to_probability",
    "to_raw",
    "run_pipeline",
]
