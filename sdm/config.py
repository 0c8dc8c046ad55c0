"""
Pipeline configuration: defaults, exclusion rules and the run configuration.
"""

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError


# Projections are stored on disk as integers scaled by this factor
PROBABILITY_SCALE = 1000

# Number of raster cells drawn as background (pseudo-absence) points
DEFAULT_SAMPLE_SIZE = 1000

# Repeated random splits: number of runs and percent of rows used for calibration
DEFAULT_NB_RUN_EVAL = 3
DEFAULT_DATA_SPLIT = 70

DEFAULT_ALGORITHMS = ("GAM",)
DEFAULT_METRICS = ("ROC",)

KNOWN_ALGORITHMS = ("GAM", "GLM", "RF", "GBM")
KNOWN_METRICS = ("ROC", "TSS")

# Decimal places used when formatting coordinates into a dedup key
DEDUP_DECIMALS = 4

# OBPG temporal aggregation codes
PERIODS = {
    "DAY": "daily",
    "8D": "8-day",
    "MO": "monthly",
    "SCSP": "seasonal (spring)",
    "SCSU": "seasonal (summer)",
    "SCAU": "seasonal (autumn)",
    "SCWI": "seasonal (winter)",
    "YR": "annual",
}

DEFAULT_VARIABLES = ("sst", "chlor_a")

# Predefined regions (min_lon, min_lat, max_lon, max_lat)
REGIONS = {
    "gulf_of_maine": {
        "bbox": (-72.0, 39.0, -63.0, 46.0),
        "description": "Gulf of Maine and Georges Bank",
    },
}


@dataclass(frozen=True)
class ExclusionRule:
    """
    A named row filter for the presence/background table.

    Rows whose ``label`` matches and whose ``column`` value is strictly
    beyond a threshold are dropped. ``label=None`` applies the rule to
    every row.
    """

    name: str
    column: str
    greater_than: Optional[float] = None
    less_than: Optional[float] = None
    label: Optional[int] = 1

    def __post_init__(self):
        if self.greater_than is None and self.less_than is None:
            raise ConfigurationError(
                f"Exclusion rule '{self.name}' needs greater_than or less_than",
                {"rule": self.name},
            )

    def mask(self, table: pd.DataFrame) -> np.ndarray:
        """Boolean mask of rows to drop."""
        if self.column not in table.columns:
            raise ConfigurationError(
                f"Exclusion rule '{self.name}' refers to missing column '{self.column}'",
                {"rule": self.name, "columns": list(table.columns)},
            )

        values = table[self.column].to_numpy(dtype=float)
        drop = np.zeros(len(table), dtype=bool)
        if self.greater_than is not None:
            drop |= values > self.greater_than
        if self.less_than is not None:
            drop |= values < self.less_than
        if self.label is not None:
            drop &= table["label"].to_numpy() == self.label
        return drop


# Sightings north of 45.5N in the study area fall on land (Bay of Fundy
# shore and inland Maine) after gridding to the 9km product.
LAND_CONTAMINATION = ExclusionRule(
    name="land_contamination",
    column="latitude",
    greater_than=45.5,
    label=1,
)


@dataclass
class PipelineConfig:
    """Everything one pipeline run needs."""

    species_name: str
    catalog_root: Path
    output_dir: Path
    start_date: date
    end_date: date
    target_month: int
    variables: tuple[str, ...] = DEFAULT_VARIABLES
    period: str = "MO"
    sample_size: int = DEFAULT_SAMPLE_SIZE
    exclusion_rules: tuple[ExclusionRule, ...] = (LAND_CONTAMINATION,)
    algorithms: tuple[str, ...] = DEFAULT_ALGORITHMS
    nb_run_eval: int = DEFAULT_NB_RUN_EVAL
    data_split: int = DEFAULT_DATA_SPLIT
    metrics: tuple[str, ...] = DEFAULT_METRICS
    seed: int = 42
    source: str = "obis"
    bbox: Optional[tuple[float, float, float, float]] = None
    # (target_variable, source_variable): no-data in source is forced onto target
    mask_from: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    proj_name: str = "current"
    basemap: Optional[Path] = None

    def __post_init__(self):
        self.catalog_root = Path(self.catalog_root)
        self.output_dir = Path(self.output_dir)
        self.start_date = pd.Timestamp(self.start_date).date()
        self.end_date = pd.Timestamp(self.end_date).date()

    @property
    def sampling_variable(self) -> str:
        """Variable whose target-month layer is used to draw background points."""
        return self.variables[0]

    def validate(self) -> "PipelineConfig":
        """Check value ranges; raise ConfigurationError on the first problem."""
        problems = []
        if not 1 <= self.target_month <= 12:
            problems.append(f"target_month must be 1-12, got {self.target_month}")
        if not 0 < self.data_split < 100:
            problems.append(f"data_split must be between 0 and 100, got {self.data_split}")
        if self.nb_run_eval < 1:
            problems.append(f"nb_run_eval must be >= 1, got {self.nb_run_eval}")
        if self.sample_size < 1:
            problems.append(f"sample_size must be >= 1, got {self.sample_size}")
        if self.start_date > self.end_date:
            problems.append(f"start_date {self.start_date} is after end_date {self.end_date}")
        if not self.variables:
            problems.append("at least one variable is required")
        if self.period not in PERIODS:
            problems.append(f"unknown period '{self.period}', choose from {list(PERIODS)}")
        if self.source not in ("obis", "gbif"):
            problems.append(f"unknown occurrence source '{self.source}'")

        unknown = [a for a in self.algorithms if a not in KNOWN_ALGORITHMS]
        if unknown or not self.algorithms:
            problems.append(f"unknown algorithms {unknown}, choose from {list(KNOWN_ALGORITHMS)}")
        unknown = [m for m in self.metrics if m not in KNOWN_METRICS]
        if unknown or not self.metrics:
            problems.append(f"unknown metrics {unknown}, choose from {list(KNOWN_METRICS)}")

        for target, source in self.mask_from:
            if target not in self.variables or source not in self.variables:
                problems.append(f"mask_from pair ({target}, {source}) names a variable not loaded")

        if problems:
            raise ConfigurationError("; ".join(problems), {"species": self.species_name})
        return self
