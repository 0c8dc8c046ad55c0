"""
Projection of fitted models over a covariate grid.

Probabilities are stored on disk as integers scaled by PROBABILITY_SCALE
(0-1000). to_raw and to_probability are the only places that convert
between the two scales.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from tqdm import tqdm

from .config import PROBABILITY_SCALE
from .layers import RasterStack
from .model import ModelingOutput

logger = logging.getLogger(__name__)


RAW_DTYPE = "int16"
RAW_NODATA = -9999


def to_raw(probability: np.ndarray) -> np.ndarray:
    """Scale probabilities in [0, 1] to stored integers; NaN becomes RAW_NODATA."""
    probability = np.asarray(probability, dtype=float)
    raw = np.full(probability.shape, RAW_NODATA, dtype=RAW_DTYPE)
    valid = ~np.isnan(probability)
    raw[valid] = np.rint(np.clip(probability[valid], 0.0, 1.0) * PROBABILITY_SCALE).astype(RAW_DTYPE)
    return raw


def to_probability(raw: np.ndarray, nodata: Optional[float] = RAW_NODATA) -> np.ndarray:
    """Convert stored integers back to probabilities in [0, 1]; nodata becomes NaN."""
    raw = np.asarray(raw)
    probability = raw.astype(np.float32) / PROBABILITY_SCALE
    if nodata is not None:
        probability[raw == nodata] = np.nan
    return probability


def projection_path(output_dir: Union[str, Path], resp_name: str, proj_name: str) -> Path:
    """<output_dir>/<species>/proj_<name>/proj_<name>_<species>.tif"""
    return Path(output_dir) / resp_name / f"proj_{proj_name}" / f"proj_{proj_name}_{resp_name}.tif"


@dataclass
class Projection:
    """Container for a multi-model projection."""

    species_name: str
    proj_name: str
    raw: np.ndarray  # (models, H, W) probability x PROBABILITY_SCALE
    names: list[str]
    transform: Affine
    crs: Optional[CRS] = None
    path: Optional[Path] = None

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax) of the grid."""
        _, height, width = self.raw.shape
        west, south, east, north = array_bounds(height, width, self.transform)
        return west, east, south, north

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No model band named '{name}'; bands are {self.names}") from None

    def probability(self, name: Optional[str] = None) -> np.ndarray:
        """
        Probability surface of one model, or the mean over all models.

        Args:
            name: Model (band) name; None averages every band

        Returns:
            (H, W) array in [0, 1], NaN where covariates were missing
        """
        if name is not None:
            return to_probability(self.raw[self.index(name)])

        probs = to_probability(self.raw)
        valid = ~np.isnan(probs)
        counts = valid.sum(axis=0)
        total = np.where(valid, probs, 0.0).sum(axis=0)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(counts > 0, total / counts, np.nan).astype(np.float32)

    def to_geojson(
        self,
        threshold: float = 0.5,
        max_points: int = 5000,
        name: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> dict:
        """Convert high-scoring cells to GeoJSON."""
        scores = self.probability(name)
        rows, cols = np.where(np.nan_to_num(scores, nan=-1.0) >= threshold)

        # Subsample if too many points
        if len(rows) > max_points:
            idx = np.random.default_rng(seed).choice(len(rows), max_points, replace=False)
            rows, cols = rows[idx], cols[idx]

        features = []
        for row, col in zip(rows, cols):
            lon, lat = rasterio.transform.xy(self.transform, row, col)
            features.append({
                "type": "Feature",
                "properties": {"probability": float(scores[row, col])},
                "geometry": {"type": "Point", "coordinates": [float(lon), float(lat)]}
            })

        # Sort by probability (ascending, so high values rendered on top)
        features.sort(key=lambda f: f["properties"]["probability"])

        return {
            "type": "FeatureCollection",
            "features": features,
            "metadata": {
                "species": self.species_name,
                "projection": self.proj_name,
                "model": name or "mean",
                "n_candidates": len(features),
                "threshold": threshold,
                "extent": list(self.extent),
            }
        }


def predict_cells(
    output: ModelingOutput,
    name: str,
    X: np.ndarray,
    batch_size: int = 15000,
) -> np.ndarray:
    """Predict probability of presence for many cells in batches."""
    n_samples = len(X)
    scores = np.zeros(n_samples, dtype=np.float32)

    for i in tqdm(range(0, n_samples, batch_size), desc=f"Projecting {name}", disable=None):
        end = min(i + batch_size, n_samples)
        scores[i:end] = output.predict_proba(name, X[i:end])

    return scores


def write_projection(projection: Projection, path: Union[str, Path]) -> Path:
    """Write a projection as a multi-band integer GeoTIFF with named bands."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count, height, width = projection.raw.shape

    with rasterio.open(
        path, "w",
        driver="GTiff",
        height=height,
        width=width,
        count=count,
        dtype=RAW_DTYPE,
        crs=projection.crs or "EPSG:4326",
        transform=projection.transform,
        nodata=RAW_NODATA,
        compress="lzw",
    ) as dst:
        dst.write(projection.raw)
        for i, name in enumerate(projection.names, start=1):
            dst.set_band_description(i, name)
        dst.update_tags(species=projection.species_name, projection=projection.proj_name,
                        scale=str(PROBABILITY_SCALE))

    logger.info(f"Saved projection raster: {path}")
    return path


def load_projection(path: Union[str, Path]) -> Projection:
    """Read a projection GeoTIFF written by write_projection."""
    path = Path(path)
    with rasterio.open(path) as src:
        raw = src.read()
        nodata = src.nodata
        tags = src.tags()
        names = [d or f"band{i}" for i, d in enumerate(src.descriptions, start=1)]
        transform, crs = src.transform, src.crs

    if nodata is not None and nodata != RAW_NODATA:
        raw = np.where(raw == nodata, RAW_NODATA, raw).astype(RAW_DTYPE)

    return Projection(
        species_name=tags.get("species", ""),
        proj_name=tags.get("projection", ""),
        raw=raw,
        names=names,
        transform=transform,
        crs=crs,
        path=path,
    )


def project(
    output: ModelingOutput,
    covariates: RasterStack,
    proj_name: str = "current",
    output_dir: Optional[Union[str, Path]] = None,
    models: Optional[list[str]] = None,
    batch_size: int = 15000,
) -> Projection:
    """
    Apply fitted models to every cell of a covariate stack.

    The covariate stack may differ from the one used for fitting (e.g., a
    different month or year) but must carry the same variables.

    Args:
        output: Fitted models from fit_models
        covariates: Covariate stack, one layer per variable
        proj_name: Projection name used in the output path
        output_dir: If provided, write the projection GeoTIFF below it
        models: Model names to project (default: all)
        batch_size: Cells per prediction batch

    Returns:
        Projection with one band per model
    """
    missing = [v for v in output.variables if v not in covariates.names]
    if missing:
        raise ValueError(f"Covariate stack lacks variables {missing} used for fitting")
    covariates = covariates.subset(output.variables)

    names = list(models) if models is not None else list(output.models)
    _, height, width = covariates.shape

    valid = covariates.valid_mask()
    X = covariates.data[:, valid].T.astype(float)
    logger.info(f"Projecting {len(names)} models over {int(valid.sum()):,} of {height * width:,} cells")

    raw = np.full((len(names), height, width), RAW_NODATA, dtype=RAW_DTYPE)
    for i, name in enumerate(names):
        band = np.full((height, width), np.nan, dtype=np.float32)
        if len(X):
            band[valid] = predict_cells(output, name, X, batch_size=batch_size)
        raw[i] = to_raw(band)

    projection = Projection(
        species_name=output.species_name,
        proj_name=proj_name,
        raw=raw,
        names=names,
        transform=covariates.transform,
        crs=covariates.crs,
    )

    if output_dir is not None:
        projection.path = write_projection(
            projection, projection_path(output_dir, output.resp_name, proj_name)
        )

    return projection
