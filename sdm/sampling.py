"""
Presence/background sample construction.

Occurrences inside the raster extent and target month become presence
rows (label 1); randomly drawn raster cells become background rows
(label 0). Rows are keyed by their formatted coordinates so background
points never duplicate a presence location.
"""

import logging
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .config import DEDUP_DECIMALS, DEFAULT_SAMPLE_SIZE, LAND_CONTAMINATION, ExclusionRule
from .exceptions import EmptySelectionError
from .layers import RasterStack

logger = logging.getLogger(__name__)


SAMPLE_COLUMNS = ["longitude", "latitude", "label", "key"]


def subset_occurrences(
    occurrences: pd.DataFrame,
    extent: tuple[float, float, float, float],
    month: int,
) -> pd.DataFrame:
    """
    Keep occurrences inside an extent and observed in a given month.

    Args:
        occurrences: Occurrence table with longitude, latitude and month columns
        extent: (xmin, xmax, ymin, ymax), bounds inclusive
        month: Target month (1-12)

    Returns:
        Filtered copy of the occurrence table
    """
    xmin, xmax, ymin, ymax = extent
    lon = occurrences["longitude"].astype(float)
    lat = occurrences["latitude"].astype(float)
    months = pd.to_numeric(occurrences["month"], errors="coerce").astype(float)

    keep = lon.between(xmin, xmax) & lat.between(ymin, ymax) & (months == month)
    subset = occurrences[keep.to_numpy()].reset_index(drop=True)

    logger.info(f"Occurrences in extent for month {month}: {len(subset)} of {len(occurrences)}")

    if subset.empty:
        raise EmptySelectionError(
            f"No occurrences inside {extent} for month {month}",
            {"extent": list(extent), "month": month, "n_occurrences": len(occurrences)},
        )

    return subset


def dedup_key(lon, lat, decimals: int = DEDUP_DECIMALS) -> np.ndarray:
    """
    Format coordinates into "<lon>_<lat>" text keys.

    Coordinates are rounded to a fixed number of decimals first, so the key
    does not depend on how a float happens to print.
    """
    lon = np.round(np.atleast_1d(np.asarray(lon, dtype=float)), decimals) + 0.0
    lat = np.round(np.atleast_1d(np.asarray(lat, dtype=float)), decimals) + 0.0
    return np.array([f"{x:.{decimals}f}_{y:.{decimals}f}" for x, y in zip(lon, lat)], dtype=object)


def build_presence(
    occurrences: pd.DataFrame,
    stack: RasterStack,
    layer_name: str,
    decimals: int = DEDUP_DECIMALS,
) -> pd.DataFrame:
    """
    Turn occurrences into unique presence rows on valid raster cells.

    Args:
        occurrences: Occurrence table (already subset to extent and month)
        stack: Reference raster stack
        layer_name: Layer whose no-data cells reject a point
        decimals: Dedup key precision

    Returns:
        Presence table (label 1)
    """
    lon = occurrences["longitude"].to_numpy(dtype=float)
    lat = occurrences["latitude"].to_numpy(dtype=float)

    presence = pd.DataFrame({
        "longitude": lon,
        "latitude": lat,
        "label": 1,
        "key": dedup_key(lon, lat, decimals),
    })

    valid = ~np.isnan(stack.values_at(lon, lat, layer_name))
    n_invalid = int((~valid).sum())
    if n_invalid:
        logger.warning(f"{n_invalid} occurrences fall on no-data cells of '{layer_name}'")
    presence = presence[valid]

    n_before = len(presence)
    presence = presence.drop_duplicates("key").reset_index(drop=True)
    logger.info(f"Presence rows: {len(presence)} ({n_before - len(presence)} duplicates removed)")

    return presence


def sample_background(
    stack: RasterStack,
    layer_name: str,
    n_samples: int,
    presence: Optional[pd.DataFrame] = None,
    seed: Optional[int] = 42,
    exclude_presence_cells: bool = True,
    decimals: int = DEDUP_DECIMALS,
) -> pd.DataFrame:
    """
    Sample random background points from raster cells.

    Cells are drawn without replacement, then cells with no data, cells
    whose key collides with a presence key and (optionally) cells holding a
    presence point are discarded. The result may hold fewer than
    ``n_samples`` rows.

    Args:
        stack: Reference raster stack
        layer_name: Layer to sample from
        n_samples: Number of cells to draw
        presence: Presence table whose keys and cells are excluded
        seed: Random seed for reproducibility
        exclude_presence_cells: Also drop cells that contain a presence point
        decimals: Dedup key precision

    Returns:
        Background table (label 0)
    """
    rng = np.random.default_rng(seed)
    _, height, width = stack.shape

    n_draw = min(n_samples, height * width)
    cells = rng.choice(height * width, size=n_draw, replace=False)
    rows, cols = np.divmod(cells, width)

    lon, lat = stack.xy(rows, cols)
    keys = dedup_key(lon, lat, decimals)
    keep = ~np.isnan(stack.layer(layer_name)[rows, cols])

    if presence is not None and not presence.empty:
        keep &= ~np.isin(keys, presence["key"].to_numpy())
        if exclude_presence_cells:
            p_rows, p_cols, inside = stack.rowcol(presence["longitude"], presence["latitude"])
            occupied = p_rows[inside] * width + p_cols[inside]
            keep &= ~np.isin(cells, occupied)

    background = pd.DataFrame({
        "longitude": lon[keep],
        "latitude": lat[keep],
        "label": 0,
        "key": keys[keep],
    })

    if len(background) < n_samples:
        logger.warning(f"Only {len(background)} background samples (requested {n_samples})")

    return background


def apply_exclusions(table: pd.DataFrame, rules: Iterable[ExclusionRule]) -> pd.DataFrame:
    """Drop the rows matched by each exclusion rule."""
    for rule in rules:
        drop = rule.mask(table)
        if drop.any():
            logger.info(f"Exclusion rule '{rule.name}' dropped {int(drop.sum())} rows")
        table = table[~drop]
    return table.reset_index(drop=True)


def check_sample_table(table: pd.DataFrame, stack: RasterStack, layer_name: str) -> None:
    """
    Verify a presence/background table before model fitting.

    Raises:
        EmptySelectionError: if either class is missing
        ValueError: if keys collide or a row falls off valid cells
    """
    presence = table[table["label"] == 1]
    background = table[table["label"] == 0]

    if presence.empty or background.empty:
        raise EmptySelectionError(
            f"Sample table needs both classes (presence: {len(presence)}, background: {len(background)})",
            {"n_presence": len(presence), "n_background": len(background), "layer": layer_name},
        )

    if presence["key"].duplicated().any():
        raise ValueError("Duplicate keys among presence rows")

    if background["key"].isin(presence["key"]).any():
        raise ValueError("Background rows collide with presence keys")

    values = stack.values_at(table["longitude"], table["latitude"], layer_name)
    if np.isnan(values).any():
        raise ValueError(f"{int(np.isnan(values).sum())} sample rows fall outside valid cells of '{layer_name}'")


def build_sample_table(
    occurrences: pd.DataFrame,
    stack: RasterStack,
    month: int,
    layer_name: Optional[str] = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    exclusion_rules: Iterable[ExclusionRule] = (LAND_CONTAMINATION,),
    seed: Optional[int] = 42,
    exclude_presence_cells: bool = True,
    decimals: int = DEDUP_DECIMALS,
) -> pd.DataFrame:
    """
    Build the presence/background table for one month.

    Args:
        occurrences: Full occurrence table
        stack: Reference raster stack (e.g., monthly sst)
        month: Target month (1-12)
        layer_name: Layer used for validity and sampling (default: the
            stack's first layer in ``month``)
        sample_size: Number of background cells to draw
        exclusion_rules: Corrective filters applied to the combined table
        seed: Random seed for background sampling
        exclude_presence_cells: Keep background out of cells with a presence
        decimals: Dedup key precision

    Returns:
        DataFrame with columns longitude, latitude, label, key
    """
    if layer_name is None:
        layer_name = stack.layer_for_month(month)

    subset = subset_occurrences(occurrences, stack.extent, month)
    presence = build_presence(subset, stack, layer_name, decimals)
    if presence.empty:
        raise EmptySelectionError(
            f"No occurrences on valid cells of '{layer_name}' for month {month}",
            {"layer": layer_name, "month": month, "n_subset": len(subset)},
        )

    background = sample_background(
        stack, layer_name, sample_size, presence,
        seed=seed, exclude_presence_cells=exclude_presence_cells, decimals=decimals,
    )

    table = pd.concat([presence, background], ignore_index=True)[SAMPLE_COLUMNS]
    table = apply_exclusions(table, exclusion_rules)
    check_sample_table(table, stack, layer_name)

    logger.info(f"Sample table: {int(table['label'].sum())} presence, {int((table['label'] == 0).sum())} background")
    return table
