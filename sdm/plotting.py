"""
Maps of raster stacks and projected probability surfaces.
"""

import logging
import math
from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .layers import RasterStack

logger = logging.getLogger(__name__)


def _load_basemap(basemap: Union[str, Path, gpd.GeoDataFrame, None]) -> Optional[gpd.GeoDataFrame]:
    if basemap is None or isinstance(basemap, gpd.GeoDataFrame):
        return basemap
    return gpd.read_file(basemap)


def _draw_basemap(ax, basemap: Optional[gpd.GeoDataFrame], extent) -> None:
    if basemap is None:
        return
    if basemap.crs is not None and basemap.crs.to_epsg() != 4326:
        basemap = basemap.to_crs(epsg=4326)
    basemap.boundary.plot(ax=ax, color="black", linewidth=0.6)
    xmin, xmax, ymin, ymax = extent
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)


def _save(fig, out_path: Optional[Union[str, Path]]) -> None:
    if out_path is None:
        return
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Saved figure: {out_path}")


def plot_projection(
    probability: np.ndarray,
    extent: tuple[float, float, float, float],
    occurrences: Optional[pd.DataFrame] = None,
    basemap: Union[str, Path, gpd.GeoDataFrame, None] = None,
    title: Optional[str] = None,
    cmap: str = "viridis",
    out_path: Optional[Union[str, Path]] = None,
):
    """
    Plot a probability surface with observed presences and a coastline.

    Args:
        probability: (H, W) probabilities in [0, 1], NaN for no data
        extent: (xmin, xmax, ymin, ymax) of the grid
        occurrences: Table with longitude/latitude (and optional label) columns;
            only presence rows are drawn when a label column is present
        basemap: Coastline/land polygons as a GeoDataFrame or vector file path
        title: Figure title
        cmap: Matplotlib colour map name
        out_path: If provided, save the figure here and close it

    Returns:
        The matplotlib Figure
    """
    fig, ax = plt.subplots(figsize=(10, 8))

    masked = np.ma.masked_invalid(probability)
    im = ax.imshow(masked, extent=extent, cmap=cmap, vmin=0, vmax=1,
                   origin="upper", interpolation="nearest")
    plt.colorbar(im, ax=ax, fraction=0.046, label="P(presence)")

    _draw_basemap(ax, _load_basemap(basemap), extent)

    if occurrences is not None and not occurrences.empty:
        points = occurrences
        if "label" in points.columns:
            points = points[points["label"] == 1]
        ax.scatter(points["longitude"], points["latitude"], s=8, c="red",
                   edgecolors="white", linewidths=0.3, label=f"Presence (n={len(points)})")
        ax.legend(loc="lower right")

    ax.set_xlabel("Longitude")
    ax.set_ylabel("Latitude")
    if title:
        ax.set_title(title, fontsize=13, fontweight="bold")

    _save(fig, out_path)
    return fig


def plot_stack(
    stack: RasterStack,
    ncols: int = 4,
    cmap: str = "inferno",
    basemap: Union[str, Path, gpd.GeoDataFrame, None] = None,
    out_path: Optional[Union[str, Path]] = None,
):
    """Small-multiples map of every layer in a stack, on a shared colour scale."""
    n_layers = stack.shape[0]
    ncols = max(1, min(ncols, n_layers))
    nrows = math.ceil(n_layers / ncols)

    fig, axes = plt.subplots(nrows, ncols, figsize=(3.5 * ncols, 3 * nrows), squeeze=False)
    basemap = _load_basemap(basemap)

    finite = stack.data[np.isfinite(stack.data)]
    vmin, vmax = (float(finite.min()), float(finite.max())) if finite.size else (0.0, 1.0)

    im = None
    for ax, name, layer in zip(axes.flat, stack.names, stack.data):
        im = ax.imshow(np.ma.masked_invalid(layer), extent=stack.extent, cmap=cmap,
                       vmin=vmin, vmax=vmax, interpolation="nearest")
        _draw_basemap(ax, basemap, stack.extent)
        ax.set_title(name, fontsize=10)
        ax.tick_params(labelsize=7)

    for ax in list(axes.flat)[n_layers:]:
        ax.set_visible(False)

    if im is not None:
        fig.colorbar(im, ax=axes.ravel().tolist(), fraction=0.02, label=stack.variable or "")

    _save(fig, out_path)
    return fig
