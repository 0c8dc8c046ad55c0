"""
Environmental layer loading.

Indexes a directory of NASA OBPG Level-3 mapped files, selects layers by
variable, period and date window, and reads them into co-registered
raster stacks.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.errors import WindowError
from rasterio.transform import Affine, array_bounds
from rasterio.windows import Window, from_bounds
from tqdm import tqdm

from .exceptions import EmptySelectionError, LayerAlignmentError

logger = logging.getLogger(__name__)


RASTER_EXTENSIONS = ("tif", "tiff", "nc")

CATALOG_COLUMNS = [
    "variable", "period", "date", "path",
    "end_date", "mission", "suite", "resolution", "nrt",
]

# AQUA_MODIS.20190801_20190831.L3m.MO.SST.sst.9km.nc
_OBPG_PATTERN = re.compile(
    r"^(?P<mission>[A-Z0-9_]+)\."
    r"(?P<start>\d{8})(?:_(?P<end>\d{8}))?\."
    r"L3m\.(?P<period>[A-Z0-9]+)\.(?P<suite>[A-Z0-9_]+)\."
    r"(?P<variable>[A-Za-z0-9_]+)\.(?P<resolution>[A-Za-z0-9]+)"
    r"(?P<nrt>\.NRT)?\.(?P<ext>[A-Za-z]+)$"
)

# A20192132019243.L3m_MO_SST_sst_9km.nc (pre-2020 naming, year + day of year)
_OBPG_LEGACY_PATTERN = re.compile(
    r"^(?P<mission>[A-Z])(?P<start>\d{7})(?P<end>\d{7})?\."
    r"L3m_(?P<period>[A-Z0-9]+)_(?P<suite>[A-Z0-9]+)_"
    r"(?P<variable>[A-Za-z0-9_]+)_(?P<resolution>\d+km)"
    r"(?P<nrt>_NRT)?\.(?P<ext>[A-Za-z]+)$"
)


def parse_filename(path: Union[str, Path]) -> Optional[dict]:
    """
    Parse an OBPG L3 mapped file name into catalog fields.

    Args:
        path: File path or name

    Returns:
        Dictionary of catalog fields, or None if the name does not follow
        either OBPG naming convention
    """
    path = Path(path)

    match = _OBPG_PATTERN.match(path.name)
    date_format = "%Y%m%d"
    if match is None:
        match = _OBPG_LEGACY_PATTERN.match(path.name)
        date_format = "%Y%j"
    if match is None or match["ext"].lower() not in RASTER_EXTENSIONS:
        return None

    start = pd.to_datetime(match["start"], format=date_format)
    end = pd.to_datetime(match["end"], format=date_format) if match["end"] else start

    return {
        "variable": match["variable"],
        "period": match["period"],
        "date": start,
        "path": str(path),
        "end_date": end,
        "mission": match["mission"],
        "suite": match["suite"],
        "resolution": match["resolution"],
        "nrt": match["nrt"] is not None,
    }


def build_catalog(root: Union[str, Path]) -> pd.DataFrame:
    """
    Index every OBPG raster file below a directory.

    Args:
        root: Catalog root directory

    Returns:
        DataFrame with columns variable, period, date, path (plus end_date,
        mission, suite, resolution, nrt), sorted by variable and date
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Catalog root not found: {root}")

    entries = []
    skipped = 0
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        entry = parse_filename(path)
        if entry is None:
            skipped += 1
            continue
        entries.append(entry)

    if skipped:
        logger.debug(f"Skipped {skipped} files that do not follow OBPG naming")

    catalog = pd.DataFrame(entries, columns=CATALOG_COLUMNS)
    catalog["date"] = pd.to_datetime(catalog["date"])
    catalog["end_date"] = pd.to_datetime(catalog["end_date"])
    catalog = catalog.sort_values(["variable", "period", "date"]).reset_index(drop=True)

    logger.info(f"Catalog {root}: {len(catalog)} layers, variables {sorted(catalog['variable'].unique())}")
    return catalog


def write_catalog(catalog: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Save a catalog index as CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    catalog.to_csv(path, index=False, date_format="%Y-%m-%d")
    return path


def read_catalog(path: Union[str, Path]) -> pd.DataFrame:
    """Load a catalog index previously saved with write_catalog."""
    catalog = pd.read_csv(path, dtype={"path": str})
    missing = set(CATALOG_COLUMNS[:4]) - set(catalog.columns)
    if missing:
        raise ValueError(f"Catalog file {path} is missing columns {sorted(missing)}")

    for column in ("date", "end_date"):
        if column in catalog.columns:
            catalog[column] = pd.to_datetime(catalog[column])
    return catalog


def select_layers(
    catalog: pd.DataFrame,
    variable: str,
    period: str,
    start,
    end,
) -> pd.DataFrame:
    """
    Select catalog rows for one variable, period and inclusive date range.

    Args:
        catalog: Catalog from build_catalog or read_catalog
        variable: Variable name (e.g., "sst", "chlor_a")
        period: Aggregation period code (e.g., "MO")
        start, end: Inclusive date bounds

    Returns:
        Matching rows, ordered by date
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)

    keep = (
        (catalog["variable"] == variable)
        & (catalog["period"] == period)
        & (catalog["date"] >= start)
        & (catalog["date"] <= end)
    )
    selection = catalog[keep].sort_values("date").reset_index(drop=True)

    if selection.empty:
        raise EmptySelectionError(
            f"No {variable} layers with period {period} between {start.date()} and {end.date()}",
            {"variable": variable, "period": period, "start": str(start.date()), "end": str(end.date())},
        )

    return selection


@dataclass
class RasterStack:
    """
    Ordered, co-registered raster layers.

    ``data`` has shape (layers, rows, cols); no-data cells are NaN.
    """

    data: np.ndarray
    names: list[str]
    transform: Affine
    crs: Optional[CRS] = None
    dates: list = field(default_factory=list)
    variable: Optional[str] = None

    def __post_init__(self):
        if self.data.ndim != 3:
            raise ValueError(f"Stack data must be 3-D (layers, rows, cols), got shape {self.data.shape}")
        if len(self.names) != self.data.shape[0]:
            raise ValueError(f"{len(self.names)} names for {self.data.shape[0]} layers")
        self.names = list(self.names)

    @property
    def shape(self) -> tuple[int, int, int]:
        return self.data.shape

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax) of the grid."""
        _, height, width = self.data.shape
        west, south, east, north = array_bounds(height, width, self.transform)
        return west, east, south, north

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No layer named '{name}'; layers are {self.names}") from None

    def layer(self, name: str) -> np.ndarray:
        return self.data[self.index(name)]

    def layer_for_month(self, month: int) -> str:
        """Name of the first layer dated in the given month."""
        for name, date in zip(self.names, self.dates):
            if pd.Timestamp(date).month == month:
                return name
        raise EmptySelectionError(
            f"No {self.variable or 'raster'} layer for month {month}",
            {"variable": self.variable, "month": month, "layers": self.names},
        )

    def valid_mask(self, name: Optional[str] = None) -> np.ndarray:
        """Cells holding data in the named layer, or in every layer."""
        if name is not None:
            return ~np.isnan(self.layer(name))
        return ~np.isnan(self.data).any(axis=0)

    def rowcol(self, lon, lat) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Convert coordinates to cell indices.

        Returns:
            Tuple of (rows, cols, inside); indices of points outside the
            extent are clipped and flagged False in ``inside``
        """
        lon = np.atleast_1d(np.asarray(lon, dtype=float))
        lat = np.atleast_1d(np.asarray(lat, dtype=float))
        _, height, width = self.data.shape
        xmin, xmax, ymin, ymax = self.extent
        if lon.size == 0:
            empty = np.array([], dtype=int)
            return empty, empty, np.array([], dtype=bool)

        rows, cols = rasterio.transform.rowcol(self.transform, lon, lat, op=np.floor)
        rows = np.clip(np.atleast_1d(np.asarray(rows, dtype=float)), 0, height - 1).astype(int)
        cols = np.clip(np.atleast_1d(np.asarray(cols, dtype=float)), 0, width - 1).astype(int)
        inside = (lon >= xmin) & (lon <= xmax) & (lat >= ymin) & (lat <= ymax)
        return rows, cols, inside

    def xy(self, rows, cols) -> tuple[np.ndarray, np.ndarray]:
        """Coordinates of cell centres."""
        rows = np.atleast_1d(np.asarray(rows, dtype=int))
        cols = np.atleast_1d(np.asarray(cols, dtype=int))
        if rows.size == 0:
            return np.array([], dtype=float), np.array([], dtype=float)
        lon, lat = rasterio.transform.xy(self.transform, rows, cols, offset="center")
        return np.asarray(lon, dtype=float), np.asarray(lat, dtype=float)

    def values_at(self, lon, lat, name: Optional[str] = None) -> np.ndarray:
        """
        Sample the stack at coordinates.

        Returns:
            (n_points,) values of the named layer, or (n_points, layers) for
            the whole stack; NaN outside the extent
        """
        rows, cols, inside = self.rowcol(lon, lat)
        if name is not None:
            values = self.layer(name)[rows, cols].astype(float)
            values[~inside] = np.nan
        else:
            values = self.data[:, rows, cols].T.astype(float)
            values[~inside, :] = np.nan
        return values

    def same_grid(self, other: "RasterStack") -> bool:
        return (
            self.data.shape[1:] == other.data.shape[1:]
            and self.transform.almost_equals(other.transform)
            and (self.crs is None or other.crs is None or self.crs == other.crs)
        )

    def subset(self, names: list[str]) -> "RasterStack":
        idx = [self.index(n) for n in names]
        dates = [self.dates[i] for i in idx] if self.dates else []
        return replace(self, data=self.data[idx], names=list(names), dates=dates)


def _dataset_path(path: str, variable: Optional[str]) -> str:
    # netCDF files carry several variables; GDAL addresses one as a subdataset
    if path.lower().endswith(".nc") and variable:
        return f"netcdf:{path}:{variable}"
    return path


def _no_overlap(path: str, bbox: tuple[float, float, float, float]) -> EmptySelectionError:
    return EmptySelectionError(
        f"Crop box {tuple(bbox)} does not overlap {Path(path).name}",
        {"bbox": list(bbox), "path": str(path)},
    )


def _read_layer(
    path: str,
    variable: Optional[str],
    bbox: Optional[tuple[float, float, float, float]],
) -> tuple[np.ndarray, Affine, Optional[CRS]]:
    with rasterio.open(_dataset_path(path, variable)) as src:
        if bbox is not None:
            min_lon, min_lat, max_lon, max_lat = bbox
            left, bottom, right, top = src.bounds
            if min_lon >= right or max_lon <= left or min_lat >= top or max_lat <= bottom:
                raise _no_overlap(path, bbox)
            window = from_bounds(min_lon, min_lat, max_lon, max_lat, transform=src.transform)
            window = window.round_offsets().round_lengths()
            try:
                window = window.intersection(Window(0, 0, src.width, src.height))
            except WindowError:
                raise _no_overlap(path, bbox) from None
            band = src.read(1, window=window, masked=True)
            transform = src.window_transform(window)
        else:
            band = src.read(1, masked=True)
            transform = src.transform

        band = band.astype(np.float32) * src.scales[0] + src.offsets[0]
        return np.ma.filled(band, np.nan).astype(np.float32), transform, src.crs


def load_stack(
    selection: Union[pd.DataFrame, list],
    label_format: str = "%b %Y",
    bbox: Optional[tuple[float, float, float, float]] = None,
    variable: Optional[str] = None,
) -> RasterStack:
    """
    Read selected layers into one stack.

    Args:
        selection: Catalog rows from select_layers, or a list of file paths
        label_format: strftime format turning a layer date into its name
        bbox: Optional (min_lon, min_lat, max_lon, max_lat) crop window
        variable: Variable name (taken from the selection when omitted)

    Returns:
        RasterStack with layers named by their time label
    """
    if isinstance(selection, pd.DataFrame):
        paths = selection["path"].astype(str).tolist()
        dates = list(pd.to_datetime(selection["date"]))
        names = [d.strftime(label_format) for d in dates]
        if variable is None and selection["variable"].nunique() == 1:
            variable = selection["variable"].iloc[0]
    else:
        paths = [str(p) for p in selection]
        dates = []
        names = [Path(p).stem for p in paths]

    if not paths:
        raise EmptySelectionError("No layers to load", {"variable": variable})

    if len(set(names)) < len(names):
        logger.warning(f"Duplicate layer labels with format '{label_format}'; lookups by name return the first")

    layers = []
    transform = crs = None
    for path in tqdm(paths, desc=f"Reading {variable or 'layers'}", disable=None):
        data, layer_transform, layer_crs = _read_layer(path, variable, bbox)
        if layers:
            if data.shape != layers[0].shape or not layer_transform.almost_equals(transform):
                raise LayerAlignmentError(
                    f"Layer {path} is not on the grid of {paths[0]}",
                    {"path": path, "shape": data.shape, "expected_shape": layers[0].shape},
                )
        else:
            transform, crs = layer_transform, layer_crs
        layers.append(data)

    stack = RasterStack(
        data=np.stack(layers),
        names=names,
        transform=transform,
        crs=crs,
        dates=dates,
        variable=variable,
    )
    logger.info(f"Loaded {variable or 'stack'}: {stack.shape[0]} layers of {stack.shape[1]} x {stack.shape[2]}")
    return stack


def load_variable(
    catalog: pd.DataFrame,
    variable: str,
    period: str,
    start,
    end,
    label_format: str = "%b %Y",
    bbox: Optional[tuple[float, float, float, float]] = None,
) -> RasterStack:
    """Select a variable's layers from the catalog and read them."""
    selection = select_layers(catalog, variable, period, start, end)
    return load_stack(selection, label_format=label_format, bbox=bbox, variable=variable)


def mask_stack(target: RasterStack, source: RasterStack) -> RasterStack:
    """
    Force no-data cells of one stack onto another.

    When both stacks have the same number of layers, masking is layer by
    layer; otherwise a cell missing in any source layer is masked in every
    target layer.

    Args:
        target: Stack to mask
        source: Stack whose no-data cells are copied

    Returns:
        New stack; ``target`` is left untouched
    """
    if not target.same_grid(source):
        raise LayerAlignmentError(
            f"Cannot mask {target.variable} with {source.variable}: grids differ",
            {"target_shape": target.shape, "source_shape": source.shape},
        )

    missing = np.isnan(source.data)
    if source.shape[0] != target.shape[0]:
        missing = missing.any(axis=0, keepdims=True)
    missing = np.broadcast_to(missing, target.shape)

    data = target.data.copy()
    newly_masked = int((missing & ~np.isnan(data)).sum())
    data[missing] = np.nan

    logger.info(f"Masked {newly_masked} {target.variable or 'target'} cells that are no-data in {source.variable or 'source'}")
    return replace(target, data=data)


def stack_covariates(
    stacks: dict[str, RasterStack],
    month: Optional[int] = None,
    layer_name: Optional[str] = None,
) -> RasterStack:
    """
    Build a covariate stack with one layer per variable.

    Args:
        stacks: Mapping of variable name to its stack
        month: Pick each variable's first layer dated in this month
        layer_name: Or pick each variable's layer with this name

    Returns:
        RasterStack whose layer names are the variable names
    """
    if (month is None) == (layer_name is None):
        raise ValueError("Give exactly one of month or layer_name")
    if not stacks:
        raise EmptySelectionError("No stacks to combine")

    layers, dates = [], []
    reference = None
    for variable, stack in stacks.items():
        if reference is None:
            reference = stack
        elif not reference.same_grid(stack):
            raise LayerAlignmentError(
                f"Covariate {variable} is not on the grid of {reference.variable}",
                {"variable": variable},
            )
        name = stack.layer_for_month(month) if month is not None else layer_name
        idx = stack.index(name)
        layers.append(stack.data[idx])
        if stack.dates:
            dates.append(stack.dates[idx])

    return RasterStack(
        data=np.stack(layers),
        names=list(stacks.keys()),
        transform=reference.transform,
        crs=reference.crs,
        dates=dates if len(dates) == len(layers) else [],
    )
