"""
Shared fixtures: a small synthetic OBPG catalog and matching occurrences.

Grid: 24 rows x 20 cols of 0.25 degree cells covering lon -72..-67,
lat 40..46. The top-right corner is land (no data in every layer) and one
interior cell is a lake that only the chlorophyll product reports.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from sdm.layers import RasterStack

NODATA = -999.0
TRANSFORM = from_origin(-72.0, 46.0, 0.25, 0.25)
HEIGHT, WIDTH = 24, 20
LAKE = (10, 5)


def _cell_centres():
    rows, cols = np.mgrid[0:HEIGHT, 0:WIDTH]
    lon = -72.0 + (cols + 0.5) * 0.25
    lat = 46.0 - (rows + 0.5) * 0.25
    return lon, lat


def _land_mask():
    mask = np.zeros((HEIGHT, WIDTH), dtype=bool)
    mask[0:4, 16:20] = True
    return mask


def sst_grid(month: int) -> np.ndarray:
    lon, lat = _cell_centres()
    sst = 4.0 + (46.0 - lat) * 2.0 + month * 0.2
    sst[_land_mask()] = np.nan
    sst[LAKE] = np.nan
    return sst.astype(np.float32)


def chlor_grid(month: int) -> np.ndarray:
    lon, lat = _cell_centres()
    chl = 0.3 + (lon + 72.0) * 0.4 + month * 0.01
    chl[_land_mask()] = np.nan
    return chl.astype(np.float32)


def write_raster(path, data, transform=TRANSFORM):
    data = np.where(np.isnan(data), NODATA, data).astype(np.float32)
    with rasterio.open(
        path, "w",
        driver="GTiff",
        height=data.shape[0],
        width=data.shape[1],
        count=1,
        dtype="float32",
        crs="EPSG:4326",
        transform=transform,
        nodata=NODATA,
    ) as dst:
        dst.write(data, 1)
    return path


def obpg_name(variable: str, suite: str, year: int, month: int) -> str:
    start = pd.Timestamp(year=year, month=month, day=1)
    end = start + pd.offsets.MonthEnd(0)
    return f"AQUA_MODIS.{start:%Y%m%d}_{end:%Y%m%d}.L3m.MO.{suite}.{variable}.9km.tif"


@pytest.fixture
def catalog_dir(tmp_path):
    """Monthly sst and chlor_a layers for 2019, plus files the catalog must ignore."""
    root = tmp_path / "obpg"
    (root / "sst").mkdir(parents=True)
    (root / "chlor_a").mkdir(parents=True)

    for month in range(1, 13):
        write_raster(root / "sst" / obpg_name("sst", "SST", 2019, month), sst_grid(month))
        write_raster(root / "chlor_a" / obpg_name("chlor_a", "CHL", 2019, month), chlor_grid(month))

    (root / "README.txt").write_text("not a raster")
    write_raster(root / "landmask.tif", sst_grid(1))
    return root


@pytest.fixture
def sst_stack():
    """In-memory sst stack for August and September 2019."""
    return RasterStack(
        data=np.stack([sst_grid(8), sst_grid(9)]),
        names=["Aug 2019", "Sep 2019"],
        transform=TRANSFORM,
        dates=[pd.Timestamp("2019-08-01"), pd.Timestamp("2019-09-01")],
        variable="sst",
    )


@pytest.fixture
def covariate_stack():
    """August covariates, one layer per variable."""
    return RasterStack(
        data=np.stack([sst_grid(8), chlor_grid(8)]),
        names=["sst", "chlor_a"],
        transform=TRANSFORM,
        dates=[pd.Timestamp("2019-08-01")] * 2,
    )


@pytest.fixture
def occurrences():
    """Sightings clustered in the warm south in August, plus noise rows."""
    rng = np.random.default_rng(0)
    n = 60
    august = pd.DataFrame({
        "id": [f"occ-{i}" for i in range(n)],
        "taxon": "Calanus finmarchicus",
        "longitude": rng.uniform(-71.9, -68.1, n),
        "latitude": rng.uniform(40.1, 42.4, n),
        "date": pd.Timestamp("2019-08-15"),
        "year": 2019,
        "month": 8,
        "dataset": "survey",
    })
    extra = pd.DataFrame({
        "id": ["june-1", "outside-1", "outside-2", "land-1"],
        "taxon": "Calanus finmarchicus",
        "longitude": [-70.0, -60.0, -70.0, -70.0],
        "latitude": [41.0, 41.0, 30.0, 46.0],
        "date": pd.to_datetime(["2019-06-10", "2019-08-10", "2019-08-11", "2019-08-12"]),
        "year": 2019,
        "month": [6, 8, 8, 8],
        "dataset": "survey",
    })
    frame = pd.concat([august, extra], ignore_index=True)
    frame["year"] = frame["year"].astype("Int64")
    frame["month"] = frame["month"].astype("Int64")
    return frame
