"""
Tests for the raster catalog, stack loading and cross-variable masking.
"""

import warnings

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

from conftest import HEIGHT, LAKE, WIDTH, obpg_name, sst_grid, write_raster
from sdm.exceptions import EmptySelectionError, LayerAlignmentError
from sdm.layers import (
    RasterStack,
    build_catalog,
    load_stack,
    load_variable,
    mask_stack,
    parse_filename,
    read_catalog,
    select_layers,
    stack_covariates,
    write_catalog,
)


def test_parse_current_obpg_name():
    entry = parse_filename("/data/AQUA_MODIS.20190801_20190831.L3m.MO.SST.sst.9km.nc")

    assert entry["variable"] == "sst"
    assert entry["period"] == "MO"
    assert entry["date"] == pd.Timestamp("2019-08-01")
    assert entry["end_date"] == pd.Timestamp("2019-08-31")
    assert entry["suite"] == "SST"
    assert entry["resolution"] == "9km"
    assert not entry["nrt"]


def test_parse_legacy_obpg_name():
    entry = parse_filename("A20192132019243.L3m_MO_CHL_chlor_a_9km.nc")

    assert entry["variable"] == "chlor_a"
    assert entry["period"] == "MO"
    assert entry["date"] == pd.Timestamp("2019-08-01")
    assert entry["end_date"] == pd.Timestamp("2019-08-31")


def test_parse_rejects_other_files():
    assert parse_filename("landmask.tif") is None
    assert parse_filename("AQUA_MODIS.20190801_20190831.L3m.MO.SST.sst.9km.png") is None


def test_build_catalog_indexes_only_obpg_files(catalog_dir):
    catalog = build_catalog(catalog_dir)

    assert len(catalog) == 24
    assert set(catalog["variable"]) == {"sst", "chlor_a"}
    assert list(catalog.columns[:4]) == ["variable", "period", "date", "path"]


def test_build_catalog_missing_root(tmp_path):
    with pytest.raises(FileNotFoundError):
        build_catalog(tmp_path / "missing")


def test_catalog_csv_keeps_dates(catalog_dir, tmp_path):
    catalog = build_catalog(catalog_dir)
    path = write_catalog(catalog, tmp_path / "catalog.csv")

    loaded = read_catalog(path)

    assert loaded["date"].dtype.kind == "M"
    assert list(loaded["path"]) == list(catalog["path"])


def test_select_layers_inclusive_range(catalog_dir):
    catalog = build_catalog(catalog_dir)

    selection = select_layers(catalog, "sst", "MO", "2019-06-01", "2019-09-01")

    assert list(selection["date"].dt.month) == [6, 7, 8, 9]
    assert (selection["variable"] == "sst").all()


def test_select_layers_empty_reports_filter(catalog_dir):
    catalog = build_catalog(catalog_dir)

    with pytest.raises(EmptySelectionError) as excinfo:
        select_layers(catalog, "sst", "8D", "2019-01-01", "2019-12-31")

    assert excinfo.value.context["period"] == "8D"
    assert excinfo.value.context["variable"] == "sst"


def test_load_variable_names_layers_and_masks_nodata(catalog_dir):
    catalog = build_catalog(catalog_dir)

    stack = load_variable(catalog, "sst", "MO", "2019-07-01", "2019-08-31")

    assert stack.names == ["Jul 2019", "Aug 2019"]
    assert stack.shape == (2, HEIGHT, WIDTH)
    assert stack.variable == "sst"
    assert np.isnan(stack.layer("Aug 2019")[LAKE])
    assert np.isnan(stack.data).sum() == 2 * 17
    np.testing.assert_allclose(stack.extent, (-72.0, -67.0, 40.0, 46.0))


def test_load_stack_bbox_crops_window(catalog_dir):
    catalog = build_catalog(catalog_dir)
    selection = select_layers(catalog, "sst", "MO", "2019-08-01", "2019-08-01")

    stack = load_stack(selection, bbox=(-71.0, 41.0, -69.0, 43.0))

    assert stack.shape == (1, 8, 8)
    np.testing.assert_allclose(stack.extent, (-71.0, -69.0, 41.0, 43.0))


def test_load_stack_bbox_outside_raster(catalog_dir):
    catalog = build_catalog(catalog_dir)
    selection = select_layers(catalog, "sst", "MO", "2019-08-01", "2019-08-01")

    with pytest.raises(EmptySelectionError) as excinfo:
        load_stack(selection, bbox=(10.0, 10.0, 12.0, 12.0))

    assert excinfo.value.context["bbox"] == [10.0, 10.0, 12.0, 12.0]
    assert excinfo.value.context["path"] == selection["path"].iloc[0]


def test_load_stack_rejects_misaligned_layers(catalog_dir, tmp_path):
    good = sorted((catalog_dir / "sst").glob("*.tif"))[0]
    shifted = write_raster(
        tmp_path / obpg_name("sst", "SST", 2020, 1),
        sst_grid(1),
        transform=from_origin(-71.0, 46.0, 0.25, 0.25),
    )

    with pytest.raises(LayerAlignmentError):
        load_stack([good, shifted])


def test_layer_for_month(sst_stack):
    assert sst_stack.layer_for_month(9) == "Sep 2019"
    with pytest.raises(EmptySelectionError):
        sst_stack.layer_for_month(1)


def test_values_at_outside_extent_is_nan(sst_stack):
    values = sst_stack.values_at([-70.0, -60.0], [42.0, 42.0], "Aug 2019")

    assert not np.isnan(values[0])
    assert np.isnan(values[1])


def test_rowcol_upper_edges_are_inside(sst_stack):
    rows, cols, inside = sst_stack.rowcol([-67.0, -72.0], [40.0, 46.0])

    assert inside.all()
    assert list(rows) == [HEIGHT - 1, 0]
    assert list(cols) == [WIDTH - 1, 0]


def test_rowcol_and_xy_round_trip_without_warnings(sst_stack):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        lon, lat = sst_stack.xy([0, 5, HEIGHT - 1], [0, 7, WIDTH - 1])
        rows, cols, inside = sst_stack.rowcol(lon, lat)

    np.testing.assert_allclose(lon, [-71.875, -70.125, -67.125])
    np.testing.assert_allclose(lat, [45.875, 44.625, 40.125])
    assert list(rows) == [0, 5, HEIGHT - 1]
    assert list(cols) == [0, 7, WIDTH - 1]
    assert inside.all()
    assert not [w for w in caught if w.filename.endswith("layers.py")]


def test_rowcol_of_no_points(sst_stack):
    rows, cols, inside = sst_stack.rowcol([], [])

    assert len(rows) == len(cols) == len(inside) == 0


def test_mask_stack_forces_source_nodata(catalog_dir):
    catalog = build_catalog(catalog_dir)
    sst = load_variable(catalog, "sst", "MO", "2019-08-01", "2019-08-31")
    chlor = load_variable(catalog, "chlor_a", "MO", "2019-08-01", "2019-08-31")
    assert not np.isnan(chlor.data[0][LAKE])

    masked = mask_stack(chlor, sst)

    assert np.isnan(masked.data[0][LAKE])
    assert not np.isnan(chlor.data[0][LAKE])
    np.testing.assert_array_equal(np.isnan(masked.data), np.isnan(sst.data))


def test_mask_stack_unions_when_layer_counts_differ(sst_stack):
    single = RasterStack(
        data=np.ones((1, HEIGHT, WIDTH), dtype=np.float32),
        names=["ones"],
        transform=sst_stack.transform,
    )

    masked = mask_stack(single, sst_stack)

    assert np.isnan(masked.data[0][LAKE])


def test_mask_stack_rejects_other_grid(sst_stack):
    other = RasterStack(
        data=np.ones((2, 5, 5), dtype=np.float32),
        names=["a", "b"],
        transform=sst_stack.transform,
    )

    with pytest.raises(LayerAlignmentError):
        mask_stack(other, sst_stack)


def test_stack_covariates_one_layer_per_variable(catalog_dir):
    catalog = build_catalog(catalog_dir)
    stacks = {
        "sst": load_variable(catalog, "sst", "MO", "2019-01-01", "2019-12-31"),
        "chlor_a": load_variable(catalog, "chlor_a", "MO", "2019-01-01", "2019-12-31"),
    }

    covariates = stack_covariates(stacks, month=8)

    assert covariates.names == ["sst", "chlor_a"]
    np.testing.assert_array_equal(covariates.layer("sst"), stacks["sst"].layer("Aug 2019"))


def test_stack_covariates_needs_one_selector(sst_stack):
    with pytest.raises(ValueError):
        stack_covariates({"sst": sst_stack})
