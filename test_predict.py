"""
Tests for projection, the x1000 storage convention and maps.
"""

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pytest
from shapely.geometry import box

from conftest import LAKE
from sdm.config import PROBABILITY_SCALE
from sdm.model import fit_models, format_data
from sdm.plotting import plot_projection, plot_stack
from sdm.predict import (
    RAW_NODATA,
    load_projection,
    project,
    projection_path,
    to_probability,
    to_raw,
)
from sdm.sampling import build_sample_table


@pytest.fixture
def modeling(occurrences, sst_stack, covariate_stack):
    samples = build_sample_table(occurrences, sst_stack, month=8, sample_size=200, seed=1)
    data = format_data(
        samples["label"], samples[["longitude", "latitude"]], covariate_stack, "Calanus finmarchicus"
    )
    return fit_models(data, nb_run_eval=2)


def test_raw_scale_round_trip():
    probability = np.array([0.0, 0.1234, 0.5, 1.0, np.nan])

    raw = to_raw(probability)

    assert raw.dtype == np.int16
    assert list(raw) == [0, 123, 500, 1000, RAW_NODATA]
    back = to_probability(raw)
    assert np.isnan(back[-1])
    np.testing.assert_allclose(back[:-1], [0.0, 0.123, 0.5, 1.0], atol=1e-6)
    assert PROBABILITY_SCALE == 1000


def test_project_writes_deterministic_path(modeling, covariate_stack, tmp_path):
    projection = project(modeling, covariate_stack, proj_name="current", output_dir=tmp_path)

    expected = tmp_path / "Calanus.finmarchicus" / "proj_current" / "proj_current_Calanus.finmarchicus.tif"
    assert projection.path == expected
    assert expected == projection_path(tmp_path, "Calanus.finmarchicus", "current")
    assert expected.exists()
    assert projection.names == [
        "Calanus.finmarchicus_AllData_RUN1_GAM",
        "Calanus.finmarchicus_AllData_RUN2_GAM",
    ]


def test_projection_values_are_probabilities(modeling, covariate_stack):
    projection = project(modeling, covariate_stack)

    valid = projection.raw != RAW_NODATA
    probs = to_probability(projection.raw)[valid]
    assert ((probs >= 0) & (probs <= 1)).all()
    assert projection.path is None

    band = projection.probability(projection.names[0])
    assert np.isnan(band[LAKE])
    assert np.isnan(band[0, 19])
    assert not np.isnan(band[20, 5])


def test_mean_probability_matches_bands(modeling, covariate_stack):
    projection = project(modeling, covariate_stack)

    mean = projection.probability()
    bands = [projection.probability(name) for name in projection.names]
    np.testing.assert_allclose(mean, np.mean(bands, axis=0), atol=1e-6)


def test_unknown_band_raises_key_error(modeling, covariate_stack):
    projection = project(modeling, covariate_stack)

    with pytest.raises(KeyError, match="RUN1_GAM"):
        projection.probability("Calanus.finmarchicus_AllData_RUN9_GAM")


def test_project_to_other_covariates(modeling, covariate_stack):
    later = covariate_stack.subset(["chlor_a", "sst"])
    later.data = later.data + np.array([0.0, 1.0], dtype=np.float32)[:, None, None]

    projection = project(modeling, later, proj_name="warmer")

    assert projection.proj_name == "warmer"
    assert projection.raw.shape == (2,) + covariate_stack.shape[1:]


def test_project_requires_training_variables(modeling, covariate_stack):
    only_sst = covariate_stack.subset(["sst"])

    with pytest.raises(ValueError, match="chlor_a"):
        project(modeling, only_sst)


def test_load_projection_round_trip(modeling, covariate_stack, tmp_path):
    projection = project(modeling, covariate_stack, output_dir=tmp_path)

    loaded = load_projection(projection.path)

    assert loaded.names == projection.names
    assert loaded.species_name == "Calanus finmarchicus"
    np.testing.assert_array_equal(loaded.raw, projection.raw)
    np.testing.assert_allclose(loaded.extent, covariate_stack.extent)


def test_to_geojson_threshold(modeling, covariate_stack):
    projection = project(modeling, covariate_stack)

    geojson = projection.to_geojson(threshold=0.5)

    probs = [f["properties"]["probability"] for f in geojson["features"]]
    assert all(p >= 0.5 for p in probs)
    assert probs == sorted(probs)
    assert geojson["metadata"]["n_candidates"] == len(probs)


def test_plot_projection_saves_png(modeling, covariate_stack, occurrences, tmp_path):
    projection = project(modeling, covariate_stack)
    land = gpd.GeoDataFrame(geometry=[box(-68.0, 45.0, -66.0, 47.0)], crs="EPSG:4326")
    out_path = tmp_path / "map.png"

    fig = plot_projection(
        projection.probability(), projection.extent,
        occurrences=occurrences, basemap=land, title="August", out_path=out_path,
    )

    assert out_path.exists()
    assert fig.axes[0].get_title() == "August"


def test_plot_stack_hides_spare_axes(sst_stack):
    fig = plot_stack(sst_stack, ncols=3)

    visible = [ax for ax in fig.axes if ax.get_visible() and ax.get_title()]
    assert [ax.get_title() for ax in visible] == sst_stack.names
    plt.close(fig)
