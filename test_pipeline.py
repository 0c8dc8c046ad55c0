"""
End-to-end test of the five-stage pipeline on the synthetic catalog.
"""

import argparse
from datetime import date

import numpy as np
import pandas as pd
import pytest

from conftest import LAKE
from sdm.cli import build_config, main
from sdm.config import LAND_CONTAMINATION, PipelineConfig
from sdm.exceptions import ConfigurationError, EmptySelectionError
from sdm.pipeline import load_environment, run_pipeline


def make_config(catalog_dir, tmp_path, **overrides):
    settings = dict(
        species_name="Calanus finmarchicus",
        catalog_root=catalog_dir,
        output_dir=tmp_path / "out",
        start_date="2019-01-01",
        end_date="2019-12-31",
        target_month=8,
        sample_size=200,
        mask_from=(("chlor_a", "sst"),),
    )
    settings.update(overrides)
    return PipelineConfig(**settings)


def test_run_pipeline_end_to_end(catalog_dir, tmp_path, occurrences):
    config = make_config(catalog_dir, tmp_path)

    result = run_pipeline(config, occurrences=occurrences)

    assert set(result.paths) == {"occurrences", "samples", "models", "projection", "map"}
    for path in result.paths.values():
        assert path.exists()

    scores = result.modeling.get_evaluations("ROC", "GAM")
    assert len(scores) == 3

    samples = pd.read_csv(result.paths["samples"])
    assert not ((samples["label"] == 1) & (samples["latitude"] > 45.5)).any()

    assert result.paths["projection"].name == "proj_current_Calanus.finmarchicus.tif"
    assert np.isnan(result.stacks["chlor_a"].layer("Aug 2019")[LAKE])
    assert result.occurrences is occurrences


def test_run_pipeline_without_matching_month(catalog_dir, tmp_path, occurrences):
    config = make_config(catalog_dir, tmp_path, target_month=2)

    with pytest.raises(EmptySelectionError) as excinfo:
        run_pipeline(config, occurrences=occurrences)

    assert excinfo.value.context["month"] == 2


def test_load_environment_applies_masks(catalog_dir):
    stacks = load_environment(
        catalog_dir, ("sst", "chlor_a"), "MO", "2019-08-01", "2019-09-30",
        mask_from=(("chlor_a", "sst"),),
    )

    assert stacks["chlor_a"].names == ["Aug 2019", "Sep 2019"]
    np.testing.assert_array_equal(np.isnan(stacks["chlor_a"].data), np.isnan(stacks["sst"].data))


@pytest.mark.parametrize("overrides, message", [
    ({"target_month": 13}, "target_month"),
    ({"data_split": 100}, "data_split"),
    ({"nb_run_eval": 0}, "nb_run_eval"),
    ({"algorithms": ("MAXENT",)}, "algorithms"),
    ({"start_date": "2020-01-01"}, "after end_date"),
    ({"mask_from": (("chlor_a", "par"),)}, "mask_from"),
])
def test_config_validation(catalog_dir, tmp_path, overrides, message):
    config = make_config(catalog_dir, tmp_path, **overrides)

    with pytest.raises(ConfigurationError, match=message):
        config.validate()


def test_config_normalizes_types(catalog_dir, tmp_path):
    config = make_config(catalog_dir, tmp_path)

    assert config.start_date == date(2019, 1, 1)
    assert config.sampling_variable == "sst"
    assert config.exclusion_rules == (LAND_CONTAMINATION,)


def test_cli_builds_config(tmp_path):
    args = argparse.Namespace(
        species="Calanus finmarchicus", catalog=str(tmp_path), output_dir=str(tmp_path / "out"),
        start="2019-01-01", end="2019-12-31", month=8, variables=["sst", "chlor_a"], period="MO",
        sample_size=500, algorithms=["GAM", "RF"], metrics=["ROC"], runs=3, split=70.0,
        source="obis", region="gulf_of_maine", bbox=None, mask=[("chlor_a", "sst")],
        land_latitude=45.0, no_land_filter=False, proj_name="current", basemap=None, seed=1,
    )

    config = build_config(args).validate()

    assert config.bbox == (-72.0, 39.0, -63.0, 46.0)
    assert config.exclusion_rules[0].greater_than == 45.0
    assert config.algorithms == ("GAM", "RF")


def test_cli_main_runs_pipeline(catalog_dir, tmp_path, occurrences, monkeypatch, capsys):
    monkeypatch.setattr("sdm.pipeline.fetch_occurrences", lambda *args, **kwargs: occurrences)

    result = main([
        "Calanus finmarchicus", "--catalog", str(catalog_dir),
        "--start", "2019-07-01", "--end", "2019-09-30", "--month", "8",
        "--output-dir", str(tmp_path / "cli"), "--sample-size", "200", "--runs", "2",
    ])

    assert len(result.modeling.get_evaluations("ROC", "GAM")) == 2
    assert "projection:" in capsys.readouterr().out
