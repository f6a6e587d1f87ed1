"""
Tests for candidate fitting, filtering and explicit selection.
"""

import numpy as np
import pytest

from IsoCal.core.config import FitConfig
from IsoCal.core.datatypes import CalibrationSet, FittedCalibration
from IsoCal.core.errors import DataError, SelectionError
from IsoCal.core.models import parse_formula
from IsoCal.workflows.calibration_fitting import (
    filter_calibrations,
    fit_calibrations,
    prepare_for_calibration,
    select_calibration,
)
from IsoCal.workflows.outliers import mark_explicit_outliers

SPECS = (
    parse_formula("const", "d13C_dev ~ 1"),
    parse_formula("linear", "d13C_dev ~ timestamp"),
    parse_formula("per_std", "d13C_dev ~ 1", group_by=["compound"]),
    parse_formula("quintic", "d13C_dev ~ poly(timestamp, 5)", group_by=["compound"]),
)


@pytest.fixture
def candidates(matched_table):
    table, fits = fit_calibrations(matched_table, "drift", SPECS)
    return table, fits, filter_calibrations("drift", fits)


class TestPrepare:

    def test_default_subset_is_standards(self, matched_table):
        table = prepare_for_calibration(matched_table, "drift")
        assert table["drift_in_calib"].tolist() == table["is_std_peak"].tolist()
        assert table.provenance["drift_in_calib"] == "drift"

    def test_default_subset_excludes_outliers(self, matched_table):
        flagged = mark_explicit_outliers(matched_table, [100])
        table = prepare_for_calibration(flagged, "drift")
        assert table["drift_in_calib"].sum() == 11
        assert not table["drift_in_calib"].iloc[0]

    def test_expression_filter(self, matched_table):
        table = prepare_for_calibration(matched_table, "drift",
                                        use="is_std_peak & (timestamp < 10)")
        assert table["drift_in_calib"].sum() == 6


class TestFitCalibrations:

    def test_keys_and_groups(self, candidates):
        table, fits, _ = candidates

        assert ("const", None) in fits
        assert ("linear", None) in fits
        groups = sorted(g for (label, g) in fits if label == "per_std")
        assert groups == [("STD_A",), ("STD_B",), ("STD_C",)]
        # Samples are outside the fitting subset: no group fit for them
        assert ("per_std", ("S1",)) not in fits

    def test_raw_candidates_until_filtered(self, candidates):
        _, fits, calset = candidates
        assert isinstance(fits, dict)
        assert all(isinstance(fit, FittedCalibration) for fit in fits.values())
        assert isinstance(calset, CalibrationSet)
        assert len(calset) + len(calset.rejected) == len(fits)

    def test_fit_uses_only_the_subset(self, candidates):
        _, fits, _ = candidates
        assert fits[("linear", None)].n_obs == 12
        assert fits[("per_std", ("STD_A",))].n_obs == 4

    def test_under_determined_fits_are_invalid(self, candidates):
        _, fits, calset = candidates
        quintic = fits[("quintic", ("STD_A",))]
        assert not quintic.valid
        assert "insufficient" in quintic.problem
        assert "quintic" not in calset.labels
        assert set(calset.rejected) == {k for k in fits if k[0] == "quintic"}

    def test_duplicate_labels(self, matched_table):
        specs = (parse_formula("a", "d13C_dev ~ 1"), parse_formula("a", "d13C_dev ~ timestamp"))
        with pytest.raises(DataError, match="Duplicate"):
            fit_calibrations(matched_table, "drift", specs)

    def test_missing_column(self, matched_table):
        with pytest.raises(DataError) as exc:
            fit_calibrations(matched_table, "drift", [parse_formula("a", "d15N_dev ~ 1")])
        assert exc.value.stage == "drift"

    def test_parallel_equals_serial(self, matched_table):
        _, serial = fit_calibrations(matched_table, "drift", SPECS)
        _, parallel = fit_calibrations(matched_table, "drift", SPECS, config=FitConfig(n_workers=4))

        assert set(serial) == set(parallel)
        for key, fit in serial.items():
            assert fit.valid == parallel[key].valid
            for name, value in fit.params.items():
                assert parallel[key].params[name] == pytest.approx(value, rel=1e-12)


class TestCalibrationSet:

    def test_select_global(self, candidates):
        _, _, calset = candidates
        fit = calset.select("linear")
        assert fit.label == "linear"
        assert fit.group is None

    def test_select_group(self, candidates):
        table, _, calset = candidates
        fit = calset.select("per_std", group="STD_B")
        assert fit.group == ("STD_B",)
        group_mean = table["d13C_dev"][table["compound"] == "STD_B"].mean()
        assert fit.params["c"] == pytest.approx(group_mean, rel=1e-6)

    def test_grouped_spec_needs_a_group(self, candidates):
        _, _, calset = candidates
        with pytest.raises(SelectionError, match="select_groups"):
            calset.select("per_std")
        assert len(calset.select_groups("per_std")) == 3

    def test_unknown_label(self, candidates):
        _, _, calset = candidates
        with pytest.raises(SelectionError, match="No calibration"):
            calset.select("cubic")

    def test_rejected_label(self, candidates):
        _, _, calset = candidates
        with pytest.raises(SelectionError, match="rejected"):
            calset.select("quintic", group="STD_A")
        with pytest.raises(SelectionError, match="rejected"):
            calset.select_groups("quintic")

    def test_select_calibration_checks_stage(self, candidates):
        _, _, calset = candidates
        assert select_calibration(calset, "drift", "const").label == "const"
        with pytest.raises(SelectionError):
            select_calibration(calset, "scale", "const")

    def test_summary(self, candidates):
        _, _, calset = candidates
        summary = calset.summary()
        print("\n" + summary.to_string(index=False))

        assert len(summary) == len(calset) == 5
        assert summary["valid"].all()
        const = summary[summary["label"] == "const"].iloc[0]
        assert const["r_squared"] == 0.0
        assert const["n_params"] == 1

        full = calset.summary(include_rejected=True)
        assert len(full) == 8
        assert (~full["valid"]).sum() == 3

    def test_coefficients(self, candidates):
        _, _, calset = candidates
        coefs = calset.coefficients()
        linear = coefs[coefs["label"] == "linear"]
        assert linear["term"].tolist() == ["intercept", "slope"]
        assert np.isfinite(linear["std_error"]).all()
        assert (linear["x_center"] == 0.0).all() and (linear["x_scale"] == 1.0).all()
        assert len(coefs[coefs["label"] == "per_std"]) == 3
