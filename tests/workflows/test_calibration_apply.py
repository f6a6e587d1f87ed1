"""
Tests for applying calibrations and evaluating calibration ranges.
"""

import numpy as np
import pandas as pd
import pytest

from IsoCal.core.datatypes import PeakTable
from IsoCal.core.errors import DataError, SchemaError, SelectionError
from IsoCal.core.fitting import fit_model
from IsoCal.core.models import parse_formula
from IsoCal.workflows.calibration_apply import (
    apply_calibration,
    calibration_ranges,
    compute_range,
    evaluate_calibration_range,
)
from IsoCal.workflows.calibration_fitting import filter_calibrations, fit_calibrations

SPECS = (
    parse_formula("linear", "true_d13C ~ d13C"),
    parse_formula("measured", "d13C ~ true_d13C"),
    parse_formula("const", "d13C_dev ~ 1"),
    parse_formula("per_std", "d13C_dev ~ 1", group_by=["compound"]),
    parse_formula("smooth", "d13C_dev ~ loess(timestamp)"),
)


@pytest.fixture
def scale_fits(matched_table):
    table, fits = fit_calibrations(matched_table, "scale", SPECS)
    return table, filter_calibrations("scale", fits)


class TestApplyCalibration:

    def test_every_row_gets_a_prediction(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("linear"))

        pred = applied["true_d13C_pred"]
        assert applied.provenance["true_d13C_pred"] == "scale"
        assert pred.notna().sum() == len(applied) - 1
        # Missing predictor -> missing prediction
        assert np.isnan(pred.iloc[1])

        samples = applied.data[(applied["compound"] == "S2")]
        assert samples["true_d13C_pred"].mean() == pytest.approx(-25.0, abs=0.5)

    def test_error_column(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("linear"), calculate_error=True)

        se = applied["true_d13C_pred_se"]
        assert (se.dropna() > 0).all()
        assert np.isnan(se.iloc[1])

    def test_custom_column_names(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("linear"), calculate_error=True,
                                    predict_column="d13C_vpdb", error_column="d13C_vpdb_se")
        assert "d13C_vpdb" in applied and "d13C_vpdb_se" in applied

    def test_intercept_only(self, scale_fits):
        table, calset = scale_fits
        fit = calset.select("const")
        applied = apply_calibration(table, fit)
        np.testing.assert_allclose(applied["d13C_dev_pred"], fit.params["c"])

    def test_grouped_selection(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select_groups("per_std"), calculate_error=True)

        pred = applied["d13C_dev_pred"]
        is_std = applied["is_std_peak"]
        assert pred[is_std].notna().all()
        # Groups without a fit
        assert pred[~is_std].isna().all()
        assert pred[applied["compound"] == "STD_A"].nunique() == 1

    def test_smoothed(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("smooth"), calculate_error=True)
        fit = calset.select("smooth")

        # The fit saw timestamps 0..18 (standards); the last sample peak is at 19
        assert np.isnan(applied["d13C_dev_pred"].iloc[-1])
        assert applied["d13C_dev_pred_se"].dropna().eq(fit.residual_sd).all()

    def test_inverse_prediction(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("measured"), invert=True,
                                    calculate_error=True)

        std = applied.data[applied["is_std_peak"]]
        np.testing.assert_allclose(std["true_d13C_pred"], std["true_d13C"], atol=0.5)
        assert (applied["true_d13C_pred_se"].dropna() > 0).all()

    def test_cannot_invert_intercept_only(self, scale_fits):
        table, calset = scale_fits
        with pytest.raises(DataError):
            apply_calibration(table, calset.select("const"), invert=True)

    def test_applying_twice_violates_schema(self, scale_fits):
        table, calset = scale_fits
        applied = apply_calibration(table, calset.select("linear"))
        with pytest.raises(SchemaError):
            apply_calibration(applied, calset.select("linear"))

    def test_missing_predictor_column(self, scale_fits):
        table, calset = scale_fits
        fit = calset.select("linear")
        stripped = PeakTable.from_frame(table.data.drop(columns=["d13C"]))
        with pytest.raises(DataError):
            apply_calibration(stripped, fit)


class TestSelectionErrors:

    def test_invalid_fit(self, matched_table):
        spec = parse_formula("linear", "true_d13C ~ d13C")
        invalid = fit_model(spec, matched_table.data.iloc[:2], stage="scale")
        assert not invalid.valid
        with pytest.raises(SelectionError, match="invalid"):
            apply_calibration(matched_table, invalid)

    def test_empty_selection(self, matched_table):
        with pytest.raises(SelectionError):
            apply_calibration(matched_table, [])

    def test_mixed_selection(self, scale_fits):
        table, calset = scale_fits
        with pytest.raises(SelectionError):
            apply_calibration(table, [calset.select("linear"), calset.select("const")])

    def test_not_a_fit(self, matched_table):
        with pytest.raises(SelectionError):
            apply_calibration(matched_table, ["linear"])


class TestCalibrationRange:

    def test_range_over_fitting_rows(self, scale_fits):
        table, calset = scale_fits
        fit = calset.select("linear")
        ranged, ranges = evaluate_calibration_range(table, fit)

        (rng,) = ranges
        std = table.data[table["is_std_peak"]]
        assert rng.min == pytest.approx(std["d13C"].min())
        assert rng.max == pytest.approx(std["d13C"].max())

        flags = ranged["scale_in_range"]
        assert flags[table["is_std_peak"]].all()
        # Missing predictor is never in range
        assert not flags.iloc[1]
        # S1 / S2 lie between the standards
        assert flags[table["compound"] == "S2"].all()

    def test_intercept_only_is_unbounded(self, scale_fits):
        table, calset = scale_fits
        ranged, (rng,) = evaluate_calibration_range(table, calset.select("const"))
        assert rng.min == -np.inf and rng.max == np.inf
        assert ranged["scale_in_range"].all()

    def test_grouped_ranges(self, scale_fits):
        table, calset = scale_fits
        ranged, ranges = evaluate_calibration_range(table, calset.select_groups("per_std"))
        assert len(ranges) == 3
        assert ranged["scale_in_range"].sum() == 12

    def test_monotone_in_the_subset(self):
        values = pd.Series([1.0, 4.0, 2.0, 8.0, np.nan, -3.0])
        narrow = pd.Series([False, True, True, False, True, False])
        wide = narrow | pd.Series([True, False, False, True, False, False])

        lo_n, hi_n = compute_range(values, narrow)
        lo_w, hi_w = compute_range(values, wide)
        assert (lo_n, hi_n) == (2.0, 4.0)
        assert lo_w <= lo_n and hi_w >= hi_n
        assert compute_range(values, pd.Series(False, index=values.index)) == \
            pytest.approx((np.nan, np.nan), nan_ok=True)

    def test_ranges_follow_the_fitting_rows(self, scale_fits):
        table, calset = scale_fits
        (rng,) = calibration_ranges(table, calset.select("linear"))
        assert rng.predictor == "d13C"
        assert rng.stage == "scale"
