"""
Tests for rule-derived and explicit outlier marking.
"""

import numpy as np
import pandas as pd
import pytest

from IsoCal.core.config import OutlierConfig
from IsoCal.core.datatypes import PeakTable
from IsoCal.core.errors import DataError
from IsoCal.workflows.outliers import mark_explicit_outliers, mark_outliers, outlier_mask


@pytest.fixture
def drift_table():
    """Three drift peaks; the third one sits off the group."""
    frame = pd.DataFrame({
        "analysis": [1, 2, 3],
        "seq": [1, 1, 1],
        "type": ["drift"] * 3,
        "d13C_dev": [0.05, -0.05, 0.30],
    })
    return PeakTable.from_frame(frame)


@pytest.fixture
def integer_table():
    frame = pd.DataFrame({
        "analysis": [1, 2, 3, 4, 5, 6],
        "seq": [1] * 6,
        "type": ["a", "a", "a", "b", "b", "b"],
        "value": [1.0, 3.0, 5.0, 10.0, 10.0, np.nan],
    })
    return PeakTable.from_frame(frame)


class TestRuleOutliers:

    def test_three_sigma_marks_nothing(self, drift_table):
        table = mark_outliers(drift_table, "d13C_dev", n_sd=3)
        assert not table["outlier"].any()

    def test_one_sigma_marks_the_third_row(self, drift_table):
        table = mark_outliers(drift_table, "d13C_dev", n_sd=1)
        assert table["outlier"].tolist() == [False, False, True]
        assert table["outlier_rule"].tolist() == [False, False, True]

    def test_idempotent(self, drift_table):
        once = mark_outliers(drift_table, "d13C_dev", n_sd=1)
        twice = mark_outliers(once, "d13C_dev", n_sd=1)
        pd.testing.assert_frame_equal(once.data, twice.data)

    def test_cumulative(self, drift_table):
        strict = mark_outliers(drift_table, "d13C_dev", n_sd=1)
        # A looser rule afterwards never clears an earlier flag
        loose = mark_outliers(strict, "d13C_dev", n_sd=3)
        assert loose["outlier"].tolist() == [False, False, True]

    def test_exactly_at_threshold_is_kept(self, integer_table):
        mask = outlier_mask(integer_table, "value", plus_minus_value=2.0)
        assert not mask.any()

        mask = outlier_mask(integer_table, "value", plus_minus_value=1.5)
        assert mask.tolist() == [True, False, True, False, False, False]

    def test_groups_use_their_own_statistics(self, integer_table):
        # Group b has zero spread: nothing can exceed 0 * sd strictly
        mask = outlier_mask(integer_table, "value", n_sd=0.5)
        assert mask.tolist() == [True, False, True, False, False, False]

    def test_missing_values_are_never_marked(self, integer_table):
        mask = outlier_mask(integer_table, "value", plus_minus_value=0.0)
        assert not mask.iloc[5]

    def test_row_filter_restricts_statistics(self, integer_table):
        mask = outlier_mask(integer_table, "value", plus_minus_value=1.5,
                            row_filter="analysis != 1")
        # Group a stats over rows 2, 3 only: mean 4, both 1 off
        assert not mask.any()

    def test_config(self, drift_table):
        table = mark_outliers(drift_table, config=OutlierConfig(column="d13C_dev", n_sd=1))
        assert table["outlier"].sum() == 1

    def test_threshold_required(self, drift_table):
        with pytest.raises(ValueError):
            mark_outliers(drift_table, "d13C_dev")
        with pytest.raises(ValueError):
            mark_outliers(drift_table, "d13C_dev", n_sd=1, plus_minus_value=0.1)

    def test_missing_column(self, drift_table):
        with pytest.raises(DataError):
            mark_outliers(drift_table, "d15N_dev", n_sd=3)


class TestExplicitOutliers:

    def test_by_first_identity_column(self, drift_table):
        table = mark_explicit_outliers(drift_table, [2])
        assert table["outlier_explicit"].tolist() == [False, True, False]
        assert table["outlier"].tolist() == [False, True, False]

    def test_by_identity_tuples(self, drift_table):
        table = mark_explicit_outliers(drift_table, [(1, 1), (3, 2)], on=["analysis", "seq"])
        assert table["outlier"].tolist() == [True, False, False]

    def test_wrong_tuple_length(self, drift_table):
        with pytest.raises(DataError):
            mark_explicit_outliers(drift_table, [(1, 1, 1)], on=["analysis", "seq"])

    def test_combined_with_rule(self, drift_table):
        table = mark_outliers(drift_table, "d13C_dev", n_sd=1)
        table = mark_explicit_outliers(table, [1])

        assert table["outlier"].tolist() == [True, False, True]
        assert table["outlier_rule"].tolist() == [False, False, True]
        assert table["outlier_explicit"].tolist() == [True, False, False]
