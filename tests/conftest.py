"""
Shared pytest fixtures for all test modules.

The synthetic run interleaves three reference materials with two samples.
Measured values carry a scale error, an offset and a linear drift in time:

    d13C = 0.98 * true + 0.5 + 0.02 * timestamp + noise
"""

import numpy as np
import pandas as pd
import pytest

from IsoCal.core.datatypes import PeakTable
from IsoCal.workflows.standards import add_deviation, match_standards

TRUE_VALUES = {"STD_A": -30.0, "STD_B": -10.0, "STD_C": 5.0}
SAMPLE_VALUES = {"S1": -20.0, "S2": -25.0}
SEQUENCE = ["STD_A", "S1", "STD_B", "STD_C", "S2"] * 4


def _make_peaks(seed: int = 7) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    rows = []
    for i, compound in enumerate(SEQUENCE):
        is_std = compound in TRUE_VALUES
        true = TRUE_VALUES[compound] if is_std else SAMPLE_VALUES[compound]
        timestamp = float(i)
        rows.append({
            "analysis": 100 + i,
            "seq": 1,
            "type": "standard" if is_std else "sample",
            "compound": compound,
            "timestamp": timestamp,
            "area": 20.0 + rng.normal(0, 1.0),
            "d13C": 0.98 * true + 0.5 + 0.02 * timestamp + rng.normal(0, 0.03),
        })
    frame = pd.DataFrame(rows)
    # One sample peak without a measured value
    frame.loc[1, "d13C"] = np.nan
    return frame


@pytest.fixture
def raw_peaks():
    """Parsed peak frame (20 peaks: 12 standards, 8 samples)."""
    return _make_peaks()


@pytest.fixture
def standards():
    """Standards table: join key + true value."""
    return pd.DataFrame({
        "compound": list(TRUE_VALUES),
        "true_d13C": list(TRUE_VALUES.values()),
    })


@pytest.fixture
def peak_table(raw_peaks):
    return PeakTable.from_frame(raw_peaks)


@pytest.fixture
def matched_table(peak_table, standards):
    """Peak table with true values and d13C deviations appended."""
    table = match_standards(peak_table, standards, by="compound")
    return add_deviation(table, observed="d13C", reference="true_d13C")


@pytest.fixture
def line_data():
    """Noisy straight line y = 2 + 0.5 x."""
    rng = np.random.default_rng(3)
    x = np.arange(12, dtype=float)
    y = 2.0 + 0.5 * x + rng.normal(0, 0.1, size=x.size)
    return pd.DataFrame({"x": x, "y": y})
