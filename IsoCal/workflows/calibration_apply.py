"""
Applying a selected calibration and evaluating its range.

apply_calibration appends ``<target>_pred`` (and ``<target>_pred_se``) for every
row of the table, fitting subset or not. evaluate_calibration_range tags every
row ``<stage>_in_range`` against the predictor interval the fit was built on.
"""

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from IsoCal.core.config import IN_RANGE_SUFFIX, PRED_SUFFIX, SE_SUFFIX
from IsoCal.core.datatypes import CalibrationRange, FittedCalibration, PeakTable
from IsoCal.core.errors import DataError, SelectionError
from IsoCal.core.fitting import inverse_prediction_se, invert_fit, prediction_se

Selection = Union[FittedCalibration, Sequence[FittedCalibration]]


# ============================================================================
# HELPERS
# ============================================================================

def _as_fits(calibration: Selection) -> List[FittedCalibration]:
    fits = [calibration] if isinstance(calibration, FittedCalibration) else list(calibration)
    if not fits:
        raise SelectionError("No calibration selected")

    for fit in fits:
        if not isinstance(fit, FittedCalibration):
            raise SelectionError(f"Not a fitted calibration: {fit!r}")
    keys = {(fit.stage, fit.label) for fit in fits}
    if len(keys) > 1:
        raise SelectionError(f"A selection must come from one stage and label, got {sorted(keys)}")
    for fit in fits:
        if not fit.valid:
            raise SelectionError(f"Cannot apply invalid calibration {fit.stage}/{fit.label}: {fit.problem}")

    groups = [fit.group for fit in fits]
    if len(set(groups)) != len(groups):
        raise SelectionError(f"Duplicate groups in selection for {fits[0].stage}/{fits[0].label}")
    if None in groups and len(fits) > 1:
        raise SelectionError("A global calibration cannot be combined with group calibrations")
    return fits


def _group_rows(table: PeakTable, fit: FittedCalibration) -> pd.Series:
    """Rows a fit applies to: all rows for global fits, the fit's group otherwise."""
    if fit.group is None:
        return pd.Series(True, index=table.data.index)
    group_by = list(fit.spec.group_by)
    keys = pd.MultiIndex.from_frame(table.data[group_by])
    return pd.Series(keys.isin([fit.group]), index=table.data.index)


def _numeric(table: PeakTable, column: str, stage: str) -> np.ndarray:
    try:
        return table[column].astype(float).to_numpy()
    except (TypeError, ValueError) as e:
        raise DataError(f"Column '{column}' is not numeric: {e}", stage=stage, columns=[column]) from e


def pred_column(target: str) -> str:
    return f"{target}{PRED_SUFFIX}"


def se_column(target: str) -> str:
    return f"{target}{PRED_SUFFIX}{SE_SUFFIX}"


def in_range_column(stage: str) -> str:
    return f"{stage}{IN_RANGE_SUFFIX}"


# ============================================================================
# CALIBRATION APPLIER
# ============================================================================

def apply_calibration(table: PeakTable,
                      calibration: Selection,
                      calculate_error: bool = False,
                      invert: bool = False,
                      predict_column: Optional[str] = None,
                      error_column: Optional[str] = None) -> PeakTable:
    """
    Predict the calibration's target for every row.

    The forward target is the model response: ``response_pred = f(predictor)``.
    With ``invert=True`` the target is the predictor, solved from the response
    (a "measured ~ true" calibration applied to measured values).

    Args:
        table: Peak table, including rows that were not used for fitting
        calibration: The selected fit, or the group fits of one grouped spec
        calculate_error: Also append the propagated standard error
        invert: Predict the predictor from the response
        predict_column: Name of the prediction column (default ``<target>_pred``)
        error_column: Name of the error column (default ``<target>_pred_se``)

    Returns:
        PeakTable with the prediction (and error) columns appended. Rows with a
        missing input, or of a group without a fit, get NaN.

    Raises:
        SelectionError: empty, mixed, or invalid selection
        DataError: input column missing or calibration not invertible
    """
    fits = _as_fits(calibration)
    spec, stage = fits[0].spec, fits[0].stage

    if invert and spec.predictor is None:
        raise DataError(f"Intercept-only calibration '{spec.label}' cannot be inverted", stage=stage)
    source = spec.response if invert else spec.predictor
    target = spec.predictor if invert else spec.response
    table.require(([source] if source else []) + list(spec.group_by), stage=stage)

    n = len(table)
    x = _numeric(table, source, stage) if source else np.zeros(n)
    pred = np.full(n, np.nan)
    se = np.full(n, np.nan)

    for fit in fits:
        rows = _group_rows(table, fit).to_numpy()
        if not rows.any():
            continue
        if invert:
            pred[rows] = invert_fit(fit, x[rows])
            if calculate_error:
                se[rows] = inverse_prediction_se(fit, pred[rows])
        else:
            pred[rows] = fit.predict(x[rows])
            if calculate_error:
                se[rows] = prediction_se(fit, x[rows])

    columns = {predict_column or pred_column(target): pred}
    if calculate_error:
        columns[error_column or se_column(target)] = se
    return table.with_columns(columns, stage=stage)


# ============================================================================
# RANGE EVALUATOR
# ============================================================================

def compute_range(values: pd.Series, used: pd.Series) -> Tuple[float, float]:
    """Closed [min, max] of ``values`` over the rows flagged in ``used`` (NaN ignored)."""
    subset = values.astype(float)[used.astype(bool)].dropna()
    if subset.empty:
        return (np.nan, np.nan)
    return (float(subset.min()), float(subset.max()))


def calibration_ranges(table: PeakTable, calibration: Selection) -> List[CalibrationRange]:
    """Predictor interval of each fit, taken over the rows the fit actually used."""
    ranges = []
    for fit in _as_fits(calibration):
        predictor = fit.spec.predictor
        if predictor is None:
            lo, hi = -np.inf, np.inf
        else:
            table.require([predictor], stage=fit.stage)
            used = pd.Series(table.data.index.isin(fit.fit_index), index=table.data.index)
            lo, hi = compute_range(table[predictor], used)
        ranges.append(CalibrationRange(stage=fit.stage, label=fit.label, group=fit.group,
                                       predictor=predictor, min=lo, max=hi))
    return ranges


def evaluate_calibration_range(table: PeakTable,
                               calibration: Selection,
                               values: Optional[str] = None,
                               column: Optional[str] = None) -> Tuple[PeakTable, List[CalibrationRange]]:
    """
    Tag every row as inside or outside the calibration's predictor range.

    Args:
        table: Peak table
        calibration: The applied fit(s)
        values: Column compared to the interval (default: the predictor; pass
            the prediction column for inverted calibrations)
        column: Name of the flag column (default ``<stage>_in_range``)

    Returns:
        (PeakTable with the flag appended, list of CalibrationRange)
    """
    fits = _as_fits(calibration)
    stage = fits[0].stage
    ranges = calibration_ranges(table, fits)

    values = values or fits[0].spec.predictor
    n = len(table)
    if values is None:
        x = np.zeros(n)
    else:
        table.require([values], stage=stage)
        x = _numeric(table, values, stage)

    in_range = np.zeros(n, dtype=bool)
    for fit, rng in zip(fits, ranges):
        rows = _group_rows(table, fit).to_numpy()
        in_range[rows] = rng.contains(x[rows])

    table = table.with_columns({column or in_range_column(stage): in_range}, stage=stage)
    return table, ranges
