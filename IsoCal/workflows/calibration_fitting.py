"""
Calibration fitting workflows.

1. prepare_for_calibration: mark the rows a stage fits on (<stage>_in_calib)
2. fit_calibrations: fit every candidate spec (per group where declared)
3. filter_calibrations: drop degenerate fits from the candidate set
4. select_calibration: the caller's explicit model choice

Each workflow returns new objects and can be chained in pipelines.
"""

from typing import Dict, Iterable, Optional, Tuple

import pandas as pd

from IsoCal.core.config import IN_CALIB_SUFFIX, OUTLIER_COLUMN, STD_MATCH_COLUMN, FitConfig
from IsoCal.core.datatypes import CalibrationSet, FittedCalibration, GroupKey, PeakTable
from IsoCal.core.errors import DataError, SelectionError
from IsoCal.core.fitting import fit_model
from IsoCal.core.functional import map_keyed
from IsoCal.core.models import ModelSpec
from IsoCal.workflows.outliers import RowFilter, resolve_filter


def in_calib_column(stage: str) -> str:
    return f"{stage}{IN_CALIB_SUFFIX}"


def default_use(table: PeakTable) -> pd.Series:
    """Standards peaks that are not flagged as outliers (all non-outliers without standards)."""
    use = pd.Series(True, index=table.data.index)
    if STD_MATCH_COLUMN in table:
        use &= table[STD_MATCH_COLUMN].astype(bool)
    if OUTLIER_COLUMN in table:
        use &= ~table[OUTLIER_COLUMN].astype(bool)
    return use


def prepare_for_calibration(table: PeakTable, stage: str, use: RowFilter = None) -> PeakTable:
    """
    Append ``<stage>_in_calib``: the rows this stage fits on.

    Args:
        table: Peak table
        stage: Calibration stage name
        use: Row filter (pandas expression, callable, boolean Series); None
            uses standards peaks that are not outliers
    """
    mask = default_use(table) if use is None else resolve_filter(table, use, stage=stage)
    return table.with_columns({in_calib_column(stage): mask}, stage=stage)


def _fit_tasks(table: PeakTable, stage: str, specs: Iterable[ModelSpec]) -> Dict:
    subset = table.data[table[in_calib_column(stage)].astype(bool)]
    tasks = {}
    for spec in specs:
        if not spec.is_grouped:
            tasks[(spec.label, None)] = (spec, None, subset)
            continue
        for key, frame in subset.groupby(list(spec.group_by), sort=True):
            group = key if isinstance(key, tuple) else (key,)
            tasks[(spec.label, group)] = (spec, group, frame)
    return tasks


def fit_calibrations(table: PeakTable,
                     stage: str,
                     specs: Iterable[ModelSpec],
                     use: RowFilter = None,
                     config: FitConfig = FitConfig()) -> Tuple[PeakTable, Dict[Tuple[str, GroupKey], FittedCalibration]]:
    """
    Fit every candidate spec of a stage on its fitting subset.

    Each spec is fit independently, once per group when it declares
    ``group_by`` and once globally otherwise. Fits may run on a thread pool
    (``config.n_workers``); results are keyed by (label, group).

    Args:
        table: Peak table (the stage's input)
        stage: Calibration stage name
        specs: Candidate model specs; labels must be unique
        use: Fitting row filter (see prepare_for_calibration)
        config: Fit configuration

    Returns:
        (table with <stage>_in_calib appended, {(label, group): FittedCalibration})

    Raises:
        DataError: duplicate labels or a column a spec needs is missing
    """
    specs = list(specs)
    labels = [spec.label for spec in specs]
    duplicates = sorted({label for label in labels if labels.count(label) > 1})
    if duplicates:
        raise DataError(f"Duplicate model labels {duplicates}", stage=stage)
    for spec in specs:
        table.require(spec.columns, stage=stage)

    table = prepare_for_calibration(table, stage, use=use)
    tasks = _fit_tasks(table, stage, specs)

    def _fit(task):
        spec, group, frame = task
        return fit_model(spec, frame, stage=stage, group=group, config=config)

    fits = map_keyed(tasks, _fit, n_workers=config.n_workers)
    return table, fits


def filter_calibrations(stage: str,
                        fits: Dict[Tuple[str, GroupKey], FittedCalibration]) -> CalibrationSet:
    """
    Split fits into the valid candidate set and the rejected ones.

    Nothing is substituted and nothing is ranked: choosing among the valid
    candidates is the caller's decision.
    """
    valid = {key: fit for key, fit in fits.items() if fit.valid}
    rejected = {key: fit for key, fit in fits.items() if not fit.valid}
    return CalibrationSet(stage=stage, fits=valid, rejected=rejected)


def select_calibration(calibrations: CalibrationSet,
                       stage: str,
                       label: str,
                       group: Optional[GroupKey] = None) -> FittedCalibration:
    """Explicit selection of one fitted calibration by stage and label."""
    if stage != calibrations.stage:
        raise SelectionError(f"Calibration set belongs to stage '{calibrations.stage}', not '{stage}'")
    return calibrations.select(label, group=group)
