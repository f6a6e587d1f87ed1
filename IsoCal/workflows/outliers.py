"""
Outlier marking.

Two kinds of flags, both cumulative (logical OR, never overwritten):
- rule-derived: |x - group_mean(x)| > n_sd * group_sd(x)  or  > plus_minus_value
- explicit: a caller-supplied list of peak identities

The combined ``outlier`` column is what calibration fitting excludes.
"""

from typing import Any, Callable, Iterable, Optional, Union

import numpy as np
import pandas as pd

from IsoCal.core.config import (
    OUTLIER_COLUMN,
    OUTLIER_EXPLICIT_COLUMN,
    OUTLIER_RULE_COLUMN,
    OutlierConfig,
)
from IsoCal.core.datatypes import PeakTable
from IsoCal.core.errors import DataError

RowFilter = Union[None, str, Callable[[pd.DataFrame], pd.Series], pd.Series]


def resolve_filter(table: PeakTable, row_filter: RowFilter, stage: Optional[str] = None) -> pd.Series:
    """Turn a row filter (None, expression, callable or mask) into a boolean Series."""
    if row_filter is None:
        return pd.Series(True, index=table.data.index)
    if isinstance(row_filter, str):
        mask = table.evaluate(row_filter, stage=stage)
    elif callable(row_filter):
        mask = row_filter(table.data)
    else:
        mask = row_filter
    mask = pd.Series(mask, index=table.data.index) if not isinstance(mask, pd.Series) else mask
    return mask.reindex(table.data.index).fillna(False).astype(bool)


def outlier_mask(table: PeakTable,
                 column: str,
                 n_sd: Optional[float] = None,
                 plus_minus_value: Optional[float] = None,
                 group_by: Optional[str] = None,
                 row_filter: RowFilter = None,
                 stage: str = "outliers") -> pd.Series:
    """
    Rows whose value deviates from its group mean by more than the threshold.

    Group statistics (mean, sample sd) come from the rows selected by
    ``row_filter`` within each group; previously flagged outliers are not
    excluded, so the rule is idempotent. Exactly at the threshold is not an
    outlier. Rows with a missing value are never marked.
    """
    if (n_sd is None) == (plus_minus_value is None):
        raise ValueError("Specify exactly one of n_sd or plus_minus_value")
    group_by = group_by or table.group_column
    table.require([column, group_by], stage=stage)

    selected = resolve_filter(table, row_filter, stage=stage)
    values = table[column].astype(float)
    groups = table[group_by]

    in_stats = values.where(selected)
    mean = in_stats.groupby(groups, dropna=False).transform("mean")
    if n_sd is not None:
        sd = in_stats.groupby(groups, dropna=False).transform("std")
        threshold = n_sd * sd
    else:
        threshold = pd.Series(float(plus_minus_value), index=values.index)

    with np.errstate(invalid="ignore"):
        mask = (values - mean).abs() > threshold
    return (mask & selected).fillna(False).astype(bool)


def mark_outliers(table: PeakTable,
                  column: Optional[str] = None,
                  n_sd: Optional[float] = None,
                  plus_minus_value: Optional[float] = None,
                  group_by: Optional[str] = None,
                  row_filter: RowFilter = None,
                  config: Optional[OutlierConfig] = None,
                  stage: str = "outliers") -> PeakTable:
    """
    Flag rule-derived outliers (cumulative with any earlier flags).

    Either pass the rule directly or an OutlierConfig.

    Example:
        >>> table = mark_outliers(table, "d13C_dev", n_sd=3)   # 3-sigma per type
    """
    if config is not None:
        column = column or config.column
        n_sd = config.n_sd if n_sd is None else n_sd
        plus_minus_value = config.plus_minus_value if plus_minus_value is None else plus_minus_value
        group_by = group_by or config.group_by
    if column is None:
        raise ValueError("No column given for outlier marking")

    mask = outlier_mask(table, column, n_sd=n_sd, plus_minus_value=plus_minus_value,
                        group_by=group_by, row_filter=row_filter, stage=stage)
    table = table.accumulate_flag(OUTLIER_RULE_COLUMN, mask, stage=stage)
    return table.accumulate_flag(OUTLIER_COLUMN, mask, stage=stage)


def mark_explicit_outliers(table: PeakTable,
                           identities: Iterable[Any],
                           on: Optional[Union[str, Iterable[str]]] = None,
                           stage: str = "outliers") -> PeakTable:
    """
    Flag the rows whose identity is in ``identities``.

    Args:
        table: Peak table
        identities: Values of ``on`` (single column) or tuples (several columns)
        on: Identity column(s) to match; defaults to the first identity column
        stage: Provenance recorded on first use of the flag columns
    """
    if on is None:
        on = [table.id_columns[0]]
    elif isinstance(on, str):
        on = [on]
    else:
        on = list(on)
    table.require(on, stage=stage)

    identities = list(identities)
    if len(on) == 1:
        mask = table[on[0]].isin(identities)
    else:
        wanted = {tuple(i) for i in identities}
        if any(len(i) != len(on) for i in wanted):
            raise DataError(f"Explicit outlier identities must have {len(on)} values ({on})",
                            stage=stage, columns=on)
        keys = pd.MultiIndex.from_frame(table.data[on])
        mask = pd.Series(keys.isin(list(wanted)), index=table.data.index)

    table = table.accumulate_flag(OUTLIER_EXPLICIT_COLUMN, mask, stage=stage)
    return table.accumulate_flag(OUTLIER_COLUMN, mask, stage=stage)
