"""
Standards matching and derived reference columns.

Known (true) values of reference materials are joined onto the peaks that
measured them. Samples have no true value and keep NaN.
"""

from typing import Sequence, Union

import numpy as np
import pandas as pd

from IsoCal.core.config import DEV_SUFFIX, STD_MATCH_COLUMN
from IsoCal.core.datatypes import PeakTable
from IsoCal.core.errors import DataError


def match_standards(table: PeakTable,
                    standards: pd.DataFrame,
                    by: Union[str, Sequence[str]],
                    stage: str = "standards",
                    match_column: str = STD_MATCH_COLUMN) -> PeakTable:
    """
    Append the standards' true-value columns to matching rows.

    Args:
        table: Peak table
        standards: One row per reference material: join key + true values
        by: Join key column name(s), present in both tables
        stage: Stage name recorded as the provenance of the new columns
        match_column: Boolean column marking rows that matched a standard

    Returns:
        PeakTable with the true-value columns and ``match_column`` appended

    Raises:
        DataError: if the join key is missing from either table, repeats in
            the standards table or has incompatible dtypes across the two
        SchemaError: if a true-value column already exists on the table
    """
    keys = [by] if isinstance(by, str) else list(by)

    table.require(keys, stage=stage)
    missing = [k for k in keys if k not in standards.columns]
    if missing:
        raise DataError(f"Standards table is missing join key(s) {missing}",
                        stage=stage, columns=missing)

    duplicated = standards.duplicated(subset=keys, keep=False)
    if duplicated.any():
        dupes = standards.loc[duplicated, keys].drop_duplicates().to_dict("records")
        raise DataError(f"Standards table has duplicate join key values: {dupes}",
                        stage=stage, columns=keys)

    value_columns = [c for c in standards.columns if c not in keys]
    lookup = standards[keys + value_columns].copy()
    lookup[match_column] = True

    try:
        merged = table.data[keys].merge(lookup, on=keys, how="left", validate="many_to_one")
    except ValueError as e:
        # pandas refuses to join e.g. integer keys onto string keys
        dtypes = {k: (str(table.data[k].dtype), str(standards[k].dtype)) for k in keys}
        raise DataError(f"Cannot join standards on {keys} (peak, standards dtypes: {dtypes}): {e}",
                        stage=stage, columns=keys) from e
    merged.index = table.data.index

    new_columns = {c: merged[c] for c in value_columns}
    new_columns[match_column] = merged[match_column].fillna(False).astype(bool)
    return table.with_columns(new_columns, stage=stage)


def add_deviation(table: PeakTable,
                  observed: str,
                  reference: str,
                  name: str = None,
                  stage: str = "deviation") -> PeakTable:
    """
    Append ``<observed>_dev = observed - reference``.

    Rows without a reference value (samples) get NaN.
    """
    table.require([observed, reference], stage=stage)
    name = name or f"{observed}{DEV_SUFFIX}"
    dev = table[observed].astype(float) - table[reference].astype(float)
    return table.with_columns({name: dev}, stage=stage)


def derive_column(table: PeakTable, name: str, expression: str, stage: str) -> PeakTable:
    """
    Append a column computed from existing ones with a pandas expression.

    Example:
        >>> derive_column(table, "d13C_drift", "d13C - d13C_dev_pred", stage="drift")
    """
    values = table.evaluate(expression, stage=stage)
    if values.dtype != bool:
        values = values.astype(float).replace([np.inf, -np.inf], np.nan)
    return table.with_columns({name: values}, stage=stage)
