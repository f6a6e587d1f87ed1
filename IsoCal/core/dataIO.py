from pathlib import Path
from typing import Sequence, Union

import pandas as pd

from .config import DEFAULT_GROUP_COLUMN, DEFAULT_ID_COLUMNS
from .datatypes import CalibrationSet, PeakTable

PathLike = Union[str, Path]

# -------------------------------------
# --- Tables in and out (CSV)       ---
# -------------------------------------

def load_table(path: PathLike) -> pd.DataFrame:
    """Load a CSV table (peak table or standards)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    return pd.read_csv(path)


def load_peak_table(path: PathLike,
                    id_columns: Sequence[str] = DEFAULT_ID_COLUMNS,
                    group_column: str = DEFAULT_GROUP_COLUMN) -> PeakTable:
    """Load a CSV peak table and wrap it in a PeakTable."""
    return PeakTable.from_frame(load_table(path), id_columns=id_columns, group_column=group_column)


def save_table(table: Union[PeakTable, pd.DataFrame], path: PathLike) -> Path:
    """Write a table to CSV, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = table.data if isinstance(table, PeakTable) else table
    frame.to_csv(path, index=False)
    return path


def save_calibrations(calibrations: CalibrationSet, out_dir: PathLike, prefix: str = "") -> tuple:
    """Write the summary (all fits, rejected included) and coefficient tables of a stage."""
    out_dir = Path(out_dir)
    stem = f"{prefix}{calibrations.stage}"
    summary_file = save_table(calibrations.summary(include_rejected=True),
                              out_dir / f"{stem}_summary.csv")
    coef_file = save_table(calibrations.coefficients(), out_dir / f"{stem}_coefficients.csv")
    return summary_file, coef_file
