"""
Error taxonomy for the calibration engine.

Structural problems (missing columns, schema violations, bad selections)
raise. Row-level gaps never raise: they come out as NaN in derived columns.
"""

from typing import Iterable, Optional


class DataError(ValueError):
    """A required column or join key is missing, or the input is malformed."""

    def __init__(self, message: str, stage: Optional[str] = None,
                 columns: Iterable[str] = ()):
        self.stage = stage
        self.columns = tuple(columns)
        prefix = f"[{stage}] " if stage else ""
        super().__init__(prefix + message)


class SchemaError(DataError):
    """A stage tried to write a column it did not declare (append-only schema)."""


class FitInvalid(Exception):
    """
    A single (model spec, group) fit is degenerate.

    Raised inside the fitter and converted into an invalid FittedCalibration;
    it never reaches the caller.
    """


class SelectionError(LookupError):
    """The selected calibration does not exist or was rejected as invalid."""
