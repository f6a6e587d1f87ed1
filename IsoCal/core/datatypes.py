from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import DEFAULT_ID_COLUMNS, DEFAULT_GROUP_COLUMN
from .errors import DataError, SchemaError, SelectionError
from .models import ModelSpec

GroupKey = Optional[Tuple[Any, ...]]

# -------------------------------
# Peak table
# -------------------------------

@dataclass(frozen=True)
class PeakTable:
    """
    Peaks with identity and grouping metadata and an append-only schema.

    Every column carries the name of the stage that declared it (``provenance``).
    Augmentations return a new PeakTable; existing columns are never rewritten,
    except cumulative flag columns which may only flip False -> True.

    Attributes:
        data: One row per detected peak
        id_columns: Identity columns (analysis id, sequence number, ...)
        group_column: Categorical grouping key (sample/standard/blank, ...)
        provenance: column -> stage that created it ("input" for parsed columns)
        flags: Cumulative boolean columns (outlier flags)
    """
    data: pd.DataFrame
    id_columns: Tuple[str, ...] = DEFAULT_ID_COLUMNS
    group_column: str = DEFAULT_GROUP_COLUMN
    provenance: Mapping[str, str] = field(default_factory=dict)
    flags: frozenset = frozenset()

    @classmethod
    def from_frame(cls, frame: pd.DataFrame,
                   id_columns: Sequence[str] = DEFAULT_ID_COLUMNS,
                   group_column: str = DEFAULT_GROUP_COLUMN) -> "PeakTable":
        """Wrap a parsed peak frame, checking the identity and grouping columns."""
        id_columns = tuple(id_columns)
        missing = [c for c in id_columns + (group_column,) if c not in frame.columns]
        if missing:
            raise DataError(f"Peak table is missing required columns {missing}",
                            stage="input", columns=missing)
        return cls(data=frame.copy(),
                   id_columns=id_columns,
                   group_column=group_column,
                   provenance={c: "input" for c in frame.columns})

    def __len__(self) -> int:
        return len(self.data)

    def __contains__(self, column: str) -> bool:
        return column in self.data.columns

    def __getitem__(self, column: str) -> pd.Series:
        return self.data[column]

    @property
    def columns(self) -> List[str]:
        return list(self.data.columns)

    @property
    def protected(self) -> frozenset:
        """Identity and grouping columns: never overwritten."""
        return frozenset(self.id_columns + (self.group_column,))

    def require(self, columns: Iterable[str], stage: Optional[str] = None) -> None:
        missing = [c for c in columns if c not in self.data.columns]
        if missing:
            raise DataError(f"Missing required column(s) {missing}", stage=stage, columns=missing)

    def columns_from(self, stage: str) -> List[str]:
        """Columns declared by ``stage``, in table order."""
        return [c for c in self.data.columns if self.provenance.get(c) == stage]

    def with_columns(self, columns: Mapping[str, Any], stage: str) -> "PeakTable":
        """Append new columns declared by ``stage``. Existing names are rejected."""
        clashes = [name for name in columns if name in self.data.columns]
        if clashes:
            owners = {name: self.provenance.get(name) for name in clashes}
            identity = sorted(self.protected.intersection(clashes))
            if identity:
                raise SchemaError(f"Identity/grouping column(s) {identity} are never overwritten",
                                  stage=stage, columns=clashes)
            raise SchemaError(f"Column(s) already exist and cannot be rewritten: {owners}",
                              stage=stage, columns=clashes)

        data = self.data.copy()
        for name, values in columns.items():
            data[name] = _aligned(values, data.index)
        provenance = dict(self.provenance)
        provenance.update({name: stage for name in columns})
        return replace(self, data=data, provenance=provenance)

    def accumulate_flag(self, name: str, mask: Any, stage: str) -> "PeakTable":
        """
        OR ``mask`` into the cumulative boolean column ``name``.

        Creates the column on first use. Only columns created this way can be
        updated; a row once flagged stays flagged.
        """
        mask = _aligned(mask, self.data.index).fillna(False).astype(bool)
        if name not in self.data.columns:
            table = self.with_columns({name: mask}, stage=stage)
            return replace(table, flags=self.flags | {name})
        if name not in self.flags:
            raise SchemaError(f"'{name}' is not a cumulative flag column "
                              f"(declared by '{self.provenance.get(name)}')",
                              stage=stage, columns=[name])
        data = self.data.copy()
        data[name] = data[name].astype(bool) | mask
        return replace(self, data=data)

    def evaluate(self, expression: str, stage: Optional[str] = None) -> pd.Series:
        """Evaluate a pandas expression over the table's columns."""
        try:
            result = self.data.eval(expression, engine="python")
        except (NameError, KeyError, pd.errors.UndefinedVariableError) as e:
            raise DataError(f"Cannot evaluate '{expression}': {e}", stage=stage) from e
        if np.isscalar(result):
            result = pd.Series(result, index=self.data.index)
        return result


def _aligned(values: Any, index: pd.Index) -> pd.Series:
    """Coerce column values to a Series on ``index``."""
    if isinstance(values, pd.Series):
        return values.reindex(index)
    if np.isscalar(values):
        return pd.Series(values, index=index)
    values = np.asarray(values)
    if len(values) != len(index):
        raise DataError(f"Column length {len(values)} does not match table length {len(index)}")
    return pd.Series(values, index=index)


# -------------------------------
# Fitted calibrations
# -------------------------------

@dataclass(frozen=True)
class FittedCalibration:
    """
    One fitted model for a (stage, model spec, group).

    Invalid fits keep ``valid=False`` and the reason in ``problem``; their
    numbers are NaN and they never reach the caller's candidate set.
    """
    stage: str
    spec: ModelSpec
    group: GroupKey = None
    params: Dict[str, float] = field(default_factory=dict)
    stderr: Dict[str, float] = field(default_factory=dict)
    pvalues: Dict[str, float] = field(default_factory=dict)
    covariance: Optional[np.ndarray] = None
    residual_sd: float = np.nan
    r_squared: float = np.nan
    n_obs: int = 0
    df_resid: int = 0
    residuals: Optional[np.ndarray] = None
    fit_index: Optional[pd.Index] = None        # rows used for the fit
    predictor_range: Tuple[float, float] = (np.nan, np.nan)
    curve: Optional[Tuple[np.ndarray, np.ndarray]] = None   # smoothed forms: (x, y) sorted by x
    x_transform: Tuple[float, float] = (0.0, 1.0)   # (center, scale) the predictor was fitted on
    valid: bool = False
    problem: str = ""

    @property
    def label(self) -> str:
        return self.spec.label

    @property
    def key(self) -> Tuple[str, GroupKey]:
        return (self.spec.label, self.group)

    def predict(self, x: np.ndarray) -> np.ndarray:
        """Evaluate the fitted form; NaN where ``x`` is NaN."""
        x = np.asarray(x, dtype=float)
        out = np.full(x.shape, np.nan)
        ok = np.isfinite(x)
        if not ok.any():
            return out
        if self.spec.parametric:
            out[ok] = self.spec.evaluate(self.params, self.scaled(x[ok]))
        else:
            # Like loess(surface = "interpolate"): no extrapolation
            cx, cy = self.curve
            inside = ok & (x >= cx[0]) & (x <= cx[-1])
            out[inside] = np.interp(x[inside], cx, cy)
        return out

    def scaled(self, x: np.ndarray) -> np.ndarray:
        """Predictor on the scale the coefficients refer to."""
        center, scale = self.x_transform
        return (np.asarray(x, dtype=float) - center) / scale

    def derivative(self, x: np.ndarray) -> np.ndarray:
        """d(response)/d(predictor) at ``x``, in the original predictor units."""
        return self.spec.derivative(self.params, self.scaled(x)) / self.x_transform[1]

    def __str__(self) -> str:
        group = "" if self.group is None else f" [{', '.join(map(str, self.group))}]"
        if not self.valid:
            return f"{self.stage}/{self.label}{group}: {self.spec.describe()} INVALID ({self.problem})"
        return (f"{self.stage}/{self.label}{group}: {self.spec.describe()} "
                f"n={self.n_obs}, sd={self.residual_sd:.4g}, R²={self.r_squared:.4f}")


@dataclass(frozen=True)
class CalibrationRange:
    """Closed predictor interval used for a fit (unbounded for intercept-only fits)."""
    stage: str
    label: str
    group: GroupKey
    predictor: Optional[str]
    min: float
    max: float

    def contains(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if self.predictor is None:
            return np.ones(x.shape, dtype=bool)
        with np.errstate(invalid="ignore"):
            return (x >= self.min) & (x <= self.max)


@dataclass(frozen=True)
class CalibrationSet:
    """
    Candidate fits for one stage, keyed by (label, group).

    ``fits`` holds the valid candidates presented to the caller; ``rejected``
    keeps the invalid ones for reporting only. Keys make the set independent of
    fitting order.
    """
    stage: str
    fits: Mapping[Tuple[str, GroupKey], FittedCalibration] = field(default_factory=dict)
    rejected: Mapping[Tuple[str, GroupKey], FittedCalibration] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.fits)

    def __iter__(self):
        return iter(self.fits[k] for k in sorted(self.fits, key=_sort_key))

    @property
    def labels(self) -> List[str]:
        return sorted({label for label, _ in self.fits})

    def select(self, label: str, group: GroupKey = None) -> FittedCalibration:
        """
        Pick one valid fit. Grouped specs need ``group`` (use ``select_groups``
        to take all of them).
        """
        group = _as_group(group)
        matches = [fit for (lab, grp), fit in self.fits.items()
                   if lab == label and (group is None or grp == group)]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            self._raise_missing(label, group)
        groups = sorted((fit.group for fit in matches), key=str)
        raise SelectionError(f"Calibration '{label}' in stage '{self.stage}' is fit per group; "
                             f"pass group= one of {groups} or use select_groups()")

    def select_groups(self, label: str) -> List[FittedCalibration]:
        """All valid group fits of ``label`` (a single element for global fits)."""
        matches = [self.fits[k] for k in sorted(self.fits, key=_sort_key) if k[0] == label]
        if not matches:
            self._raise_missing(label, None)
        return matches

    def _raise_missing(self, label: str, group: GroupKey):
        bad = [fit for (lab, grp), fit in self.rejected.items()
               if lab == label and (group is None or grp == group)]
        if bad:
            reasons = "; ".join(sorted({fit.problem for fit in bad}))
            raise SelectionError(f"Calibration '{label}' in stage '{self.stage}' was rejected "
                                 f"as invalid: {reasons}")
        raise SelectionError(f"No calibration '{label}' in stage '{self.stage}' "
                             f"(available: {self.labels})")

    def summary(self, include_rejected: bool = False) -> pd.DataFrame:
        """One row per fit: diagnostics for the caller's model choice."""
        fits = list(self.fits.values())
        if include_rejected:
            fits += list(self.rejected.values())
        rows = [{
            "stage": fit.stage,
            "label": fit.label,
            "group": None if fit.group is None else "/".join(map(str, fit.group)),
            "formula": fit.spec.describe(),
            "n_obs": fit.n_obs,
            "n_params": fit.spec.n_params,
            "df_resid": fit.df_resid,
            "residual_sd": fit.residual_sd,
            "r_squared": fit.r_squared,
            "valid": fit.valid,
            "problem": fit.problem,
        } for fit in sorted(fits, key=lambda f: _sort_key(f.key))]
        return pd.DataFrame(rows, columns=["stage", "label", "group", "formula", "n_obs",
                                           "n_params", "df_resid", "residual_sd",
                                           "r_squared", "valid", "problem"])

    def coefficients(self) -> pd.DataFrame:
        """
        One row per (fit, term) with estimate, standard error and p-value.

        Polynomial terms refer to the predictor as (x - x_center) / x_scale.
        """
        rows = []
        for fit in self:
            for term, value in fit.params.items():
                rows.append({
                    "stage": fit.stage,
                    "label": fit.label,
                    "group": None if fit.group is None else "/".join(map(str, fit.group)),
                    "term": term,
                    "estimate": value,
                    "std_error": fit.stderr.get(term, np.nan),
                    "p_value": fit.pvalues.get(term, np.nan),
                    "x_center": fit.x_transform[0],
                    "x_scale": fit.x_transform[1],
                })
        return pd.DataFrame(rows, columns=["stage", "label", "group", "term",
                                           "estimate", "std_error", "p_value",
                                           "x_center", "x_scale"])


def _as_group(group: Any) -> GroupKey:
    if group is None or isinstance(group, tuple):
        return group
    return (group,)


def _sort_key(key: Tuple[str, GroupKey]):
    label, group = key
    return (label, () if group is None else tuple(str(g) for g in group))
