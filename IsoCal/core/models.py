"""
Calibration model specifications.

A model spec is a named regression form ``response ~ f(predictor)`` plus a
free-form label. Instead of evaluating arbitrary formula strings, each form is
a small frozen dataclass that knows its own parameter count, design matrix and
evaluator, so degrees-of-freedom and rank checks are structural:

    Constant(label, response)                          y = c
    Linear(label, response, predictor)                 y = intercept + slope * x
    Polynomial(label, response, predictor, degree)     y = c0 + c1 * x + ... + cN * x^N
    Smoothed(label, response, predictor, bandwidth)    y = lowess(x)

``group_by`` declares the grouping dimension: a non-empty tuple of column
names means one set of coefficients per group, an empty tuple one global fit.
"""

import math
import re
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import numpy as np

from .config import DEFAULT_BANDWIDTH


class _SpecBase:
    """Behaviour shared by all model forms."""

    parametric = True

    @property
    def columns(self) -> Tuple[str, ...]:
        """Columns a fit of this spec reads."""
        cols = [self.response]
        if self.predictor is not None:
            cols.append(self.predictor)
        return tuple(cols) + tuple(self.group_by)

    @property
    def is_grouped(self) -> bool:
        return len(self.group_by) > 0

    def describe(self) -> str:
        return f"{self.response} ~ {self._rhs()}"

    def design_matrix(self, x: np.ndarray) -> np.ndarray:
        """One column per free parameter, in ``param_names`` order."""
        x = np.asarray(x, dtype=float)
        return np.column_stack([self._basis(name, x) for name in self.param_names])

    def evaluate(self, values: Dict[str, float], x: np.ndarray) -> np.ndarray:
        """Evaluate the form at ``x`` given fitted parameter values."""
        x = np.asarray(x, dtype=float)
        out = np.zeros_like(x, dtype=float)
        for name in self.param_names:
            out = out + values[name] * self._basis(name, x)
        return out

    def derivative(self, values: Dict[str, float], x: np.ndarray) -> np.ndarray:
        """d(response)/d(predictor) at ``x``; used for inverse prediction errors."""
        raise NotImplementedError

    @property
    def n_params(self) -> int:
        return len(self.param_names)


@dataclass(frozen=True)
class Constant(_SpecBase):
    """Intercept-only baseline: the response is its mean."""
    label: str
    response: str
    group_by: Tuple[str, ...] = ()

    predictor = None
    param_names = ("c",)

    def _rhs(self) -> str:
        return "1"

    def _basis(self, name: str, x: np.ndarray) -> np.ndarray:
        return np.ones_like(x, dtype=float)

    def derivative(self, values, x):
        return np.zeros_like(np.asarray(x, dtype=float))


@dataclass(frozen=True)
class Linear(_SpecBase):
    label: str
    response: str
    predictor: str
    intercept: bool = True
    group_by: Tuple[str, ...] = ()

    @property
    def param_names(self) -> Tuple[str, ...]:
        return ("intercept", "slope") if self.intercept else ("slope",)

    def _rhs(self) -> str:
        return self.predictor if self.intercept else f"{self.predictor} - 1"

    def _basis(self, name: str, x: np.ndarray) -> np.ndarray:
        return np.ones_like(x) if name == "intercept" else x

    def derivative(self, values, x):
        return np.full_like(np.asarray(x, dtype=float), values["slope"])


@dataclass(frozen=True)
class Polynomial(_SpecBase):
    label: str
    response: str
    predictor: str
    degree: int = 2
    intercept: bool = True
    group_by: Tuple[str, ...] = ()

    def __post_init__(self):
        # lmfit's PolynomialModel stops at degree 7
        if not 1 <= self.degree <= 7:
            raise ValueError(f"Polynomial degree must be between 1 and 7, got {self.degree}")

    @property
    def param_names(self) -> Tuple[str, ...]:
        first = 0 if self.intercept else 1
        return tuple(f"c{i}" for i in range(first, self.degree + 1))

    def _rhs(self) -> str:
        rhs = f"poly({self.predictor}, {self.degree})"
        return rhs if self.intercept else f"{rhs} - 1"

    def _basis(self, name: str, x: np.ndarray) -> np.ndarray:
        return x ** int(name[1:])

    def derivative(self, values, x):
        x = np.asarray(x, dtype=float)
        out = np.zeros_like(x)
        for name in self.param_names:
            power = int(name[1:])
            if power > 0:
                out = out + power * values[name] * x ** (power - 1)
        return out


@dataclass(frozen=True)
class Smoothed(_SpecBase):
    """
    Local-weighted (LOWESS) smoother.

    ``bandwidth`` is the fraction of points used for each local fit. The
    parameter count is the equivalent number of parameters of a local-linear
    smoother, approximately 2 / bandwidth.
    """
    label: str
    response: str
    predictor: str
    bandwidth: float = DEFAULT_BANDWIDTH
    group_by: Tuple[str, ...] = ()

    parametric = False
    param_names = ()

    def __post_init__(self):
        if not 0 < self.bandwidth <= 1:
            raise ValueError(f"Smoothing bandwidth must be in (0, 1], got {self.bandwidth}")

    @property
    def n_params(self) -> int:
        return int(math.ceil(2.0 / self.bandwidth))

    def _rhs(self) -> str:
        return f"loess({self.predictor}, {self.bandwidth:g})"

    def design_matrix(self, x):
        raise TypeError("Smoothed forms have no design matrix")

    def evaluate(self, values, x):
        raise TypeError("Smoothed forms are evaluated from their fitted curve")


ModelSpec = Union[Constant, Linear, Polynomial, Smoothed]


# -------------------------------
# Formula strings
# -------------------------------

_NAME = r"[A-Za-z_.][\w.]*"
_FORMULA_RE = re.compile(rf"^\s*({_NAME})\s*~\s*(.+?)\s*$")
_NO_INTERCEPT_RE = re.compile(r"^(?:0\s*\+\s*(.+)|-\s*1\s*\+\s*(.+)|(.+?)\s*-\s*1|(.+?)\s*\+\s*0)$")
_POLY_RE = re.compile(rf"^poly\(\s*({_NAME})\s*,\s*(\d+)\s*\)$")
_SMOOTH_RE = re.compile(rf"^lo(?:w)?ess\(\s*({_NAME})\s*(?:,\s*([0-9.eE+-]+)\s*)?\)$")
_PLAIN_RE = re.compile(rf"^({_NAME})$")


def parse_formula(label: str, formula: str, group_by: Tuple[str, ...] = ()) -> ModelSpec:
    """
    Build a model spec from an R-style formula.

    Supported right-hand sides:
        1                        -> Constant
        x                        -> Linear
        x - 1, 0 + x             -> Linear without intercept
        poly(x, 2) [- 1]         -> Polynomial
        loess(x) / loess(x, 0.5) -> Smoothed

    Example:
        >>> parse_formula("lin", "true_d13C ~ d13C")
        Linear(label='lin', response='true_d13C', predictor='d13C', intercept=True, group_by=())
    """
    group_by = tuple(group_by)
    match = _FORMULA_RE.match(formula)
    if match is None:
        raise ValueError(f"Cannot parse formula '{formula}' (expected 'response ~ terms')")
    response, rhs = match.group(1), match.group(2).strip()

    if rhs == "1":
        return Constant(label=label, response=response, group_by=group_by)

    intercept = True
    no_int = _NO_INTERCEPT_RE.match(rhs)
    if no_int is not None:
        intercept = False
        rhs = next(g for g in no_int.groups() if g is not None).strip()

    poly = _POLY_RE.match(rhs)
    if poly is not None:
        degree = int(poly.group(2))
        if degree == 1:
            return Linear(label=label, response=response, predictor=poly.group(1),
                          intercept=intercept, group_by=group_by)
        return Polynomial(label=label, response=response, predictor=poly.group(1),
                          degree=degree, intercept=intercept, group_by=group_by)

    smooth = _SMOOTH_RE.match(rhs)
    if smooth is not None:
        if not intercept:
            raise ValueError(f"Smoothed forms cannot drop the intercept: '{formula}'")
        bandwidth = float(smooth.group(2)) if smooth.group(2) else DEFAULT_BANDWIDTH
        return Smoothed(label=label, response=response, predictor=smooth.group(1),
                        bandwidth=bandwidth, group_by=group_by)

    plain = _PLAIN_RE.match(rhs)
    if plain is not None:
        return Linear(label=label, response=response, predictor=plain.group(1),
                      intercept=intercept, group_by=group_by)

    raise ValueError(f"Unsupported model terms '{rhs}' in formula '{formula}'")


def spec_from_config(label: str, entry: Union[str, dict]) -> ModelSpec:
    """Build a spec from a config entry: a formula string or {formula, group_by}."""
    if isinstance(entry, str):
        return parse_formula(label, entry)
    group_by = entry.get("group_by") or ()
    if isinstance(group_by, str):
        group_by = (group_by,)
    return parse_formula(label, entry["formula"], group_by=tuple(group_by))
