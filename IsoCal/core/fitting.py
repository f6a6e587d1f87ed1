from typing import Dict, Optional, Tuple

import numpy as np # type: ignore
import pandas as pd
from lmfit.models import ConstantModel, LinearModel, PolynomialModel # type: ignore
from scipy import stats
from scipy.optimize import brentq
from statsmodels.nonparametric.smoothers_lowess import lowess

from .config import FitConfig
from .datatypes import FittedCalibration, GroupKey
from .errors import DataError, FitInvalid
from .models import Constant, Linear, ModelSpec, Polynomial


# -------------------------------------------------
#  Single (spec, group) fit
# -------------------------------------------------

def fit_model(spec: ModelSpec,
              data: pd.DataFrame,
              stage: str,
              group: GroupKey = None,
              config: FitConfig = FitConfig()) -> FittedCalibration:
    """
    Fit one model spec to the rows of ``data``.

    Rows missing the response or the predictor are left out. Degenerate fits
    (too few rows, no residual degrees of freedom, singular design matrix,
    non-finite coefficients) come back with ``valid=False`` and a reason.

    Args:
        spec: Model form to fit
        data: Fitting subset (already restricted to one group if grouped)
        stage: Calibration stage name
        group: Group key for grouped specs (None for global fits)
        config: Fit configuration

    Returns:
        FittedCalibration with coefficients and diagnostics
    """
    cols = [spec.response] + ([spec.predictor] if spec.predictor else [])
    missing = [c for c in cols if c not in data.columns]
    if missing:
        raise DataError(f"Model '{spec.label}' ({spec.describe()}) needs missing column(s) {missing}",
                        stage=stage, columns=missing)
    try:
        values = data[cols].astype(float)
    except (TypeError, ValueError) as e:
        raise DataError(f"Non-numeric data in {cols} for model '{spec.label}': {e}",
                        stage=stage, columns=cols) from e

    usable = values[np.isfinite(values).all(axis=1)]
    y = usable[spec.response].to_numpy()
    x = usable[spec.predictor].to_numpy() if spec.predictor else np.zeros(len(usable))

    transform = _predictor_transform(spec, x)
    z = (x - transform[0]) / transform[1]

    base = dict(stage=stage, spec=spec, group=group,
                n_obs=len(y), df_resid=len(y) - spec.n_params,
                fit_index=usable.index,
                predictor_range=_predictor_range(spec, x),
                x_transform=transform)
    try:
        _check_structure(spec, z, y, config)
        if spec.parametric:
            details = _fit_parametric(spec, z, y)
        else:
            details = _fit_smoothed(spec, x, y, config)
    except FitInvalid as e:
        return FittedCalibration(valid=False, problem=str(e), **base)

    return FittedCalibration(valid=True, **base, **details)


def _predictor_range(spec: ModelSpec, x: np.ndarray) -> Tuple[float, float]:
    if spec.predictor is None:
        return (-np.inf, np.inf)
    if len(x) == 0:
        return (np.nan, np.nan)
    return (float(np.min(x)), float(np.max(x)))


def _predictor_transform(spec: ModelSpec, x: np.ndarray) -> Tuple[float, float]:
    """
    (center, scale) for polynomial predictors.

    Raw powers of large predictors (epoch-second timestamps) are numerically
    singular; the polynomial is fit on (x - center) / scale instead. Without an
    intercept the center stays 0 so the model still passes through the origin.
    """
    if not isinstance(spec, Polynomial) or len(x) == 0:
        return (0.0, 1.0)
    center = float(np.mean(x)) if spec.intercept else 0.0
    scale = float(np.sqrt(np.mean((x - center) ** 2)))
    if not np.isfinite(scale) or scale == 0:
        scale = 1.0
    return (center, scale)


def _check_structure(spec: ModelSpec, x: np.ndarray, y: np.ndarray, config: FitConfig) -> None:
    n, k = len(y), spec.n_params
    if n < k:
        raise FitInvalid(f"insufficient data: {n} usable rows for {k} parameters")
    if n - k < config.min_df_resid:
        raise FitInvalid(f"insufficient residual degrees of freedom: {n - k} < {config.min_df_resid}")
    if spec.parametric:
        rank = np.linalg.matrix_rank(spec.design_matrix(x), tol=config.rank_tol)
        if rank < k:
            raise FitInvalid(f"singular design matrix (rank {rank} < {k} parameters)")
    elif len(np.unique(x)) < 2:
        raise FitInvalid("singular design: predictor has a single distinct value")


# -------------------------------------------------
#  Parametric forms (least squares with lmfit)
# -------------------------------------------------

def _lmfit_model(spec: ModelSpec, x: np.ndarray, y: np.ndarray):
    """lmfit model and starting parameters for a parametric spec."""
    if isinstance(spec, Constant):
        model = ConstantModel()
    elif isinstance(spec, Linear):
        model = LinearModel()
    elif isinstance(spec, Polynomial):
        model = PolynomialModel(degree=spec.degree)
    else:
        raise TypeError(f"No least-squares model for {type(spec).__name__}")

    params = model.guess(y, x=x)
    if isinstance(spec, Linear) and not spec.intercept:
        params["intercept"].set(value=0.0, vary=False)
    if isinstance(spec, Polynomial) and not spec.intercept:
        params["c0"].set(value=0.0, vary=False)
    return model, params


def _fit_parametric(spec: ModelSpec, x: np.ndarray, y: np.ndarray) -> Dict:
    model, params = _lmfit_model(spec, x, y)
    result = model.fit(y, params, x=x)

    values = {name: float(result.params[name].value) for name in spec.param_names}
    if not all(np.isfinite(v) for v in values.values()):
        raise FitInvalid("non-finite coefficients")
    if result.covar is None:
        raise FitInvalid("coefficient covariance could not be estimated")

    # lmfit orders the covariance by its varying parameters
    order = [result.var_names.index(name) for name in spec.param_names]
    covariance = np.asarray(result.covar)[np.ix_(order, order)]
    if not np.all(np.isfinite(covariance)):
        raise FitInvalid("non-finite coefficient covariance")

    residuals = y - spec.evaluate(values, x)
    df = len(y) - spec.n_params
    residual_sd = float(np.sqrt(np.sum(residuals ** 2) / df))

    stderr = dict(zip(spec.param_names, np.sqrt(np.diag(covariance))))
    with np.errstate(divide="ignore", invalid="ignore"):
        pvalues = {name: float(2 * stats.t.sf(abs(values[name] / stderr[name]), df))
                   for name in spec.param_names}

    return dict(params=values,
                stderr={k: float(v) for k, v in stderr.items()},
                pvalues=pvalues,
                covariance=covariance,
                residuals=residuals,
                residual_sd=residual_sd,
                r_squared=_r_squared(spec, y, residuals))


def _r_squared(spec: ModelSpec, y: np.ndarray, residuals: np.ndarray) -> float:
    """
    Coefficient of determination, as R's summary.lm reports it.

    Intercept-only models explain nothing: R² = 0. Models without an intercept
    use the uncentered total sum of squares. A response with no variation
    leaves nothing to explain either, so R² = 0 there too.
    """
    if isinstance(spec, Constant):
        return 0.0
    ssr = float(np.sum(residuals ** 2))
    if getattr(spec, "intercept", True):
        sst = float(np.sum((y - np.mean(y)) ** 2))
    else:
        sst = float(np.sum(y ** 2))
    return 1.0 - ssr / sst if sst > 0 else 0.0


# -------------------------------------------------
#  Smoothed forms (LOWESS)
# -------------------------------------------------

def _fit_smoothed(spec, x: np.ndarray, y: np.ndarray, config: FitConfig) -> Dict:
    fitted = lowess(y, x, frac=spec.bandwidth, it=config.lowess_iterations,
                    return_sorted=False)
    if not np.all(np.isfinite(fitted)):
        raise FitInvalid("local regression produced non-finite values")

    # One curve point per distinct predictor value
    ux, inverse = np.unique(x, return_inverse=True)
    uy = np.bincount(inverse, weights=fitted) / np.bincount(inverse)
    residuals = y - uy[inverse]

    ssr = float(np.sum(residuals ** 2))
    sst = float(np.sum((y - np.mean(y)) ** 2))
    df = len(y) - spec.n_params

    return dict(curve=(ux, uy),
                residuals=residuals,
                residual_sd=float(np.sqrt(ssr / df)),
                r_squared=1.0 - ssr / sst if sst > 0 else 0.0)


# -------------------------------------------------
#  Prediction error
# -------------------------------------------------

def prediction_se(fit: FittedCalibration, x: np.ndarray) -> np.ndarray:
    """
    Standard error of the fitted value at ``x``.

    Parametric forms: sqrt(g' C g) with g the design row at ``x`` and C the
    coefficient covariance (exact delta method, the forms are linear in their
    parameters). Smoothed forms have no covariance; the residual standard
    deviation is used instead.
    """
    x = np.asarray(x, dtype=float)
    se = np.full(x.shape, np.nan)
    ok = np.isfinite(fit.predict(x))
    if not ok.any():
        return se
    if fit.spec.parametric:
        X = fit.spec.design_matrix(fit.scaled(x[ok]))
        se[ok] = np.sqrt(np.einsum("ij,jk,ik->i", X, fit.covariance, X))
    else:
        se[ok] = fit.residual_sd
    return se


# -------------------------------------------------
#  Inverse prediction
# -------------------------------------------------

def invert_fit(fit: FittedCalibration, y: np.ndarray,
               bracket: Optional[Tuple[float, float]] = None) -> np.ndarray:
    """
    Solve f(x) = y for x on each value of ``y``.

    The root is searched on the fitted predictor range widened by its own width
    on both sides. Values without a root in that bracket come back NaN.
    """
    spec = fit.spec
    if not spec.parametric or spec.predictor is None:
        raise DataError(f"Calibration '{spec.label}' ({spec.describe()}) cannot be inverted",
                        stage=fit.stage)

    if bracket is None:
        lo, hi = fit.predictor_range
        width = (hi - lo) or max(abs(lo), 1.0)
        bracket = (lo - width, hi + width)
    lo, hi = bracket

    y = np.asarray(y, dtype=float)
    x = np.full(y.shape, np.nan)
    f = lambda xx, target: float(fit.predict(np.array([xx]))[0]) - target
    for i, target in enumerate(y):
        if not np.isfinite(target):
            continue
        f_lo, f_hi = f(lo, target), f(hi, target)
        if f_lo == 0:
            x[i] = lo
        elif f_hi == 0:
            x[i] = hi
        elif np.sign(f_lo) != np.sign(f_hi):
            x[i] = brentq(f, lo, hi, args=(target,))
    return x


def inverse_prediction_se(fit: FittedCalibration, x: np.ndarray) -> np.ndarray:
    """Error of an inverse prediction: se of f(x) divided by |f'(x)|."""
    x = np.asarray(x, dtype=float)
    slope = np.abs(fit.derivative(x))
    with np.errstate(divide="ignore", invalid="ignore"):
        se = prediction_se(fit, x) / slope
    se[~np.isfinite(se)] = np.nan
    return se
