from dataclasses import dataclass
from typing import Optional

# -------------------------------
# Column naming
# -------------------------------
PRED_SUFFIX = "_pred"              # <target>_pred
SE_SUFFIX = "_se"                  # <target>_pred_se
DEV_SUFFIX = "_dev"                # <observed>_dev = observed - reference
IN_CALIB_SUFFIX = "_in_calib"      # <stage>_in_calib: row used for fitting
IN_RANGE_SUFFIX = "_in_range"      # <stage>_in_range: predictor inside fit range

OUTLIER_COLUMN = "outlier"
OUTLIER_RULE_COLUMN = "outlier_rule"
OUTLIER_EXPLICIT_COLUMN = "outlier_explicit"
STD_MATCH_COLUMN = "is_std_peak"

# -------------------------------
# Table defaults
# -------------------------------
DEFAULT_ID_COLUMNS = ("analysis", "seq")
DEFAULT_GROUP_COLUMN = "type"

# Conventional IRMS stage order; any caller ordering is allowed
DEFAULT_STAGE_ORDER = ("drift", "linearity", "scale", "mass")

# LOWESS span when a formula does not give one (same as R's loess default)
DEFAULT_BANDWIDTH = 0.75


@dataclass(frozen=True)
class FitConfig:
    """Configuration for fitting one calibration stage."""
    n_workers: int = 1                 # >1 fits (spec, group) pairs on a thread pool
    min_df_resid: int = 1              # residual degrees of freedom required for a valid fit
    rank_tol: Optional[float] = None   # tolerance for the design-matrix rank check (numpy default)
    lowess_iterations: int = 0         # robustifying iterations for smoothed forms


@dataclass(frozen=True)
class OutlierConfig:
    """Rule-derived outlier marking: |x - mean| > n_sd * sd or > plus_minus_value."""
    column: str = "d13C_dev"
    n_sd: Optional[float] = None
    plus_minus_value: Optional[float] = None
    group_by: Optional[str] = None     # None -> the table's grouping key
