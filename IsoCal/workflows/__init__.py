"""
IsoCal workflows module.

Workflow functions for the individual calibration steps. Each takes a
PeakTable and returns a new one (plus results where relevant), so steps can
be chained in pipelines.
"""

from .standards import (
    match_standards,
    add_deviation,
    derive_column,
)
from .outliers import (
    mark_outliers,
    mark_explicit_outliers,
)
from .calibration_fitting import (
    prepare_for_calibration,
    fit_calibrations,
    filter_calibrations,
    select_calibration,
)
from .calibration_apply import (
    apply_calibration,
    evaluate_calibration_range,
)

__all__ = [
    'match_standards',
    'add_deviation',
    'derive_column',
    'mark_outliers',
    'mark_explicit_outliers',
    'prepare_for_calibration',
    'fit_calibrations',
    'filter_calibrations',
    'select_calibration',
    'apply_calibration',
    'evaluate_calibration_range',
]
