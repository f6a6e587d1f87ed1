"""
IsoCal: multi-stage calibration engine for isotope-ratio mass-spectrometry peak tables.

Typical usage:

    from IsoCal import PeakTable, CalibrationChain, CalibrationStage, parse_formula
"""

from IsoCal.core.config import FitConfig, OutlierConfig
from IsoCal.core.datatypes import CalibrationRange, CalibrationSet, FittedCalibration, PeakTable
from IsoCal.core.errors import DataError, FitInvalid, SchemaError, SelectionError
from IsoCal.core.models import Constant, Linear, Polynomial, Smoothed, parse_formula
from IsoCal.pipelines.calibration_chain import CalibrationChain, CalibrationStage

__all__ = [
    "FitConfig",
    "OutlierConfig",
    "PeakTable",
    "FittedCalibration",
    "CalibrationRange",
    "CalibrationSet",
    "DataError",
    "SchemaError",
    "FitInvalid",
    "SelectionError",
    "Constant",
    "Linear",
    "Polynomial",
    "Smoothed",
    "parse_formula",
    "CalibrationChain",
    "CalibrationStage",
]
