"""
IsoCal pipelines module.

High-level orchestration of calibration stages. Stages compose strictly in
sequence; each stage's applied output is the next stage's input.
"""

from .calibration_chain import (
    CalibrationStage,
    CalibrationChain,
    StageResult,
    fit_stage,
    apply_stage,
)

__all__ = [
    'CalibrationStage',
    'CalibrationChain',
    'StageResult',
    'fit_stage',
    'apply_stage',
]
