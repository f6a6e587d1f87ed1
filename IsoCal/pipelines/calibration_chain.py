"""
Multi-stage calibration chain.

Stages run strictly in sequence (drift -> linearity -> scale -> mass, or any
caller ordering). Each stage is two explicit steps:

    fit_stage(name)            fit the candidate specs, filter degenerate fits
    apply_stage(name, label)   apply the caller's chosen calibration

A stage reads the frozen output of the previous stage. Recomputing a stage
never re-runs earlier stages and drops the outputs of later ones, which then
have to be rerun explicitly.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from IsoCal.core.config import FitConfig
from IsoCal.core.datatypes import CalibrationRange, CalibrationSet, FittedCalibration, GroupKey, PeakTable
from IsoCal.core.errors import SelectionError
from IsoCal.core.models import ModelSpec
from IsoCal.workflows.calibration_apply import (
    apply_calibration,
    evaluate_calibration_range,
    in_range_column,
    pred_column,
)
from IsoCal.workflows.calibration_fitting import filter_calibrations, fit_calibrations, in_calib_column
from IsoCal.workflows.outliers import RowFilter
from IsoCal.workflows.standards import derive_column


@dataclass(frozen=True)
class CalibrationStage:
    """
    One calibration stage.

    Attributes:
        name: Stage name (prefix of the <stage>_in_calib / <stage>_in_range columns)
        models: Candidate specs, labels unique within the stage
        use: Fitting row filter; None -> standards peaks that are not outliers
        select: Label of the caller's chosen model; None -> stop after fitting
        calculate_error: Append the propagated prediction error
        invert: Predict the predictor from the response
        predict_column: Override for the <target>_pred column name
        derive: Columns computed after application, name -> pandas expression
        config: Fit configuration
    """
    name: str
    models: Tuple[ModelSpec, ...]
    use: RowFilter = None
    select: Optional[str] = None
    calculate_error: bool = False
    invert: bool = False
    predict_column: Optional[str] = None
    derive: Mapping[str, str] = field(default_factory=dict)
    config: FitConfig = FitConfig()


@dataclass(frozen=True)
class StageResult:
    stage: CalibrationStage
    input: PeakTable
    fitted: PeakTable                      # input + <stage>_in_calib
    calibrations: CalibrationSet
    selection: Tuple[FittedCalibration, ...] = ()
    ranges: Tuple[CalibrationRange, ...] = ()
    output: Optional[PeakTable] = None

    @property
    def applied(self) -> bool:
        return self.output is not None


# ============================================================================
# PURE STAGE FUNCTIONS
# ============================================================================

def fit_stage(table: PeakTable, stage: CalibrationStage) -> Tuple[PeakTable, CalibrationSet]:
    """Fit and filter the candidate models of a stage."""
    fitted, fits = fit_calibrations(table, stage.name, stage.models,
                                    use=stage.use, config=stage.config)
    return fitted, filter_calibrations(stage.name, fits)


def apply_stage(fitted: PeakTable,
                stage: CalibrationStage,
                selection: Sequence[FittedCalibration]) -> Tuple[PeakTable, List[CalibrationRange]]:
    """Apply the selected fit(s), tag the calibration range, derive follow-up columns."""
    table = apply_calibration(fitted, selection,
                              calculate_error=stage.calculate_error,
                              invert=stage.invert,
                              predict_column=stage.predict_column)
    values = None
    if stage.invert:
        spec = selection[0].spec
        values = stage.predict_column or pred_column(spec.predictor)
    table, ranges = evaluate_calibration_range(table, selection, values=values)
    for name, expression in stage.derive.items():
        table = derive_column(table, name, expression, stage=stage.name)
    return table, ranges


# ============================================================================
# CHAIN
# ============================================================================

class CalibrationChain:
    """
    Sequential calibration stages over one peak table.

    Example:
        >>> chain = CalibrationChain(table, [drift, scale])
        >>> cands = chain.fit_stage("drift")
        >>> print(cands.summary())
        >>> chain.apply_stage("drift", "linear")
        >>> chain.run_stage("scale", "linear")
        >>> result = chain.output
    """

    def __init__(self, table: PeakTable, stages: Sequence[CalibrationStage]):
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Stage names must be unique, got {names}")
        self.initial = table
        self.stages = list(stages)
        self._results: Dict[str, StageResult] = {}

    def __repr__(self) -> str:
        done = [f"{s.name}{'*' if self._is_applied(s.name) else ''}" for s in self.stages]
        return f"CalibrationChain(stages={done}, n_rows={len(self.initial)})"

    # --- lookup ---

    def _index(self, name: str) -> int:
        for i, stage in enumerate(self.stages):
            if stage.name == name:
                return i
        raise KeyError(f"Unknown stage '{name}' (stages: {[s.name for s in self.stages]})")

    def _is_applied(self, name: str) -> bool:
        result = self._results.get(name)
        return result is not None and result.applied

    def stage(self, name: str) -> CalibrationStage:
        return self.stages[self._index(name)]

    def result(self, name: str) -> StageResult:
        if name not in self._results:
            raise KeyError(f"Stage '{name}' has not been fit")
        return self._results[name]

    def calibrations(self, name: str) -> CalibrationSet:
        return self.result(name).calibrations

    def input_for(self, name: str) -> PeakTable:
        """Frozen output of the previous stage (the initial table for the first)."""
        i = self._index(name)
        if i == 0:
            return self.initial
        previous = self.stages[i - 1].name
        if not self._is_applied(previous):
            raise RuntimeError(f"Stage '{name}' needs stage '{previous}' to be applied first")
        return self._results[previous].output

    @property
    def output(self) -> PeakTable:
        """Table after the last applied stage."""
        for stage in reversed(self.stages):
            if self._is_applied(stage.name):
                return self._results[stage.name].output
        return self.initial

    # --- steps ---

    def _invalidate_from(self, name: str) -> None:
        for stage in self.stages[self._index(name):]:
            self._results.pop(stage.name, None)

    def fit_stage(self, name: str) -> CalibrationSet:
        """Fit a stage's candidates on the previous stage's output."""
        stage = self.stage(name)
        table = self.input_for(name)
        self._invalidate_from(name)

        print(f"\n[{self._index(name) + 1}/{len(self.stages)}] Fitting stage '{name}'...")
        fitted, calibrations = fit_stage(table, stage)
        n_used = int(fitted[in_calib_column(name)].sum())
        print(f"  ✓ {len(calibrations)} valid fit(s) on {n_used} calibration rows")
        for fit in calibrations.rejected.values():
            print(f"  ⚠ Rejected {fit}")

        self._results[name] = StageResult(stage=stage, input=table, fitted=fitted,
                                          calibrations=calibrations)
        return calibrations

    def select(self, name: str, label: str, group: GroupKey = None) -> FittedCalibration:
        """Explicit selection of one fitted calibration of a stage."""
        return self.calibrations(name).select(label, group=group)

    def apply_stage(self, name: str, label: Optional[str] = None) -> PeakTable:
        """
        Apply the chosen calibration of a fitted stage.

        Args:
            name: Stage name
            label: Chosen model label (defaults to the stage's ``select``)
        """
        result = self.result(name)
        label = label or result.stage.select
        if label is None:
            raise SelectionError(f"No calibration selected for stage '{name}' "
                                 f"(candidates: {result.calibrations.labels})")

        # Later stages were built on the previous application
        later = self.stages[self._index(name) + 1:]
        for stage in later:
            self._results.pop(stage.name, None)

        selection = tuple(result.calibrations.select_groups(label))
        output, ranges = apply_stage(result.fitted, result.stage, selection)
        self._results[name] = replace(result, selection=selection,
                                      ranges=tuple(ranges), output=output)

        n_out = int((~output[in_range_column(name)]).sum())
        print(f"  ✓ Applied '{label}' to {len(output)} rows "
              f"({len(selection)} fit(s), {n_out} outside calibration range)")
        return output

    def run_stage(self, name: str, label: Optional[str] = None) -> PeakTable:
        self.fit_stage(name)
        return self.apply_stage(name, label)

    def run(self) -> PeakTable:
        """
        Run all stages in order, stopping at the first stage without a selection.

        The stopping stage is still fit so its candidates can be inspected.
        """
        print("\n" + "=" * 60)
        print("CALIBRATION CHAIN")
        print("=" * 60)

        for stage in self.stages:
            self.fit_stage(stage.name)
            if stage.select is None:
                print(f"\n  ⚠ Stage '{stage.name}' has no selected model; stopping for review")
                print(self.calibrations(stage.name).summary().to_string(index=False))
                break
            self.apply_stage(stage.name)

        print("\n" + "=" * 60)
        print("CALIBRATION CHAIN COMPLETE")
        print("=" * 60)
        return self.output
