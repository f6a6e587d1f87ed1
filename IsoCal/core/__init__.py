"""
Core data model and numerics for the calibration engine.

Modules:
- config: Column naming and fit/outlier configuration
- errors: DataError, SchemaError, FitInvalid, SelectionError
- models: Model spec variants and formula parsing
- datatypes: PeakTable, FittedCalibration, CalibrationRange, CalibrationSet
- fitting: Least-squares and LOWESS fits, diagnostics, prediction error
- functional: pipe_run and keyed parallel map
- dataIO: CSV load/save
"""
