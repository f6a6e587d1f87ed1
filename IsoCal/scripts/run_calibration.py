#!/usr/bin/env python3
"""
Run calibration script - Execute an IsoCal calibration chain from a config file.

This script loads a YAML configuration file, prepares the peak table
(standards matching, deviations, outlier marking) and runs the configured
calibration stages in order.

Usage:
    # Fit and apply every stage that has a selected model
    python -m IsoCal.scripts.run_calibration path/to/config.yaml

    # Only fit the stages and write their candidate summaries
    python -m IsoCal.scripts.run_calibration path/to/config.yaml --fit-only

Config layout:
    run_id: RUN42
    data:
      peaks: peaks.csv
      standards: standards.csv
      output_dir: results
    table:
      id_columns: [analysis, seq]
      group_column: type
    standards:
      by: compound
    deviations:
      - {observed: d13C, reference: true_d13C}
    outliers:
      - {column: d13C_dev, n_sd: 3}
      - {identities: [112, 117], on: analysis}
    stages:
      - name: drift
        models:
          constant: "d13C_dev ~ 1"
          linear: "d13C_dev ~ timestamp"
        select: linear
        derive: {d13C_drift: "d13C - d13C_dev_pred"}
"""

import argparse
import yaml
from pathlib import Path
from datetime import datetime
from functools import partial
from typing import List

from IsoCal.core.config import FitConfig
from IsoCal.core.dataIO import load_peak_table, load_table, save_calibrations, save_table
from IsoCal.core.datatypes import PeakTable
from IsoCal.core.functional import pipe_run
from IsoCal.core.models import spec_from_config
from IsoCal.pipelines.calibration_chain import CalibrationChain, CalibrationStage
from IsoCal.workflows.outliers import mark_explicit_outliers, mark_outliers
from IsoCal.workflows.standards import add_deviation, match_standards


def load_config(config_path: Path) -> dict:
    """Load YAML configuration file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def _resolve(path: str, base: Path) -> Path:
    path = Path(path)
    return path if path.is_absolute() else base / path


def prepare_table_from_config(config: dict, base_dir: Path = Path('.')) -> PeakTable:
    """Load the peak table and run the pre-calibration steps of the config."""
    data = config['data']
    table_cfg = config.get('table', {})

    table = load_peak_table(_resolve(data['peaks'], base_dir),
                            id_columns=table_cfg.get('id_columns', ['analysis', 'seq']),
                            group_column=table_cfg.get('group_column', 'type'))
    print(f"  ✓ Loaded {len(table)} peaks")

    if data.get('standards'):
        standards = load_table(_resolve(data['standards'], base_dir))
        table = match_standards(table, standards, by=config['standards']['by'])
        print(f"  ✓ Matched {int(table['is_std_peak'].sum())} standards peaks")

    steps = [partial(add_deviation, observed=dev['observed'], reference=dev['reference'],
                     name=dev.get('name'))
             for dev in config.get('deviations', [])]

    for rule in config.get('outliers', []):
        if 'identities' in rule:
            steps.append(partial(mark_explicit_outliers, identities=rule['identities'],
                                 on=rule.get('on')))
        else:
            steps.append(partial(mark_outliers, column=rule['column'],
                                 n_sd=rule.get('n_sd'),
                                 plus_minus_value=rule.get('plus_minus_value'),
                                 group_by=rule.get('group_by'),
                                 row_filter=rule.get('filter')))

    table = pipe_run(table, *steps)
    if 'outlier' in table:
        print(f"  ✓ {int(table['outlier'].sum())} peaks flagged as outliers")

    return table


def create_stages_from_config(config: dict) -> List[CalibrationStage]:
    """Create the calibration stages from configuration."""
    stages = []
    for entry in config.get('stages', []):
        models = tuple(spec_from_config(label, model)
                       for label, model in entry['models'].items())
        stages.append(CalibrationStage(
            name=entry['name'],
            models=models,
            use=entry.get('use'),
            select=entry.get('select'),
            calculate_error=entry.get('calculate_error', False),
            invert=entry.get('invert', False),
            predict_column=entry.get('predict_column'),
            derive=entry.get('derive', {}),
            config=FitConfig(n_workers=int(entry.get('n_workers', 1)),
                             min_df_resid=int(entry.get('min_df_resid', 1)),
                             lowess_iterations=int(entry.get('lowess_iterations', 0))),
        ))
    return stages


def save_results(chain: CalibrationChain, out_dir: Path, run_id: str = "") -> None:
    prefix = f"{run_id}_" if run_id else ""
    for stage in chain.stages:
        try:
            calibrations = chain.calibrations(stage.name)
        except KeyError:
            continue
        summary_file, coef_file = save_calibrations(calibrations, out_dir, prefix=prefix)
        print(f"  ✓ {stage.name}: {summary_file.name}, {coef_file.name}")

    table_file = save_table(chain.output, out_dir / f"{prefix}calibrated.csv")
    print(f"  ✓ Calibrated table: {table_file}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Run IsoCal calibration chain',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('config', type=Path, help='Path to YAML config file')
    parser.add_argument('--fit-only', action='store_true',
                        help='Only fit the stages (no model is applied)')
    parser.add_argument('--output', type=Path, default=None,
                        help='Output directory (overrides data.output_dir)')

    args = parser.parse_args(argv)

    print(f"Loading configuration from {args.config}")
    config = load_config(args.config)
    base_dir = args.config.parent
    run_id = config.get('run_id', '')
    out_dir = args.output or _resolve(config['data'].get('output_dir', 'results'), base_dir)

    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"\n{'='*60}")
    print(f"STARTING CALIBRATION: {run_id or 'N/A'}")
    print(f"Time: {timestamp}")
    print(f"Config: {args.config}")
    print(f"Description: {config.get('description', 'N/A')}")
    print(f"{'='*60}\n")

    table = prepare_table_from_config(config, base_dir)
    stages = create_stages_from_config(config)
    chain = CalibrationChain(table, stages)

    if args.fit_only:
        # Every stage after the first needs an applied predecessor
        if stages:
            calibrations = chain.fit_stage(stages[0].name)
            print(calibrations.summary(include_rejected=True).to_string(index=False))
        if len(stages) > 1:
            print(f"\n  ⚠ --fit-only fits the first stage only; "
                  f"'{stages[1].name}' needs '{stages[0].name}' applied")
    else:
        chain.run()

    print("\n" + "="*60)
    print("SAVING RESULTS")
    print("="*60)
    save_results(chain, out_dir, run_id=run_id)
    return chain


if __name__ == "__main__":
    main()
