#!/usr/bin/env python3
"""
pySTA Example: Single Trial Analysis of a Multi-Trial Dataset

This script demonstrates the key steps of a single trial analysis:

1. Organize plot data per trial
2. Fit models per trial and trait
3. Extract BLUEs, BLUPs and heritabilities
4. Detect outlying observations
5. Convert BLUEs to trial data for a multi-trial analysis
"""

import warnings
import sys
import os

# Add parent directory to path to find pysta package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pysta import (
    create_td, describe_td, extract_sta, fit_td, get_meta, outlier_sta, set_meta, sta_to_td
)
from pysta.datasets import generate_trial_data
from pysta.errors import FitConvergenceWarning

warnings.filterwarnings('ignore', category=FutureWarning)


def main():
    """Main example of a single trial analysis."""

    print("=" * 80)
    print("pySTA Example: Single Trial Analysis")
    print("=" * 80)

    # -------------------------------------------------------------------------
    # 1. Organize data per trial
    # -------------------------------------------------------------------------
    print("\n1. Creating trial data...")

    data = generate_trial_data()
    td = create_td(data, genotype='seed', trial='field', rep_id='rep',
                   sub_block='block', row_coord='Y', col_coord='X',
                   row_id='Y', col_id='X', tr_location='Wageningen')
    print(f"   - Trials: {', '.join(td.trials)}")

    meta = get_meta(td)
    meta['trDesign'] = ['rowcol', 'res.ibd', 'rcbd']
    td = set_meta(td, meta)
    print(get_meta(td)[['trLocation', 'trDesign']])

    print("\n   Summary of trial E1:")
    print(describe_td(td, 'E1', traits=['t1', 't2']).round(2))

    # -------------------------------------------------------------------------
    # 2. Fit models
    # -------------------------------------------------------------------------
    print("\n2. Fitting single trial models...")

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always', FitConvergenceWarning)
        fits = fit_td(td, traits=['t1', 't2'])
    for result in fits.values():
        print(f"   - {result.trial}: design {result.design}, engine {result.engine}, "
              f"fixed {list(result.models_fixed)}, random {list(result.models_random)}")
    for warning in caught:
        print(f"   ! {warning.message}")

    # -------------------------------------------------------------------------
    # 3. Extract results
    # -------------------------------------------------------------------------
    print("\n3. Extracting results...")

    extracted = extract_sta(fits, what=['BLUEs', 'seBLUEs', 'heritability'])
    for trial, statistics in extracted.items():
        print(f"\n   Trial {trial}, heritability:")
        print(statistics['heritability'].round(3).to_string())
    print("\n   BLUEs of trial E1:")
    print(extracted['E1']['BLUEs'].head().round(2))

    # -------------------------------------------------------------------------
    # 4. Outliers
    # -------------------------------------------------------------------------
    print("\n4. Detecting outliers...")

    report = outlier_sta(fits, r_limit=2, common_factors='subBlock')
    print(f"   - Outliers flagged: {report.n_outliers}")
    if report.outliers is not None:
        print(report.outliers.round(3))

    # -------------------------------------------------------------------------
    # 5. Back to trial data
    # -------------------------------------------------------------------------
    print("\n5. Converting BLUEs to trial data...")

    td_blues = sta_to_td(fits, what=['BLUEs', 'seBLUEs'], add_wt=True)
    print(f"   - Trials: {', '.join(td_blues.trials)}")
    print(td_blues['E1'].head().round(3))

    print("\n" + "=" * 80)
    print("Analysis complete")
    print("=" * 80)


if __name__ == "__main__":
    main()
