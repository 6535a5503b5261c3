"""
Example datasets for pySTA.
"""

import pandas as pd
import numpy as np
from typing import Optional


def generate_trial_data(seed: Optional[int] = 1) -> pd.DataFrame:
    """
    Generate a small multi-trial dataset.

    Three fields (E1, E2, E3) of 3 columns by 10 rows, each holding 15
    genotypes in 2 replicates and 5 blocks. Traits t1 to t4 are drawn
    independently of the design, t3 and t4 have 15 missing values each.

    Parameters
    ----------
    seed : int, optional
        Random seed for reproducibility

    Returns
    -------
    pd.DataFrame
        Columns seed (genotype), family, field (trial), rep, checkId,
        X (column), Y (row), block and traits t1-t4

    Examples
    --------
    >>> data = generate_trial_data()
    >>> td = create_td(data, genotype='seed', trial='field', rep_id='rep',
    ...                sub_block='block', row_coord='Y', col_coord='X',
    ...                row_id='Y', col_id='X')
    """
    rng = np.random.RandomState(seed)
    n_obs = 90

    data = pd.DataFrame({
        'seed': np.tile([f"G{i}" for i in range(1, 16)], 6),
        'family': [f"F{i}" for i in range(1, n_obs + 1)],
        'field': np.repeat(['E1', 'E2', 'E3'], 30),
        'rep': np.tile(np.repeat([1, 2], 15), 3),
        'checkId': rng.randint(1, 3, size=n_obs),
        'X': np.tile(np.repeat([1, 2, 3], 10), 3),
        # rows shuffled within every column of every field
        'Y': np.concatenate([rng.permutation(10) + 1 for _ in range(9)]).astype(float),
        'block': np.tile(np.arange(1, 6), 18),
        't1': rng.normal(80, 25, n_obs),
        't2': rng.normal(3, 0.5, n_obs),
        't3': rng.normal(60, 10, n_obs),
        't4': rng.normal(80, 25, n_obs),
    })

    data.loc[rng.choice(n_obs, size=15, replace=False), 't3'] = np.nan
    data.loc[rng.choice(n_obs, size=15, replace=False), 't4'] = np.nan

    return data


def generate_field_trial_data(
    n_rows: int = 20,
    n_cols: int = 15,
    n_genotypes: int = 50,
    n_reps: int = 2,
    spatial_variance: float = 100.0,
    genotype_variance: float = 50.0,
    error_variance: float = 25.0,
    missing_rate: float = 0.0,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Generate a simulated row-column field trial with a spatial trend.

    Replicates are consecutive blocks of rows; every replicate holds
    each genotype once, the remaining plots are filled with randomly
    chosen genotypes.

    Parameters
    ----------
    n_rows : int, default=20
        Number of rows in field
    n_cols : int, default=15
        Number of columns in field
    n_genotypes : int, default=50
        Number of genotypes
    n_reps : int, default=2
        Number of replicates
    spatial_variance : float, default=100.0
        Variance of spatial trend
    genotype_variance : float, default=50.0
        Variance of genotype effects
    error_variance : float, default=25.0
        Error variance
    missing_rate : float, default=0.0
        Proportion of missing observations
    seed : int, optional
        Random seed for reproducibility

    Returns
    -------
    pd.DataFrame
        Columns genotype, rep, row, col and response
    """
    if n_rows % n_reps != 0:
        raise ValueError("n_rows must be a multiple of n_reps")
    plots_per_rep = n_rows * n_cols // n_reps
    if plots_per_rep < n_genotypes:
        raise ValueError("Every replicate must have room for all genotypes")

    rng = np.random.RandomState(seed)
    n_obs = n_rows * n_cols

    rows = np.repeat(np.arange(1, n_rows + 1), n_cols)
    cols = np.tile(np.arange(1, n_cols + 1), n_rows)
    reps = np.repeat(np.arange(1, n_reps + 1), plots_per_rep)

    genotypes = []
    for _ in range(n_reps):
        fill = rng.randint(1, n_genotypes + 1, size=plots_per_rep - n_genotypes)
        genotypes.append(rng.permutation(np.concatenate([np.arange(1, n_genotypes + 1), fill])))
    genotypes = np.concatenate(genotypes)

    x_norm = (cols - 1) / max(n_cols - 1, 1)
    y_norm = (rows - 1) / max(n_rows - 1, 1)
    spatial_trend = np.sqrt(spatial_variance) * (
        0.5 * np.sin(2 * np.pi * x_norm) +
        0.3 * np.cos(2 * np.pi * y_norm) +
        0.4 * np.sin(np.pi * x_norm) * np.cos(np.pi * y_norm)
    )

    genotype_effects = rng.normal(0, np.sqrt(genotype_variance), n_genotypes)
    error = rng.normal(0, np.sqrt(error_variance), n_obs)
    response = 100 + spatial_trend + genotype_effects[genotypes - 1] + error

    if missing_rate > 0:
        missing_idx = rng.choice(n_obs, size=int(n_obs * missing_rate), replace=False)
        response[missing_idx] = np.nan

    return pd.DataFrame({
        'genotype': [f"G{g:03d}" for g in genotypes],
        'rep': reps,
        'row': rows,
        'col': cols,
        'response': response,
    })
