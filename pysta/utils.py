"""
Utility functions for pySTA.
"""

from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from scipy import stats


def get_heritability(ed_geno: float, n_geno: int, mode: str = "generalized") -> float:
    """
    Heritability from the effective dimension of the genotype term.

    Parameters
    ----------
    ed_geno : float
        Effective dimension of the random genotype term
    n_geno : int
        Number of genotypes
    mode : {"generalized", "classical"}, default="generalized"
        - "generalized": ed_geno / n_geno
        - "classical"  : ed_geno / (n_geno - 1)

    Returns
    -------
    float
        Heritability estimate
    """
    if mode not in ("generalized", "classical"):
        raise ValueError("mode must be 'generalized' or 'classical'")
    if n_geno <= 1:
        raise ValueError("n_geno must be > 1")
    if mode == "generalized":
        return ed_geno / n_geno
    return ed_geno / (n_geno - 1)


def compute_aic_bic(deviance: float, effective_dim: float, n_obs: int) -> Tuple[float, float]:
    """
    Compute AIC and BIC from model deviance.

    Parameters
    ----------
    deviance : float
        Model deviance (-2 log-likelihood)
    effective_dim : float
        Effective number of parameters
    n_obs : int
        Number of observations

    Returns
    -------
    tuple
        (AIC, BIC)
    """
    aic = deviance + 2 * effective_dim
    bic = deviance + np.log(n_obs) * effective_dim

    return aic, bic


def marginal_means(
    X: np.ndarray,
    geno_cols: List[int],
    n_levels: int,
    beta: np.ndarray,
    cov_beta: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Genotype means averaged over the other fixed effects.

    Genotype is treatment coded: the first level is the reference and
    geno_cols[i] holds the column of level i + 1.

    Returns
    -------
    tuple
        (means, covariance matrix of the means)
    """
    L = np.tile(X.mean(axis=0), (n_levels, 1))
    L[:, geno_cols] = 0.0
    for level, col in enumerate(geno_cols, start=1):
        L[level, col] = 1.0
    return L @ beta, L @ cov_beta @ L.T


def sed_summary(cov: np.ndarray) -> Dict[str, float]:
    """Minimum, mean and maximum standard error of pairwise differences."""
    variances = np.diag(cov)
    i, j = np.triu_indices(len(variances), k=1)
    sed = np.sqrt(np.maximum(variances[i] + variances[j] - 2 * cov[i, j], 0.0))
    if len(sed) == 0:
        return {'min': np.nan, 'mean': np.nan, 'max': np.nan}
    return {'min': sed.min(), 'mean': sed.mean(), 'max': sed.max()}


def wald_test(values: np.ndarray, cov: np.ndarray) -> Dict[str, float]:
    """Wald test of equality of all genotype means."""
    k = len(values)
    contrast = np.hstack([np.eye(k - 1), -np.ones((k - 1, 1))])
    diff = contrast @ values
    chi2 = float(diff @ np.linalg.pinv(contrast @ cov @ contrast.T) @ diff)
    return {'chi2': chi2, 'df': k - 1, 'pvalue': stats.chi2.sf(chi2, k - 1)}


def as_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def genotype_frame(levels, values, se) -> pd.DataFrame:
    return pd.DataFrame({
        'genotype': pd.Categorical(levels, categories=levels),
        'value': np.asarray(values, dtype=float),
        'se': np.asarray(se, dtype=float),
    })
