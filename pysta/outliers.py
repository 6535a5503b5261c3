"""
Outlier detection on standardized residuals.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import norm

from .errors import ColumnNotFoundError, UnsupportedStatisticError
from .fitting import FitResult
from .utils import as_list


@dataclass
class OutlierReport:
    """
    Result of outlier detection.

    Attributes
    ----------
    indicator : pd.DataFrame
        One row per observation, indexed by (trial, row), one boolean
        column per trait
    outliers : pd.DataFrame or None
        Outlying observations with columns trial, genotype, trait, value,
        res, outlier, similar and the common factors. With common factors,
        observations sharing all factor values with an outlier are added
        with similar=True. None when no outliers were found.
    limits : dict
        (trial, trait) -> residual limit used
    """
    indicator: pd.DataFrame
    outliers: Optional[pd.DataFrame] = None
    limits: Dict[Tuple[str, str], float] = field(default_factory=dict)

    @property
    def n_outliers(self) -> int:
        return int(self.indicator.to_numpy().sum())


def default_r_limit(n_obs: int) -> float:
    """
    Default limit for standardized residuals.

    min(max(2, z(1 - 0.025 / n)), 4) with z the standard normal quantile
    function and n the number of observations.
    """
    if n_obs < 1:
        return 2.0
    return float(min(max(2.0, norm.ppf(1 - 0.025 / n_obs)), 4.0))


def _effect_mode(result: FitResult, effect_mode: Optional[str]) -> str:
    if effect_mode is None:
        return 'random' if 'random' in result.effect_modes else 'fixed'
    if effect_mode not in ('fixed', 'random'):
        raise ValueError("effect_mode must be 'fixed' or 'random'")
    if effect_mode not in result.effect_modes:
        raise UnsupportedStatisticError(
            f"Residuals for genotype {effect_mode} require genotype fitted as {effect_mode} "
            f"(trial {result.trial})")
    return effect_mode


def _similar_rows(data: pd.DataFrame, flagged: pd.Series, common_factors: List[str]) -> np.ndarray:
    """Rows sharing all common factor values with a flagged row."""
    keys = data.loc[flagged, common_factors].drop_duplicates()
    matched = data[common_factors].merge(keys, how='left', on=common_factors, indicator=True)
    return (matched['_merge'] == 'both').to_numpy()


def _trait_details(result: FitResult, trait: str, res: pd.Series, flagged: pd.Series,
                   common_factors: List[str]) -> pd.DataFrame:
    data = result.data
    selected = flagged.to_numpy()
    if common_factors:
        selected = selected | _similar_rows(data, flagged, common_factors)
    rows = data.loc[selected]
    detail = pd.DataFrame({
        'trial': result.trial,
        'genotype': rows['genotype'],
        'trait': trait,
        'value': rows[trait],
        'res': res[selected],
        'outlier': flagged[selected],
    }, index=rows.index)
    for factor in common_factors:
        detail[factor] = rows[factor]
    detail['similar'] = ~detail['outlier']
    return detail


def outlier_sta(
    fits: Union[FitResult, Dict[str, FitResult]],
    trials: Optional[Union[str, Iterable[str]]] = None,
    traits: Optional[Union[str, Iterable[str]]] = None,
    effect_mode: Optional[str] = None,
    r_limit: Optional[float] = None,
    common_factors: Optional[Union[str, Iterable[str]]] = None
) -> OutlierReport:
    """
    Flag observations with large standardized residuals.

    Parameters
    ----------
    fits : FitResult or dict of FitResult
        Output of `fit_td`
    trials, traits : str or list of str, optional
        Subset of trials and traits, all by default
    effect_mode : {"fixed", "random"}, optional
        Model whose residuals are used; random when fitted, else fixed
    r_limit : float, optional
        Limit on the absolute standardized residual. By default computed
        per trial and trait with `default_r_limit`.
    common_factors : str or list of str, optional
        Factors used to add observations similar to the outliers to the
        detail table

    Returns
    -------
    OutlierReport

    Examples
    --------
    >>> report = outlier_sta(fits, traits='t1', r_limit=1, common_factors='subBlock')
    >>> report.outliers[['genotype', 'res', 'similar']]
    """
    results = {fits.trial: fits} if isinstance(fits, FitResult) else dict(fits)
    selected = as_list(trials) or list(results)
    unknown = [trial for trial in selected if trial not in results]
    if unknown:
        raise KeyError(f"Trials {unknown} not present in fits")
    common_factors = as_list(common_factors)
    if r_limit is not None and r_limit <= 0:
        raise ValueError("r_limit must be positive")

    indicators = {}
    details = []
    limits = {}
    for trial in selected:
        result = results[trial]
        mode = _effect_mode(result, effect_mode)
        data = result.data
        missing_cols = [col for col in common_factors if col not in data.columns]
        if missing_cols:
            raise ColumnNotFoundError(f"Common factors {missing_cols} not found in trial {trial}")

        trial_traits = as_list(traits) or result.traits
        indicator = pd.DataFrame(False, index=data.index, columns=trial_traits)
        for trait in trial_traits:
            fit = result.model(trait, mode)
            if fit is None:
                continue
            res = fit.std_residuals()
            limit = r_limit if r_limit is not None else default_r_limit(int(data[trait].notna().sum()))
            limits[(trial, trait)] = limit
            flagged = res.abs() > limit
            indicator[trait] = flagged
            if flagged.any():
                details.append(_trait_details(result, trait, res, flagged, common_factors))
        indicators[trial] = indicator

    all_traits = []
    for frame in indicators.values():
        all_traits.extend(trait for trait in frame.columns if trait not in all_traits)
    indicator = pd.concat({trial: frame.reindex(columns=all_traits, fill_value=False)
                           for trial, frame in indicators.items()}, names=['trial', None])
    outliers = pd.concat(details, ignore_index=True) if details else None
    return OutlierReport(indicator=indicator, outliers=outliers, limits=limits)
