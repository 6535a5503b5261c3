"""
Extracting results from fitted single trial models.
"""

import warnings
from collections import namedtuple
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from .design import LICENSED_ENGINE, MIXED_ENGINE, SPATIAL_ENGINE
from .errors import (
    ColumnNotFoundError,
    KeepColumnWarning,
    MissingStandardErrorError,
    UnsupportedStatisticError,
)
from .fitting import FitResult
from .trial_data import TrialData, create_td, set_meta
from .utils import as_list

Capability = namedtuple('Capability', ['mode', 'engines', 'kind'])

# mode None: either effect mode; engines None: all engines
CAPABILITIES = {
    'BLUEs': Capability('fixed', None, 'genotype'),
    'seBLUEs': Capability('fixed', None, 'genotype'),
    'BLUPs': Capability('random', None, 'genotype'),
    'seBLUPs': Capability('random', None, 'genotype'),
    'ranEf': Capability('random', None, 'genotype'),
    'heritability': Capability('random', None, 'scalar'),
    'varGen': Capability('random', None, 'scalar'),
    'CV': Capability('random', None, 'scalar'),
    'rDfR': Capability('random', None, 'scalar'),
    'rDfF': Capability('fixed', None, 'scalar'),
    'varErr': Capability(None, None, 'scalar'),
    'varCompF': Capability('fixed', (MIXED_ENGINE, LICENSED_ENGINE), 'series'),
    'varCompR': Capability('random', None, 'series'),
    'varSpat': Capability('random', (SPATIAL_ENGINE,), 'series'),
    'effDim': Capability(None, (SPATIAL_ENGINE,), 'series'),
    'ratEffDim': Capability(None, (SPATIAL_ENGINE,), 'series'),
    'fitted': Capability('fixed', None, 'observation'),
    'residF': Capability('fixed', None, 'observation'),
    'stdResF': Capability('fixed', None, 'observation'),
    'rMeans': Capability('random', None, 'observation'),
    'residR': Capability('random', None, 'observation'),
    'stdResR': Capability('random', None, 'observation'),
    'sed': Capability('fixed', (MIXED_ENGINE, LICENSED_ENGINE), 'summary'),
    'lsd': Capability('fixed', (MIXED_ENGINE, LICENSED_ENGINE), 'summary'),
    'wald': Capability('fixed', (MIXED_ENGINE, LICENSED_ENGINE), 'summary'),
}

TD_STATISTICS = ('BLUEs', 'seBLUEs', 'BLUPs', 'seBLUPs')

# statistics computed from the covariance matrix of the BLUEs
COVARIANCE_STATISTICS = ('sed', 'lsd', 'wald')

LSD_ALPHA = 0.05


def _by_genotype(table: pd.DataFrame, column: str) -> pd.Series:
    return pd.Series(table[column].to_numpy(), index=list(table['genotype']))


def _cv(fit) -> float:
    mean = fit.data[fit.trait].mean()
    return 100 * np.sqrt(fit.var_err) / abs(mean) if mean != 0 else np.nan


def _lsd(fit) -> Dict[str, float]:
    quantile = stats.t.ppf(1 - LSD_ALPHA / 2, fit.df_residual)
    return {key: quantile * value for key, value in fit.sed().items()}


_EXTRACTORS = {
    'BLUEs': lambda fit: _by_genotype(fit.blues(), 'value'),
    'seBLUEs': lambda fit: _by_genotype(fit.blues(), 'se'),
    'BLUPs': lambda fit: _by_genotype(fit.blups(), 'value'),
    'seBLUPs': lambda fit: _by_genotype(fit.blups(), 'se'),
    'ranEf': lambda fit: fit.genotype_effects(),
    'heritability': lambda fit: fit.heritability(),
    'varGen': lambda fit: fit.var_gen,
    'CV': _cv,
    'rDfR': lambda fit: fit.df_residual,
    'rDfF': lambda fit: fit.df_residual,
    'varErr': lambda fit: fit.var_err,
    'varCompF': lambda fit: fit.var_comp(),
    'varCompR': lambda fit: fit.var_comp(),
    'varSpat': lambda fit: fit.var_spat(),
    'effDim': lambda fit: fit.eff_dim(),
    'ratEffDim': lambda fit: fit.rat_eff_dim(),
    'fitted': lambda fit: fit.fitted(),
    'residF': lambda fit: fit.residuals(),
    'stdResF': lambda fit: fit.std_residuals(),
    'rMeans': lambda fit: fit.fitted(),
    'residR': lambda fit: fit.residuals(),
    'stdResR': lambda fit: fit.std_residuals(),
    'sed': lambda fit: fit.sed(),
    'lsd': _lsd,
    'wald': lambda fit: fit.wald(),
}


def _traits_without_covariance(statistic: str, result: FitResult) -> List[str]:
    if statistic not in COVARIANCE_STATISTICS:
        return []
    return [trait for trait, fit in result.models_fixed.items() if not fit.has_blue_covariance]


def check_statistic(statistic: str, result: FitResult) -> None:
    """
    Raise UnsupportedStatisticError when statistic is not available for result.
    """
    if statistic not in CAPABILITIES:
        raise UnsupportedStatisticError(
            f"Unknown statistic '{statistic}'. Statistic must be one of {list(CAPABILITIES)}")
    capability = CAPABILITIES[statistic]
    if capability.mode is not None and capability.mode not in result.effect_modes:
        raise UnsupportedStatisticError(
            f"{statistic} requires genotype fitted as {capability.mode} "
            f"(trial {result.trial})")
    if capability.engines is not None and result.engine not in capability.engines:
        raise UnsupportedStatisticError(
            f"{statistic} requires engine {' or '.join(capability.engines)}, "
            f"trial {result.trial} was fitted with {result.engine}")
    missing = _traits_without_covariance(statistic, result)
    if missing:
        raise UnsupportedStatisticError(
            f"{statistic} requires BLUE covariances, which engine {result.engine} did not "
            f"provide for traits {missing} in trial {result.trial}")


def available_statistics(result: FitResult) -> List[str]:
    """Statistics that can be extracted from result."""
    available = []
    for statistic, capability in CAPABILITIES.items():
        if capability.mode is not None and capability.mode not in result.effect_modes:
            continue
        if capability.engines is not None and result.engine not in capability.engines:
            continue
        if _traits_without_covariance(statistic, result):
            continue
        available.append(statistic)
    return available


def _models_for(statistic: str, result: FitResult, traits: List[str]) -> Dict[str, object]:
    mode = CAPABILITIES[statistic].mode
    if mode is None:
        mode = 'random' if 'random' in result.effect_modes else 'fixed'
    models = result.models(mode)
    return {trait: models[trait] for trait in traits if trait in models}


def _genotype_keep(data: pd.DataFrame, keep: List[str], trial: str) -> Dict[str, pd.Series]:
    """Keep columns with a single value per genotype, as genotype -> value."""
    values = {}
    for col in keep:
        n_values = data.groupby('genotype', observed=True)[col].nunique(dropna=False)
        if (n_values > 1).any():
            warnings.warn(f"Column '{col}' has multiple values per genotype in trial {trial} "
                          f"and is dropped", KeepColumnWarning)
            continue
        first = data.groupby('genotype', observed=True)[col].first()
        values[col] = pd.Series(first.to_numpy(), index=list(first.index))
    return values


def _genotype_table(per_trait: Dict[str, pd.Series], result: FitResult,
                    keep: List[str]) -> pd.DataFrame:
    table = pd.DataFrame(per_trait)
    table.index.name = 'genotype'
    table = table.reset_index()
    table.insert(1, 'trial', result.trial)
    for position, (col, values) in enumerate(
            _genotype_keep(result.data, keep, result.trial).items(), start=2):
        table.insert(position, col, table['genotype'].map(values))
    return table


def _observation_table(per_trait: Dict[str, pd.Series], result: FitResult,
                       keep: List[str]) -> pd.DataFrame:
    data = result.data
    columns = {'genotype': data['genotype'], 'trial': pd.Series(result.trial, index=data.index)}
    for col in keep:
        columns[col] = data[col]
    columns.update(per_trait)
    return pd.DataFrame(columns, index=data.index)


def _extract_statistic(statistic: str, result: FitResult, traits: List[str],
                       keep: List[str]):
    values = {trait: _EXTRACTORS[statistic](fit)
              for trait, fit in _models_for(statistic, result, traits).items()}
    kind = CAPABILITIES[statistic].kind
    if kind == 'genotype':
        return _genotype_table(values, result, keep)
    if kind == 'observation':
        return _observation_table(values, result, keep)
    if kind == 'scalar':
        return pd.Series(values, index=list(values), dtype=float)
    if kind == 'summary':
        return pd.DataFrame.from_dict(values, orient='index')
    return pd.DataFrame(values)


def _as_results(fits) -> Dict[str, FitResult]:
    if isinstance(fits, FitResult):
        return {fits.trial: fits}
    return dict(fits)


def extract_sta(
    fits: Union[FitResult, Dict[str, FitResult]],
    what: Union[str, Iterable[str]] = "all",
    keep: Optional[Union[str, Iterable[str]]] = None,
    trials: Optional[Union[str, Iterable[str]]] = None,
    traits: Optional[Union[str, Iterable[str]]] = None
) -> Dict[str, Dict[str, object]]:
    """
    Extract statistics from fitted models.

    Parameters
    ----------
    fits : FitResult or dict of FitResult
        Output of `fit_td`
    what : str or list of str, default="all"
        Statistics to extract, see CAPABILITIES. "all" extracts every
        statistic available for the effect modes and engine of each trial.
    keep : str or list of str, optional
        Data columns to add to genotype and observation tables. On
        genotype tables a column is only kept when it has a single value
        per genotype; other columns are dropped with a KeepColumnWarning.
    trials, traits : str or list of str, optional
        Subset of trials and traits, all by default

    Returns
    -------
    dict
        Trial -> statistic -> result. Genotype statistics are DataFrames
        with columns genotype, trial, keep columns and one column per
        trait; observation statistics have one row per plot; scalar
        statistics are Series indexed by trait; variance components and
        effective dimensions are DataFrames with one column per trait;
        sed, lsd and wald are DataFrames with one row per trait.

    Examples
    --------
    >>> extracted = extract_sta(fits, what=['BLUEs', 'seBLUEs'])
    >>> extracted['E1']['BLUEs'].head()
    """
    results = _as_results(fits)
    selected = as_list(trials) or list(results)
    unknown = [trial for trial in selected if trial not in results]
    if unknown:
        raise KeyError(f"Trials {unknown} not present in fits")
    keep = [col for col in as_list(keep) if col not in ('genotype', 'trial')]

    extracted = {}
    for trial in selected:
        result = results[trial]
        missing_cols = [col for col in keep if col not in result.data.columns]
        if missing_cols:
            raise ColumnNotFoundError(f"Keep columns {missing_cols} not found in trial {trial}")
        statistics = available_statistics(result) if what == "all" else as_list(what)
        for statistic in statistics:
            check_statistic(statistic, result)
        trial_traits = as_list(traits) or result.traits
        extracted[trial] = {statistic: _extract_statistic(statistic, result, trial_traits, keep)
                            for statistic in statistics}
    return extracted


def sta_to_td(
    fits: Union[FitResult, Dict[str, FitResult]],
    what: Union[str, Iterable[str]] = ("BLUEs",),
    add_wt: bool = False,
    keep: Optional[Union[str, Iterable[str]]] = None,
    trials: Optional[Union[str, Iterable[str]]] = None,
    traits: Optional[Union[str, Iterable[str]]] = None
) -> TrialData:
    """
    Convert genotype statistics into a new TrialData.

    Parameters
    ----------
    fits : FitResult or dict of FitResult
        Output of `fit_td`
    what : str or list of str, default=("BLUEs",)
        Any of BLUEs, seBLUEs, BLUPs, seBLUPs. With one statistic the
        trait names are kept; with several, columns are named
        <statistic>_<trait>.
    add_wt : bool, default=False
        Add weight columns wt_<trait> = 1 / se^2, from seBLUEs when
        selected, otherwise from seBLUPs
    keep : str or list of str, optional
        Columns to carry over, see `extract_sta`
    trials, traits : str or list of str, optional
        Subset of trials and traits

    Returns
    -------
    TrialData
        One row per genotype per trial, with the metadata of the fitted
        trials
    """
    what = as_list(what)
    invalid = [statistic for statistic in what if statistic not in TD_STATISTICS]
    if invalid:
        raise UnsupportedStatisticError(
            f"Statistics {invalid} cannot be converted. Choose from {TD_STATISTICS}")
    se_statistic = None
    if add_wt:
        se_statistic = next((stat for stat in ('seBLUEs', 'seBLUPs') if stat in what), None)
        if se_statistic is None:
            raise MissingStandardErrorError(
                "Weights require seBLUEs or seBLUPs in what")

    extracted = extract_sta(fits, what=what, keep=keep, trials=trials, traits=traits)
    keep = as_list(keep)
    results = _as_results(fits)

    frames = []
    for trial, statistics in extracted.items():
        merged = None
        for statistic in what:
            table = statistics[statistic]
            id_cols = [col for col in table.columns
                       if col in ('genotype', 'trial') or col in keep]
            if len(what) > 1:
                trait_cols = [col for col in table.columns if col not in id_cols]
                table = table.rename(columns={trait: f"{statistic}_{trait}" for trait in trait_cols})
            merged = table if merged is None else merged.merge(table, on=id_cols, how='outer')
        if se_statistic is not None:
            se_table = statistics[se_statistic]
            for trait in results[trial].traits:
                if trait in se_table.columns:
                    se = _by_genotype(se_table, trait)
                    merged[f"wt_{trait}"] = 1 / merged['genotype'].map(se) ** 2
        frames.append(merged)

    data = pd.concat(frames, ignore_index=True)
    td = create_td(data, genotype='genotype', trial='trial')
    tables = {}
    for trial in td.trials:
        table = td.table(trial)
        carried = {canon: orig for canon, orig in results[trial].renamed.items()
                   if canon in table.data.columns}
        tables[trial] = replace(table, renamed={**table.renamed, **carried})
    td = TrialData(tables)
    meta = pd.DataFrame.from_dict({trial: results[trial].meta for trial in extracted},
                                  orient='index')
    if len(meta.columns) > 0:
        td = set_meta(td, meta)
    return td
