"""
Fitting single trial models.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .control import STAControl
from .design import (
    SPATIAL_ENGINE,
    ModelFormula,
    check_columns,
    default_engine,
    design_for_trial,
    prune_terms,
    resolve_design,
    spatial_candidates,
)
from .engines import Engine, EngineFit, get_engine, model_frame
from .errors import ColumnNotFoundError, FitConvergenceWarning, ModelFitError
from .trial_data import TrialData
from .utils import as_list

EFFECT_MODES = {
    'fixed': ('fixed',),
    'random': ('random',),
    'both': ('fixed', 'random'),
}


@dataclass
class FitResult:
    """
    Models fitted for one trial.

    Attributes
    ----------
    trial : str
        Trial identifier
    engine : str
        Engine used
    design : str
        Design used
    effect_modes : tuple of str
        Requested genotype effect modes, 'fixed' and/or 'random'
    traits : list of str
        Traits requested
    data : pd.DataFrame
        Trial data the models were fitted on
    renamed : dict
        Canonical -> original column names of the trial
    meta : dict
        Metadata of the trial
    models_fixed, models_random : dict
        Trait -> fit with genotype fixed / random. Traits whose fit
        failed are absent.
    spatial_choice : dict
        Trait -> comparison of residual structures, one row per
        candidate with AIC, BIC and a 'best' flag
    failures : dict
        (trait, effect mode) -> reason the fit failed
    """
    trial: str
    engine: str
    design: str
    effect_modes: Tuple[str, ...]
    traits: List[str]
    data: pd.DataFrame
    renamed: Dict[str, str] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)
    models_fixed: Dict[str, EngineFit] = field(default_factory=dict)
    models_random: Dict[str, EngineFit] = field(default_factory=dict)
    spatial_choice: Dict[str, pd.DataFrame] = field(default_factory=dict)
    failures: Dict[Tuple[str, str], str] = field(default_factory=dict)

    def models(self, effect_mode: str) -> Dict[str, EngineFit]:
        if effect_mode not in ('fixed', 'random'):
            raise ValueError("effect_mode must be 'fixed' or 'random'")
        return self.models_fixed if effect_mode == 'fixed' else self.models_random

    def model(self, trait: str, effect_mode: str) -> Optional[EngineFit]:
        return self.models(effect_mode).get(trait)

    def __repr__(self):
        return (f"FitResult(trial='{self.trial}', engine='{self.engine}', design='{self.design}', "
                f"fixed={list(self.models_fixed)}, random={list(self.models_random)})")


def _effect_modes(effect_mode: str) -> Tuple[str, ...]:
    if effect_mode not in EFFECT_MODES:
        raise ValueError(f"effect_mode must be one of {tuple(EFFECT_MODES)}, got '{effect_mode}'")
    return EFFECT_MODES[effect_mode]


def _try_fit(result: FitResult, engine: Engine, formula: ModelFormula, mode: str,
             data: pd.DataFrame, control: STAControl, residual=None) -> None:
    try:
        fit = engine.fit(formula, data, control, residual=residual)
    except ModelFitError as err:
        result.failures[(formula.trait, mode)] = str(err)
        warnings.warn(f"Fit of trait {formula.trait} in trial {result.trial} with genotype "
                      f"{mode} failed and is skipped: {err}", FitConvergenceWarning)
        return
    result.models(mode)[formula.trait] = fit


def select_residual_structure(engine: Engine, formula: ModelFormula, data: pd.DataFrame,
                              control: STAControl) -> Tuple[pd.DataFrame, Optional[EngineFit]]:
    """
    Fit every spatial residual structure and pick the best one.

    The best structure has the lowest value of control.criterion; ties
    go to the structure listed first. Candidates that fail to fit get
    missing AIC and BIC.

    Returns
    -------
    tuple
        (comparison table, fit of the best structure or None when all failed)
    """
    records = []
    fits = []
    for candidate in spatial_candidates():
        try:
            fit = engine.fit(formula, data, control, residual=candidate)
            aic, bic = fit.aic, fit.bic
        except ModelFitError:
            fit, aic, bic = None, np.nan, np.nan
        fits.append(fit)
        records.append({'spatial': candidate.label, 'row': candidate.row, 'col': candidate.col,
                        'nugget': candidate.nugget, 'AIC': aic, 'BIC': bic})
    table = pd.DataFrame(records)
    criterion = table[control.criterion].to_numpy(dtype=float)
    if np.isnan(criterion).all():
        table['best'] = False
        return table, None
    best = int(np.nanargmin(criterion))
    table['best'] = table.index == best
    return table, fits[best]


def _fit_trait(result: FitResult, engine: Engine, data: pd.DataFrame, trait: str,
               modes: Tuple[str, ...], spatial: bool, control: STAControl) -> None:
    formulas = {}
    for mode in modes:
        formula = resolve_design(result.design, trait, genotype_random=(mode == 'random'),
                                 spatial=(engine.name == SPATIAL_ENGINE), nseg=control.nseg)
        check_columns(formula, data, result.trial)
        formulas[mode] = prune_terms(formula, model_frame(formula, data))

    if control.monitoring:
        print(f"Trial {result.trial}, trait {trait}: fitting with {engine.name}")

    if not (spatial and engine.supports_residual_structures):
        for mode in modes:
            _try_fit(result, engine, formulas[mode], mode, data, control)
        return

    select_mode = 'random' if 'random' in modes else 'fixed'
    table, best = select_residual_structure(engine, formulas[select_mode], data, control)
    result.spatial_choice[trait] = table
    if best is None:
        for mode in modes:
            result.failures[(trait, mode)] = "No spatial residual structure could be fitted"
        warnings.warn(f"No spatial model could be fitted for trait {trait} in trial "
                      f"{result.trial}", FitConvergenceWarning)
        return
    result.models(select_mode)[trait] = best
    for mode in modes:
        if mode != select_mode:
            _try_fit(result, engine, formulas[mode], mode, data, control, residual=best.residual)


def fit_td(
    td: TrialData,
    traits: Union[str, Iterable[str]],
    trials: Optional[Union[str, Iterable[str]]] = None,
    design: Optional[str] = None,
    engine: Optional[str] = None,
    effect_mode: str = "both",
    spatial: bool = False,
    control: Optional[STAControl] = None
) -> Dict[str, FitResult]:
    """
    Fit single trial mixed models.

    Parameters
    ----------
    td : TrialData
        Trial data
    traits : str or list of str
        Traits to analyse
    trials : str or list of str, optional
        Trials to analyse, all trials by default
    design : str, optional
        Design for all trials, overriding the trDesign metadata
    engine : str, optional
        Engine for all trials; by default the engine of the design
    effect_mode : {"fixed", "random", "both"}, default="both"
        Whether genotype is fitted as fixed effect, random effect or both
    spatial : bool, default=False
        Compare spatial residual structures. Requires an engine that
        supports them; the spatial engine models the trend with its
        P-spline term and ignores this option.
    control : STAControl, optional
        Fitting options

    Returns
    -------
    dict
        Trial -> FitResult. A failing trait fit is absent from its
        FitResult and recorded in FitResult.failures.

    Examples
    --------
    >>> fits = fit_td(td, trials='E1', design='rowcol', traits=['t1', 't2'])
    >>> fits['E1'].models_fixed['t1'].blues().head()
    """
    control = control or STAControl()
    modes = _effect_modes(effect_mode)
    traits = as_list(traits)
    if not traits:
        raise ValueError("At least one trait must be given")
    trials = as_list(trials) or td.trials

    results = {}
    for trial in trials:
        table = td.table(trial)
        trial_design = design_for_trial(table.meta, design)
        engine_name = engine or default_engine(trial_design)
        trial_engine = get_engine(engine_name)
        if spatial and not trial_engine.supports_residual_structures and engine_name != SPATIAL_ENGINE:
            raise ValueError(f"Spatial residual structures cannot be fitted with engine '{engine_name}'")

        missing_cols = [trait for trait in traits if trait not in table.data.columns]
        if missing_cols:
            raise ColumnNotFoundError(f"Traits {missing_cols} not found in trial {trial}")

        result = FitResult(trial=trial, engine=engine_name, design=trial_design,
                           effect_modes=modes, traits=list(traits), data=table.data.copy(),
                           renamed=dict(table.renamed), meta=dict(table.meta))
        for trait in traits:
            _fit_trait(result, trial_engine, result.data, trait, modes, spatial, control)
        results[trial] = result
    return results
