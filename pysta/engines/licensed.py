"""
License-gated engine with explicit residual covariance structures.

pySTA does not ship this engine. A backend, any callable with the
signature

    backend(formula, rows, residual, control) -> LicensedEngineFit

with rows the trial observations that have all model columns present,
is wrapped in a LicensedEngine and registered under the name "asreml"
with `pysta.engines.register_engine`. Until then every request routed
to the engine fails with EngineUnavailableError.
"""

from typing import Callable, Optional

import pandas as pd

from ..control import STAControl
from ..design import LICENSED_ENGINE, ModelFormula, ResidualStructure
from .base import Engine, EngineFit, model_frame


class LicensedEngineFit(EngineFit):
    """
    Fit returned by a licensed backend.

    The backend supplies the estimates; this class only exposes them
    through the common fit interface.

    Parameters
    ----------
    formula : ModelFormula
        Model that was fitted
    data : pd.DataFrame
        Full trial data
    fitted : pd.Series
        Fitted values indexed like the observations used
    var_comp : dict or pd.Series
        Variance components including 'residual'
    aic, bic : float
        Goodness of fit of the model
    df_residual : float
        Residual degrees of freedom
    blues, blups : pd.DataFrame, optional
        Columns genotype, value, se
    blue_covariance : pd.DataFrame, optional
        Covariance of the BLUEs, genotypes on both axes
    residual : ResidualStructure, optional
        Residual structure the model was fitted with
    """

    engine = LICENSED_ENGINE

    def __init__(self, formula, data, fitted, var_comp, aic, bic, df_residual,
                 blues=None, blups=None, blue_covariance=None, residual=None):
        super().__init__(formula, data, residual=residual)
        self._fitted = pd.Series(fitted, dtype=float)
        self._var_comp = pd.Series(var_comp, dtype=float)
        self._aic = float(aic)
        self._bic = float(bic)
        self._df_residual = float(df_residual)
        self._blues = blues
        self._blups = blups
        self._blue_covariance = blue_covariance

    def fitted_values(self) -> pd.Series:
        return self._fitted

    def var_comp(self) -> pd.Series:
        return self._var_comp

    @property
    def aic(self) -> float:
        return self._aic

    @property
    def bic(self) -> float:
        return self._bic

    @property
    def df_residual(self) -> float:
        return self._df_residual

    def blues(self) -> pd.DataFrame:
        self._require_fixed('BLUEs')
        return self._blues.copy()

    def blups(self) -> pd.DataFrame:
        self._require_random('BLUPs')
        return self._blups.copy()

    def genotype_effects(self) -> pd.Series:
        blups = self.blups()
        return pd.Series(blups['value'].to_numpy() - blups['value'].mean(),
                         index=list(blups['genotype']))

    def blue_covariance(self) -> pd.DataFrame:
        if self._blue_covariance is None:
            return super().blue_covariance()
        return self._blue_covariance

    @property
    def has_blue_covariance(self) -> bool:
        return self._blue_covariance is not None


class LicensedEngine(Engine):
    """Engine delegating to a registered licensed backend."""

    name = LICENSED_ENGINE
    supports_residual_structures = True

    def __init__(self, backend: Callable):
        self.backend = backend

    def fit(self, formula: ModelFormula, data: pd.DataFrame, control: STAControl,
            residual: Optional[ResidualStructure] = None) -> EngineFit:
        frame = model_frame(formula, data)
        fit = self.backend(formula, data.loc[frame.index], residual, control)
        fit.data = data
        return fit
