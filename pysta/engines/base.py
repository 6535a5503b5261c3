"""
Modeling engine boundary.

An engine turns a ModelFormula and the data of one trial into an
EngineFit. All fits expose the same capabilities, so results can be
extracted without knowing which engine produced them.
"""

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import pandas as pd

from ..control import STAControl
from ..design import ModelFormula, ResidualStructure
from ..utils import sed_summary, wald_test


def model_frame(formula: ModelFormula, data: pd.DataFrame) -> pd.DataFrame:
    """Rows of data with all model columns observed, unused levels dropped."""
    frame = data.loc[data[formula.columns].notna().all(axis=1), formula.columns].copy()
    for col in frame.columns:
        if isinstance(frame[col].dtype, pd.CategoricalDtype):
            frame[col] = frame[col].cat.remove_unused_categories()
    return frame


class EngineFit(ABC):
    """
    Fitted model of one trait in one trial.

    Parameters
    ----------
    formula : ModelFormula
        Model that was fitted
    data : pd.DataFrame
        Full trial data; rows not used in the fit get missing fitted values
    """

    engine: str = None

    def __init__(self, formula: ModelFormula, data: pd.DataFrame,
                 residual: Optional[ResidualStructure] = None):
        self.formula = formula
        self.data = data
        self.residual = residual

    @property
    def trait(self) -> str:
        return self.formula.trait

    @property
    def genotype_random(self) -> bool:
        return self.formula.genotype_random

    @abstractmethod
    def fitted_values(self) -> pd.Series:
        """Fitted values of the observations used in the fit."""

    @abstractmethod
    def var_comp(self) -> pd.Series:
        """Variance components, the residual variance under 'residual'."""

    @property
    @abstractmethod
    def aic(self) -> float:
        pass

    @property
    @abstractmethod
    def bic(self) -> float:
        pass

    @property
    @abstractmethod
    def df_residual(self) -> float:
        pass

    @abstractmethod
    def blues(self) -> pd.DataFrame:
        """Genotype BLUEs: columns genotype, value, se."""

    @abstractmethod
    def blups(self) -> pd.DataFrame:
        """Genotype BLUPs: columns genotype, value, se."""

    @abstractmethod
    def genotype_effects(self) -> pd.Series:
        """Predicted random genotype effects."""

    def blue_covariance(self) -> pd.DataFrame:
        """Covariance matrix of the BLUEs."""
        raise NotImplementedError(f"{type(self).__name__} does not provide BLUE covariances")

    @property
    def has_blue_covariance(self) -> bool:
        return type(self).blue_covariance is not EngineFit.blue_covariance

    def fitted(self) -> pd.Series:
        return self.fitted_values().reindex(self.data.index)

    def residuals(self) -> pd.Series:
        return self.data[self.trait] - self.fitted()

    def std_residuals(self) -> pd.Series:
        return self.residuals() / np.sqrt(self.var_err)

    @property
    def var_err(self) -> float:
        return float(self.var_comp()['residual'])

    @property
    def var_gen(self) -> float:
        self._require_random('varGen')
        return float(self.var_comp()['genotype'])

    def heritability(self) -> float:
        """Heritability as 1 - mean prediction error variance / genetic variance."""
        self._require_random('heritability')
        pev = self.blups()['se'] ** 2
        return float(1 - pev.mean() / self.var_gen)

    def sed(self):
        return sed_summary(self.blue_covariance().to_numpy())

    def wald(self):
        return wald_test(self.blues()['value'].to_numpy(), self.blue_covariance().to_numpy())

    def _require_fixed(self, what):
        if self.genotype_random:
            raise ValueError(f"{what} are only available when genotype is fitted as fixed")

    def _require_random(self, what):
        if not self.genotype_random:
            raise ValueError(f"{what} is only available when genotype is fitted as random")

    def __repr__(self):
        return f"{type(self).__name__}({self.formula})"


class Engine(ABC):
    """A backend that fits ModelFormula objects."""

    name: str = None
    supports_residual_structures = False

    @abstractmethod
    def fit(self, formula: ModelFormula, data: pd.DataFrame, control: STAControl,
            residual: Optional[ResidualStructure] = None) -> EngineFit:
        """
        Fit a model.

        Raises ModelFitError when the fit fails numerically.
        """

    def __repr__(self):
        return f"{type(self).__name__}(name='{self.name}')"
