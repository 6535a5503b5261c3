"""
General linear mixed model engine built on statsmodels.

Models without random terms are fitted by OLS. Models with random terms
are fitted by MixedLM with all observations in a single group and every
random term, genotype included, as a variance component, which gives
crossed random effects. Design matrices are built with patsy and
passed to the statsmodels array interface.
"""

from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import PatsyError, dmatrices, dmatrix
from statsmodels.regression.mixed_linear_model import VCSpec

from ..control import STAControl
from ..design import MIXED_ENGINE, ModelFormula, ResidualStructure, term_name
from ..errors import ModelFitError
from ..utils import compute_aic_bic, genotype_frame, marginal_means
from .base import Engine, EngineFit, model_frame


def _patsy_term(term) -> str:
    return ":".join(f"C({col})" for col in term)


def fixed_formula(formula: ModelFormula) -> str:
    """Patsy formula of the fixed part."""
    terms = [] if formula.genotype_random else ["C(genotype)"]
    terms.extend(_patsy_term(term) for term in formula.fixed)
    return f'Q("{formula.trait}") ~ ' + (" + ".join(terms) if terms else "1")


def vc_formula(formula: ModelFormula) -> dict:
    """Variance component formulas of the random part."""
    vc = {}
    if formula.genotype_random:
        vc['genotype'] = "0 + C(genotype)"
    for term in formula.random:
        vc[term_name(term)] = "0 + " + _patsy_term(term)
    return vc


def vc_spec(vc: dict, frame: pd.DataFrame) -> VCSpec:
    """Variance component matrices for a single group holding all observations."""
    names, colnames, mats = [], [], []
    for name, term_formula in vc.items():
        Z = dmatrix(term_formula, frame, return_type='dataframe')
        names.append(name)
        colnames.append([list(Z.columns)])
        mats.append([Z.to_numpy()])
    return VCSpec(names, colnames, mats)


class MixedModelFit(EngineFit):
    """Fit produced by the statsmodels engine."""

    engine = MIXED_ENGINE

    def __init__(self, formula, data, frame, result, mixed: bool):
        super().__init__(formula, data)
        self.frame = frame
        self.result = result
        self.mixed = mixed
        self.levels = list(frame['genotype'].cat.categories)

        model = result.model
        self.k_fe = model.k_fe if mixed else model.exog.shape[1]
        self.X = np.asarray(model.exog)
        self.beta = np.asarray(result.params)[:self.k_fe]
        self.cov_beta = np.asarray(result.cov_params())[:self.k_fe, :self.k_fe]

    def fitted_values(self) -> pd.Series:
        return pd.Series(np.asarray(self.result.fittedvalues), index=self.frame.index)

    def var_comp(self) -> pd.Series:
        comp = {}
        if self.mixed:
            comp.update(zip(self.result.model.exog_vc.names, np.asarray(self.result.vcomp)))
        comp['residual'] = float(self.result.scale)
        return pd.Series(comp, dtype=float)

    def _n_par(self) -> int:
        return self.k_fe + len(self.var_comp())

    @property
    def aic(self) -> float:
        if not self.mixed:
            return float(self.result.aic)
        return compute_aic_bic(-2 * self.result.llf, self._n_par(), len(self.frame))[0]

    @property
    def bic(self) -> float:
        if not self.mixed:
            return float(self.result.bic)
        return compute_aic_bic(-2 * self.result.llf, self._n_par(), len(self.frame))[1]

    @property
    def df_residual(self) -> float:
        return float(len(self.frame) - self.k_fe)

    def _geno_cols(self):
        return [i for i, name in enumerate(self.result.model.exog_names[:self.k_fe])
                if name.startswith("C(genotype)")]

    def _blue_moments(self):
        self._require_fixed('BLUEs')
        return marginal_means(self.X, self._geno_cols(), len(self.levels), self.beta,
                              self.cov_beta)

    def blues(self) -> pd.DataFrame:
        values, cov = self._blue_moments()
        return genotype_frame(self.levels, values, np.sqrt(np.diag(cov)))

    def blue_covariance(self) -> pd.DataFrame:
        _, cov = self._blue_moments()
        return pd.DataFrame(cov, index=self.levels, columns=self.levels)

    def _genotype_random_effects(self):
        """Predicted genotype effects and their conditional variances."""
        self._require_random('Genotype effects')
        effects = next(iter(self.result.random_effects.values()))
        cov = np.asarray(next(iter(self.result.random_effects_cov.values())))
        prefix = "genotype[C(genotype)["
        by_name = {str(level): level for level in self.levels}
        values, variances = {}, {}
        for pos, label in enumerate(effects.index):
            if label.startswith(prefix):
                level = by_name[label[len(prefix):-2]]
                values[level] = float(effects.iloc[pos])
                variances[level] = float(cov[pos, pos])
        return (pd.Series(values).reindex(self.levels),
                pd.Series(variances).reindex(self.levels))

    def genotype_effects(self) -> pd.Series:
        return self._genotype_random_effects()[0]

    def blups(self) -> pd.DataFrame:
        effects, variances = self._genotype_random_effects()
        mean = self.X.mean(axis=0) @ self.beta
        return genotype_frame(self.levels, mean + effects.to_numpy(), np.sqrt(variances.to_numpy()))


class MixedModelEngine(Engine):
    """Linear mixed models via statsmodels OLS and MixedLM."""

    name = MIXED_ENGINE

    def fit(self, formula: ModelFormula, data: pd.DataFrame, control: STAControl,
            residual: Optional[ResidualStructure] = None) -> MixedModelFit:
        if residual is not None:
            raise ValueError("The mixedlm engine does not fit residual covariance structures")
        if formula.spatial:
            raise ValueError("The mixedlm engine does not fit spatial terms")
        frame = model_frame(formula, data)
        if len(frame) == 0:
            raise ModelFitError(f"No observations for trait {formula.trait}")

        vc = vc_formula(formula)
        if control.monitoring:
            print(f"Fitting {formula} with statsmodels")
        try:
            y, X = dmatrices(fixed_formula(formula), frame, return_type='dataframe')
            if not vc:
                result = sm.OLS(y, X).fit()
            else:
                model = sm.MixedLM(y, X, groups=np.ones(len(frame)), exog_vc=vc_spec(vc, frame))
                result = model.fit(reml=control.reml, method="lbfgs", maxiter=control.max_iter)
        except (np.linalg.LinAlgError, ValueError, PatsyError) as err:
            raise ModelFitError(f"statsmodels failed for {formula}: {err}") from err

        if vc and not result.converged:
            raise ModelFitError(f"MixedLM did not converge for {formula}")
        return MixedModelFit(formula, data, frame, result, mixed=bool(vc))
