"""
Spatial engine: mixed model with a 2-D P-spline trend over the field.

The model is fitted with the SAP (Separation of Anisotropic Penalties)
fixed point iterations of Rodriguez-Alvarez et al. (2015): mixed model
equations are solved for the current variance components and each
component is updated as u_k'u_k / ED_k, with ED_k its effective
dimension.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..basis import spatial_design
from ..control import STAControl
from ..design import SPATIAL_ENGINE, ModelFormula, ResidualStructure, term_name
from ..errors import ModelFitError
from ..utils import compute_aic_bic, genotype_frame, get_heritability, marginal_means
from .base import Engine, EngineFit, model_frame


def _factor(frame: pd.DataFrame, term) -> pd.Series:
    if len(term) == 1:
        return frame[term[0]]
    return frame[list(term)].astype(str).agg(':'.join, axis=1)


def _dummies(values: pd.Series, drop_first: bool) -> np.ndarray:
    return pd.get_dummies(values, drop_first=drop_first, dtype=float).to_numpy()


def reml_deviance(X: np.ndarray, Z: np.ndarray, y: np.ndarray, g: np.ndarray,
                  phi: float) -> float:
    """
    Minus twice the restricted log-likelihood, up to a constant.

    Parameters
    ----------
    g : np.ndarray
        Variance of each random coefficient (columns of Z)
    phi : float
        Residual variance
    """
    V = phi * np.eye(len(y)) + (Z * g) @ Z.T
    sign, logdet_v = np.linalg.slogdet(V)
    if sign <= 0:
        raise ModelFitError("Marginal covariance matrix is not positive definite")
    V_inv = np.linalg.inv(V)
    XtVX = X.T @ V_inv @ X
    eig = np.linalg.eigvalsh(XtVX)
    logdet_x = np.sum(np.log(eig[eig > 1e-10 * eig.max()]))
    P = V_inv - V_inv @ X @ np.linalg.pinv(XtVX, hermitian=True) @ X.T @ V_inv
    return float(logdet_v + logdet_x + y @ P @ y)


class SpatialEngineFit(EngineFit):
    """Fit produced by the spatial engine."""

    engine = SPATIAL_ENGINE

    def __init__(self, formula, data, frame, X, Z, blocks, beta, u, variances,
                 phi, pev, eds, rank_x, geno_cols, n_iter):
        super().__init__(formula, data)
        self.frame = frame
        self.X = X
        self.Z = Z
        self.blocks = blocks
        self.beta = beta
        self.u = u
        self.variances = variances
        self.phi = phi
        self.pev = pev
        self.eds = eds
        self.rank_x = rank_x
        self.geno_cols = geno_cols
        self.n_iter = n_iter
        self.levels = list(frame['genotype'].cat.categories)

        y = frame[formula.trait].to_numpy(dtype=float)
        rss = np.sum((y - X @ beta - Z @ u) ** 2)
        n = len(y)
        deviance = n * np.log(2 * np.pi * phi) + rss / phi
        self._aic, self._bic = compute_aic_bic(deviance, self.ed_total, n)

    @property
    def ed_total(self) -> float:
        return self.rank_x + sum(self.eds.values())

    def fitted_values(self) -> pd.Series:
        return pd.Series(self.X @ self.beta + self.Z @ self.u, index=self.frame.index)

    def var_comp(self) -> pd.Series:
        comp = pd.Series(self.variances, dtype=float)
        comp['residual'] = self.phi
        return comp

    @property
    def aic(self) -> float:
        return self._aic

    @property
    def bic(self) -> float:
        return self._bic

    @property
    def df_residual(self) -> float:
        return len(self.frame) - self.ed_total

    def var_spat(self) -> pd.Series:
        comp = self.var_comp()
        return comp[[name for name in comp.index if name.startswith('f(')]]

    def eff_dim(self) -> pd.Series:
        return pd.Series(self.eds, dtype=float)

    def rat_eff_dim(self) -> pd.Series:
        nominal = {name: stop - start for name, (start, stop) in self.blocks.items()}
        return pd.Series({name: ed / nominal[name] for name, ed in self.eds.items()}, dtype=float)

    def _blue_moments(self):
        self._require_fixed('BLUEs')
        p = self.X.shape[1]
        return marginal_means(self.X, self.geno_cols, len(self.levels), self.beta,
                              self.pev[:p, :p])

    def blues(self) -> pd.DataFrame:
        values, cov = self._blue_moments()
        return genotype_frame(self.levels, values, np.sqrt(np.diag(cov)))

    def blue_covariance(self) -> pd.DataFrame:
        _, cov = self._blue_moments()
        return pd.DataFrame(cov, index=self.levels, columns=self.levels)

    def genotype_effects(self) -> pd.Series:
        self._require_random('Genotype effects')
        start, stop = self.blocks['genotype']
        return pd.Series(self.u[start:stop], index=self.levels)

    def blups(self) -> pd.DataFrame:
        effects = self.genotype_effects()
        start, stop = self.blocks['genotype']
        p = self.X.shape[1]
        mean = self.X.mean(axis=0) @ self.beta
        se = np.sqrt(np.diag(self.pev)[p + start:p + stop])
        return genotype_frame(self.levels, mean + effects.to_numpy(), se)

    def heritability(self) -> float:
        self._require_random('heritability')
        return get_heritability(self.eds['genotype'], len(self.levels))


class SpatialEngine(Engine):
    """
    Mixed model engine with a smooth spatial trend.

    The spatial term is always part of the model; formulas without one
    are fitted with it added.
    """

    name = SPATIAL_ENGINE

    def fit(self, formula: ModelFormula, data: pd.DataFrame, control: STAControl,
            residual: Optional[ResidualStructure] = None) -> SpatialEngineFit:
        if residual is not None:
            raise ValueError("The spatial engine does not fit residual covariance structures")
        if not formula.spatial:
            formula = ModelFormula(formula.trait, formula.design, formula.fixed, formula.random,
                                   formula.genotype_random, spatial=True, nseg=control.nseg)
        frame = model_frame(formula, data)
        if len(frame) == 0:
            raise ModelFitError(f"No observations for trait {formula.trait}")
        X, Z, blocks, geno_cols = self._construct_design_matrices(formula, frame)
        y = frame[formula.trait].to_numpy(dtype=float)
        solution = self._solve(X, Z, y, blocks, control)
        return SpatialEngineFit(formula, data, frame, X, Z, blocks, geno_cols=geno_cols,
                                **solution)

    def _construct_design_matrices(self, formula: ModelFormula, frame: pd.DataFrame):
        """Fixed and random design matrices; random blocks as name -> column range."""
        n_obs = len(frame)
        X_parts = [np.ones((n_obs, 1))]
        Z_parts: List[Tuple[str, np.ndarray]] = []

        X_poly, spatial_blocks = spatial_design(
            frame['colCoord'].to_numpy(), frame['rowCoord'].to_numpy(), nseg=formula.nseg)
        X_parts.append(X_poly)
        Z_parts.extend(spatial_blocks.items())

        geno_cols = []
        if formula.genotype_random:
            Z_parts.append(('genotype', _dummies(frame['genotype'], drop_first=False)))
        else:
            start = sum(part.shape[1] for part in X_parts)
            dummies = _dummies(frame['genotype'], drop_first=True)
            geno_cols = list(range(start, start + dummies.shape[1]))
            X_parts.append(dummies)

        for term in formula.fixed:
            X_parts.append(_dummies(_factor(frame, term), drop_first=True))
        for term in formula.random:
            Z_parts.append((term_name(term), _dummies(_factor(frame, term), drop_first=False)))

        X = np.hstack(X_parts)
        blocks = {}
        start = 0
        for name, Z_block in Z_parts:
            blocks[name] = (start, start + Z_block.shape[1])
            start += Z_block.shape[1]
        Z = np.hstack([Z_block for _, Z_block in Z_parts]) if Z_parts else np.zeros((n_obs, 0))
        return X, Z, blocks, geno_cols

    def _solve(self, X, Z, y, blocks: Dict[str, Tuple[int, int]], control: STAControl):
        """SAP iterations for coefficients and variance components."""
        n_obs, p = X.shape
        rank_x = np.linalg.matrix_rank(X)
        XtX, XtZ, ZtZ = X.T @ X, X.T @ Z, Z.T @ Z
        rhs = np.concatenate([X.T @ y, Z.T @ y])

        phi = max(np.var(y), 1e-8)
        variances = {name: phi for name in blocks}
        eds = {name: 0.0 for name in blocks}
        deviance_old = np.inf

        for iteration in range(control.max_iter):
            ginv = np.zeros(Z.shape[1])
            for name, (start, stop) in blocks.items():
                ginv[start:stop] = phi / variances[name]
            C = np.block([[XtX, XtZ], [XtZ.T, ZtZ + np.diag(ginv)]])
            try:
                C_inv = np.linalg.pinv(C, hermitian=True)
            except np.linalg.LinAlgError as err:
                raise ModelFitError(f"Mixed model equations could not be solved: {err}") from err
            coef = C_inv @ rhs
            beta, u = coef[:p], coef[p:]

            residuals = y - X @ beta - Z @ u
            for name, (start, stop) in blocks.items():
                trace = np.trace(C_inv[p + start:p + stop, p + start:p + stop])
                eds[name] = max((stop - start) - phi * trace / variances[name], 1e-10)
                u_k = u[start:stop]
                variances[name] = max(u_k @ u_k / eds[name], 1e-10)
            ed_total = rank_x + sum(eds.values())
            phi = max(residuals @ residuals / max(n_obs - ed_total, 1.0), 1e-10)

            g = np.zeros(Z.shape[1])
            for name, (start, stop) in blocks.items():
                g[start:stop] = variances[name]
            deviance = reml_deviance(X, Z, y, g, phi)

            if control.monitoring:
                print(f"Iteration {iteration + 1}: Deviance = {deviance:.6f}, ED = {ed_total:.4f}")

            if abs(deviance_old - deviance) < control.tolerance:
                break
            deviance_old = deviance
        else:
            raise ModelFitError(f"No convergence after {control.max_iter} iterations")

        if not np.all(np.isfinite(coef)):
            raise ModelFitError("Non-finite coefficients")
        return {
            'beta': beta,
            'u': u,
            'variances': dict(variances),
            'phi': phi,
            'pev': phi * C_inv,
            'eds': dict(eds),
            'rank_x': rank_x,
            'n_iter': iteration + 1,
        }
