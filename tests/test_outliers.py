"""
Test cases for outlier detection.
"""

import pytest
import numpy as np
import pandas as pd
from scipy.stats import norm

import sys
import os
# Add parent directory to path to find pysta package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pysta.datasets import generate_trial_data
from pysta.design import resolve_design
from pysta.errors import ColumnNotFoundError, UnsupportedStatisticError
from pysta.fitting import FitResult, fit_td
from pysta.outliers import OutlierReport, default_r_limit, outlier_sta
from pysta.trial_data import create_td

from fakes import ResidualFit

OUTLIER_RES = {0: 1.69959829018086, 1: -1.16726687458344,
               5: -1.69959829018086, 6: 1.16726687458344}


def trial_fit(residuals, trial='E1'):
    """FitResult of one trial whose traits have the given standardized residuals."""
    td = create_td(generate_trial_data(), genotype='seed', trial='field', rep_id='rep',
                   sub_block='block', row_coord='Y', col_coord='X')
    data = td[trial]
    models = {}
    for trait, res in residuals.items():
        formula = resolve_design('rcbd', trait, genotype_random=False)
        models[trait] = ResidualFit(formula, data, res)
    return FitResult(trial=trial, engine='mixedlm', design='rcbd', effect_modes=('fixed',),
                     traits=list(residuals), data=data, models_fixed=models)


def small_residuals(n=30):
    return 0.5 * (-1.0) ** np.arange(n)


def with_outliers(outliers):
    res = small_residuals()
    for pos, value in outliers.items():
        res[pos] = value
    return res


class TestDefaultLimit:
    """Test the default residual limit."""

    def test_formula(self):
        """Test the normal quantile rule."""
        assert default_r_limit(30) == pytest.approx(norm.ppf(1 - 0.025 / 30))

    def test_bounds(self):
        """Test that the limit stays between 2 and 4."""
        assert default_r_limit(1) == 2.0
        assert default_r_limit(10 ** 7) == 4.0


class TestOutlierSTA:
    """Test flagging of large residuals."""

    def test_no_outliers(self):
        """Test that small residuals are not flagged with the default limit."""
        report = outlier_sta(trial_fit({'t1': with_outliers(OUTLIER_RES)}), traits='t1')

        assert isinstance(report, OutlierReport)
        assert list(report.indicator.columns) == ['t1']
        assert report.indicator['t1'].sum() == 0
        assert report.outliers is None
        assert report.limits[('E1', 't1')] == pytest.approx(default_r_limit(30))

    def test_no_outliers_multiple_traits(self):
        """Test default limit for several traits."""
        fits = trial_fit({trait: with_outliers(OUTLIER_RES) for trait in ['t1', 't2', 't3', 't4']})
        report = outlier_sta(fits)

        assert list(report.indicator.columns) == ['t1', 't2', 't3', 't4']
        assert report.indicator.sum().tolist() == [0, 0, 0, 0]
        assert report.outliers is None

    def test_r_limit(self):
        """Test flags with an explicit limit."""
        report = outlier_sta(trial_fit({'t1': with_outliers(OUTLIER_RES)}), traits='t1', r_limit=1)

        assert report.indicator['t1'].sum() == 4
        assert report.n_outliers == 4
        assert len(report.outliers) == 4
        assert report.outliers['res'].tolist() == pytest.approx(list(OUTLIER_RES.values()))
        assert report.outliers['outlier'].all()
        assert not report.outliers['similar'].any()
        flagged = report.indicator.loc['E1', 't1']
        assert sorted(flagged[flagged].index) == sorted(OUTLIER_RES)

    def test_r_limit_multiple_traits(self):
        """Test flags for several traits."""
        residuals = {
            't1': with_outliers(OUTLIER_RES),
            't2': with_outliers({2: 1.5, 3: -1.2, 10: 2.5, 11: -1.1, 20: 1.05, 25: -3.0}),
            't3': with_outliers({4: 1.3, 8: -1.4}),
            't4': with_outliers({12: 1.2, 13: -1.2, 14: 1.2, 15: -1.2}),
        }
        report = outlier_sta(trial_fit(residuals), r_limit=1)

        assert report.indicator.sum().tolist() == [4, 6, 2, 4]
        assert len(report.outliers) == 16
        assert report.outliers['trait'].value_counts()['t2'] == 6

    def test_common_factors(self):
        """Test that observations in the same sub-block are marked similar."""
        report = outlier_sta(trial_fit({'t1': with_outliers(OUTLIER_RES)}), traits='t1',
                             r_limit=1, common_factors='subBlock')
        outliers = report.outliers

        assert report.indicator['t1'].sum() == 4
        assert len(outliers) == 12
        assert outliers['similar'].sum() == 8
        assert not outliers.loc[outliers['outlier'], 'similar'].any()
        assert set(outliers['subBlock'].astype(str)) == {'1', '2'}
        assert list(outliers.columns) == ['trial', 'genotype', 'trait', 'value', 'res',
                                          'outlier', 'subBlock', 'similar']

    def test_common_factors_several(self):
        """Test similarity on several factors at once."""
        report = outlier_sta(trial_fit({'t1': with_outliers(OUTLIER_RES)}), traits='t1',
                             r_limit=1, common_factors=['subBlock', 'repId'])

        # outlying plots 0, 1, 5 and 6 all lie in replicate 1
        assert len(report.outliers) == 6
        assert report.outliers['similar'].sum() == 2

    def test_unknown_common_factor(self):
        """Test that unknown common factors are rejected."""
        with pytest.raises(ColumnNotFoundError):
            outlier_sta(trial_fit({'t1': small_residuals()}), common_factors='field')

    def test_effect_mode_not_fitted(self):
        """Test that residuals of an unfitted effect mode are refused."""
        with pytest.raises(UnsupportedStatisticError, match="random"):
            outlier_sta(trial_fit({'t1': small_residuals()}), effect_mode='random')

    def test_failed_trait(self):
        """Test that traits without a model are never flagged."""
        fits = trial_fit({'t1': with_outliers(OUTLIER_RES)})
        fits.traits = ['t1', 't2']
        report = outlier_sta(fits, r_limit=1)

        assert report.indicator['t2'].sum() == 0
        assert ('E1', 't2') not in report.limits

    def test_invalid_limit(self):
        """Test that non positive limits are rejected."""
        with pytest.raises(ValueError, match="r_limit"):
            outlier_sta(trial_fit({'t1': small_residuals()}), r_limit=0)


def replicated_trial():
    """
    Four complete replicates of eight genotypes, each replicate a 2 x 4
    block of plots.

    The plot errors have equal size and sum to zero over every genotype,
    replicate, row and column.
    """
    rng = np.random.RandomState(7)
    signs = np.array([1, -1] * 4)
    records = []
    for rep in range(4):
        rep_sign = 1 if rep % 2 == 0 else -1
        plus = iter(rng.permutation(np.flatnonzero(signs > 0)))
        minus = iter(rng.permutation(np.flatnonzero(signs < 0)))
        for row in range(2):
            for col in range(4):
                g = next(plus) if (row + col) % 2 == 0 else next(minus)
                records.append({
                    'genotype': f"G{g + 1}", 'rep': rep + 1,
                    'row': 2 * rep + row + 1, 'col': col + 1,
                    'grain': 10.0 + 2.0 * g + rep + 0.5 * signs[g] * rep_sign,
                })
    data = pd.DataFrame(records)
    return create_td(data, genotype='genotype', rep_id='rep', row_coord='row',
                     col_coord='col', row_id='row', col_id='col')


class TestFittedModels:
    """Test outlier detection on residuals of fitted models."""

    def setup_method(self):
        """Set up a replicated trial without outlying plots."""
        self.td = replicated_trial()

    def check_no_outliers(self, fits, effect_mode):
        report = outlier_sta(fits, effect_mode=effect_mode)
        res = fits['trial'].model('grain', effect_mode).std_residuals()

        assert report.limits[('trial', 'grain')] == pytest.approx(default_r_limit(32))
        assert res.abs().max() > 0.1
        assert res.abs().max() < default_r_limit(32)
        assert report.n_outliers == 0
        assert not report.indicator.to_numpy().any()
        assert report.outliers is None

    def test_statsmodels_fits(self):
        """Test that no plot is flagged for statsmodels fits."""
        fits = fit_td(self.td, 'grain', design='rcbd')

        self.check_no_outliers(fits, 'fixed')
        self.check_no_outliers(fits, 'random')

    def test_spatial_fits(self):
        """Test that no plot is flagged for spatial fits."""
        fits = fit_td(self.td, 'grain', design='rowcol')

        self.check_no_outliers(fits, 'fixed')
        self.check_no_outliers(fits, 'random')

    def test_indicator_matches_residuals(self):
        """Test that flags follow the standardized residuals of the fit."""
        td = create_td(generate_trial_data(), genotype='seed', trial='field', rep_id='rep')
        fits = fit_td(td, ['t1', 't2'], trials='E1', design='rcbd', effect_mode='fixed')
        report = outlier_sta(fits, r_limit=1)

        res = fits['E1'].models_fixed['t1'].std_residuals()
        assert report.indicator['t1'].sum() == (res.abs() > 1).sum()
        # unreplicated pairs: residuals of the two replicates mirror each other
        assert report.outliers is None or report.outliers['res'].abs().min() > 1
