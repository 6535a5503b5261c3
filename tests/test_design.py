"""
Test cases for trial designs, model formulas and control parameters.
"""

import pytest
import pandas as pd

import sys
import os
# Add parent directory to path to find pysta package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pysta.control import STAControl
from pysta.design import (
    DESIGN_CODES, ModelFormula, ResidualStructure, check_columns, default_engine,
    design_for_trial, prune_terms, resolve_design, spatial_candidates
)
from pysta.errors import (
    ColumnNotFoundError, MissingDesignError, ModelTermWarning, UnknownDesignError
)


class TestDesignTable:
    """Test mapping of designs to model terms."""

    def test_res_rowcol_terms(self):
        """Test terms of a resolvable row-column design."""
        formula = resolve_design('res.rowcol', 't1', genotype_random=True)

        assert formula.fixed == (('repId',),)
        assert formula.random == (('repId', 'rowId'), ('repId', 'colId'))
        assert formula.genotype_random
        assert str(formula) == 't1 ~ repId + (1|genotype) + (1|repId:rowId) + (1|repId:colId)'

    @pytest.mark.parametrize("design,fixed,random", [
        ('ibd', (), (('subBlock',),)),
        ('res.ibd', (('repId',),), (('repId', 'subBlock'),)),
        ('rcbd', (('repId',),), ()),
        ('rowcol', (), (('rowId',), ('colId',))),
    ])
    def test_other_designs(self, design, fixed, random):
        """Test terms of the remaining designs."""
        formula = resolve_design(design, 't1', genotype_random=False)

        assert formula.fixed == fixed
        assert formula.random == random
        assert not formula.genotype_random

    def test_default_engines(self):
        """Test default engine per design."""
        assert default_engine('rowcol') == 'spats'
        assert default_engine('res.rowcol') == 'spats'
        for design in ('ibd', 'res.ibd', 'rcbd'):
            assert default_engine(design) == 'mixedlm'

    def test_unknown_design(self):
        """Test that unknown designs are rejected."""
        with pytest.raises(UnknownDesignError, match="latin"):
            resolve_design('latin', 't1', genotype_random=False)
        with pytest.raises(UnknownDesignError):
            default_engine('latin')

    def test_all_codes_resolve(self):
        """Test that every design code has a formula."""
        for design in DESIGN_CODES:
            assert resolve_design(design, 'y', genotype_random=True).design == design

    def test_spatial_columns(self):
        """Test that spatial formulas need coordinates."""
        formula = resolve_design('rowcol', 't1', genotype_random=False, spatial=True, nseg=(4, 6))

        assert formula.columns == ['t1', 'genotype', 'rowId', 'colId', 'colCoord', 'rowCoord']
        assert 'nseg=(4, 6)' in str(formula)


class TestDesignForTrial:
    """Test design selection for a trial."""

    def test_override_wins(self):
        """Test that an explicit design overrides the metadata."""
        assert design_for_trial({'trDesign': 'rcbd'}, override='ibd') == 'ibd'

    def test_metadata_design(self):
        """Test design taken from the metadata."""
        assert design_for_trial({'trDesign': 'rcbd'}) == 'rcbd'

    def test_missing_design(self):
        """Test that a trial without design fails."""
        with pytest.raises(MissingDesignError):
            design_for_trial({})

    def test_unknown_override(self):
        """Test that an unknown override is rejected."""
        with pytest.raises(UnknownDesignError):
            design_for_trial({'trDesign': 'rcbd'}, override='foo')


class TestSpatialCandidates:
    """Test residual structures compared in spatial selection."""

    def test_seven_candidates(self):
        """Test number and order of candidate structures."""
        labels = [candidate.label for candidate in spatial_candidates()]

        assert labels == [
            'id(x)id', 'id(x)AR1', 'AR1(x)id', 'AR1(x)AR1',
            'id(x)AR1 + nugget', 'AR1(x)id + nugget', 'AR1(x)AR1 + nugget',
        ]

    def test_no_independent_nugget(self):
        """Test that independent errors are never combined with a nugget."""
        assert ResidualStructure('id', 'id', True) not in spatial_candidates()


class TestModelColumns:
    """Test column checks and term pruning."""

    def setup_method(self):
        """Set up test data."""
        self.data = pd.DataFrame({
            't1': [1.0, 2.0, 3.0, 4.0],
            'genotype': pd.Categorical(['A', 'B', 'A', 'B']),
            'repId': pd.Categorical(['1', '1', '2', '2']),
            'subBlock': pd.Categorical(['1', '1', '1', '1']),
        })

    def test_check_columns(self):
        """Test that missing design columns raise an error."""
        formula = resolve_design('rowcol', 't1', genotype_random=False)

        with pytest.raises(ColumnNotFoundError, match="rowId"):
            check_columns(formula, self.data, 'E1')

    def test_prune_single_level_term(self):
        """Test that terms with one level are dropped with a warning."""
        formula = resolve_design('ibd', 't1', genotype_random=False)

        with pytest.warns(ModelTermWarning, match="subBlock"):
            pruned = prune_terms(formula, self.data)
        assert pruned.random == ()

    def test_prune_keeps_estimable_terms(self):
        """Test that estimable terms are kept."""
        formula = resolve_design('rcbd', 't1', genotype_random=False)

        assert prune_terms(formula, self.data) == formula


class TestSTAControl:
    """Test control parameters."""

    def test_defaults(self):
        """Test default values."""
        control = STAControl()

        assert control.nseg is None
        assert control.criterion == "AIC"
        assert control.reml
        assert not control.monitoring

    def test_invalid_criterion(self):
        """Test that unknown criteria are rejected."""
        with pytest.raises(ValueError, match="criterion"):
            STAControl(criterion="DIC")

    def test_invalid_iterations(self):
        """Test that invalid iteration settings are rejected."""
        with pytest.raises(ValueError):
            STAControl(max_iter=0)
        with pytest.raises(ValueError):
            STAControl(tolerance=0)
