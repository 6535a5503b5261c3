"""
Test cases for the trial data container.
"""

import pytest
import numpy as np
import pandas as pd
import pandas.testing as pdt

import sys
import os
# Add parent directory to path to find pysta package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pysta.trial_data import (
    TrialData, create_td, add_td, drop_td, get_meta, set_meta,
    describe_td, default_traits, META_FIELDS
)
from pysta.datasets import generate_trial_data
from pysta.errors import (
    ColumnNotFoundError, TypeConversionError, DuplicateTrialError,
    UnknownTrialError, UnknownDesignError, MetadataWarning
)

ROLE_KWARGS = dict(genotype='seed', trial='field', rep_id='rep', sub_block='block',
                   row_coord='Y', col_coord='X', row_id='Y', col_id='X')


class TestCreateTD:
    """Test creation of TrialData objects."""

    def setup_method(self):
        """Set up test data."""
        self.data = generate_trial_data()

    def test_split_by_trial(self):
        """Test that data is split in one sub-table per trial."""
        td = create_td(self.data, **ROLE_KWARGS)

        assert isinstance(td, TrialData)
        assert td.trials == ['E1', 'E2', 'E3']
        assert len(td) == 3
        assert all(len(td[trial]) == 30 for trial in td)

    def test_row_union_equals_input(self):
        """Test that the trials together hold exactly the input rows."""
        td = create_td(self.data, **ROLE_KWARGS)
        combined = pd.concat([td[trial] for trial in td]).sort_index()

        np.testing.assert_allclose(combined['t1'].to_numpy(), self.data['t1'].to_numpy())
        assert list(combined['genotype'].astype(str)) == list(self.data['seed'])
        assert list(combined['family']) == list(self.data['family'])

    def test_canonical_columns_and_types(self):
        """Test renaming and typing of role columns."""
        td = create_td(self.data, **ROLE_KWARGS)
        data = td['E1']

        for col in ['genotype', 'trial', 'repId', 'subBlock', 'rowCoord', 'colCoord', 'rowId', 'colId']:
            assert col in data.columns
        for col in ['seed', 'field', 'rep', 'block', 'X', 'Y']:
            assert col not in data.columns

        for col in ['genotype', 'trial', 'repId', 'subBlock', 'rowId', 'colId']:
            assert isinstance(data[col].dtype, pd.CategoricalDtype)
        assert pd.api.types.is_numeric_dtype(data['rowCoord'])
        assert pd.api.types.is_numeric_dtype(data['colCoord'])

    def test_unused_levels_removed(self):
        """Test that each trial only carries its own trial level."""
        td = create_td(self.data, **ROLE_KWARGS)

        assert list(td['E2']['trial'].cat.categories) == ['E2']

    def test_renamed_mapping(self):
        """Test that original column names are retained."""
        td = create_td(self.data, **ROLE_KWARGS)
        table = td.table('E1')

        assert table.renamed['genotype'] == 'seed'
        assert table.renamed['rowCoord'] == 'Y'
        assert table.original_name('colId') == 'X'
        assert table.original_name('t1') == 't1'
        assert sorted(table.canonical_names('Y')) == ['rowCoord', 'rowId']

    def test_single_trial(self):
        """Test that data without trial column gives a single trial."""
        td = create_td(self.data, genotype='seed', trial_name='field1')

        assert td.trials == ['field1']
        assert len(td['field1']) == len(self.data)

    def test_missing_column(self):
        """Test that a missing source column raises an error."""
        with pytest.raises(ColumnNotFoundError, match="notACol"):
            create_td(self.data, genotype='notACol')

    def test_type_conversion_error(self):
        """Test that non numeric coordinates raise an error."""
        data = self.data.copy()
        data['Y'] = data['Y'].astype(str)
        data.loc[0, 'Y'] = 'a'

        with pytest.raises(TypeConversionError, match="rowCoord"):
            create_td(data, genotype='seed', row_coord='Y')

    def test_numeric_strings_converted(self):
        """Test that coordinates given as strings are converted."""
        data = self.data.copy()
        data['X'] = data['X'].astype(str)
        td = create_td(data, genotype='seed', trial='field', col_coord='X')

        assert pd.api.types.is_numeric_dtype(td['E1']['colCoord'])

    def test_input_not_dataframe(self):
        """Test that non-DataFrame input is rejected."""
        with pytest.raises(ValueError, match="data must be a pandas DataFrame"):
            create_td("not a dataframe", genotype='seed')

    def test_missing_trial_values(self):
        """Test that missing trial values are rejected."""
        data = self.data.copy()
        data.loc[3, 'field'] = np.nan

        with pytest.raises(ValueError, match="missing values"):
            create_td(data, genotype='seed', trial='field')

    def test_overwritten_canonical_column(self):
        """Test warning when a mapped role replaces an existing column."""
        data = self.data.copy()
        data['genotype'] = 'x'

        with pytest.warns(UserWarning, match="overwritten"):
            td = create_td(data, genotype='seed', trial='field')
        assert td['E1']['genotype'].iloc[0] == 'G1'

    def test_metadata_on_creation(self):
        """Test metadata given at creation applies to all trials."""
        td = create_td(self.data, genotype='seed', trial='field', tr_location='Wageningen',
                       tr_lat=51.97, tr_design='rowcol')
        meta = get_meta(td)

        assert list(meta['trLocation']) == ['Wageningen'] * 3
        assert list(meta['trDesign']) == ['rowcol'] * 3
        assert meta['trLat'].iloc[0] == pytest.approx(51.97)

    def test_invalid_design_metadata(self):
        """Test that an unknown design code in the metadata is rejected."""
        with pytest.raises(UnknownDesignError):
            create_td(self.data, genotype='seed', tr_design='latin')

    def test_default_traits(self):
        """Test that default traits exclude role columns."""
        td = create_td(self.data, **ROLE_KWARGS)

        assert default_traits(td['E1']) == ['checkId', 't1', 't2', 't3', 't4']

    def test_getitem_returns_copy(self):
        """Test that changing a returned frame leaves the object unchanged."""
        td = create_td(self.data, **ROLE_KWARGS)
        frame = td['E1']
        frame['t1'] = 0.0

        assert (td['E1']['t1'] != 0.0).all()

    def test_unknown_trial(self):
        """Test indexing with an unknown trial."""
        td = create_td(self.data, **ROLE_KWARGS)

        with pytest.raises(UnknownTrialError, match="E4"):
            td['E4']


class TestAddDropTD:
    """Test adding and dropping trials."""

    def setup_method(self):
        """Set up test data."""
        data = generate_trial_data()
        self.first = data[data['field'] != 'E3']
        self.extra = data[data['field'] == 'E3']
        self.td = create_td(self.first, **ROLE_KWARGS)

    def test_add_trial(self):
        """Test adding a new trial."""
        td = add_td(self.td, self.extra, **ROLE_KWARGS)

        assert td.trials == ['E1', 'E2', 'E3']
        assert self.td.trials == ['E1', 'E2']

    def test_add_duplicate_trial(self):
        """Test that adding an existing trial fails."""
        with pytest.raises(DuplicateTrialError, match="E1"):
            add_td(self.td, self.first, **ROLE_KWARGS)

    def test_drop_restores(self):
        """Test that dropping an added trial restores the original object."""
        td = drop_td(add_td(self.td, self.extra, **ROLE_KWARGS), 'E3')

        assert td.trials == self.td.trials
        for trial in td:
            pdt.assert_frame_equal(td[trial], self.td[trial])

    def test_drop_unknown_trial(self):
        """Test that dropping an absent trial fails."""
        with pytest.raises(UnknownTrialError, match="E9"):
            drop_td(self.td, ['E1', 'E9'])

    def test_drop_leaves_others(self):
        """Test that dropping a trial keeps the other trials intact."""
        td = drop_td(self.td, ['E1'])

        assert td.trials == ['E2']
        pdt.assert_frame_equal(td['E2'], self.td['E2'])


class TestMetadata:
    """Test reading and writing trial metadata."""

    def setup_method(self):
        """Set up test data."""
        self.td = create_td(generate_trial_data(), **ROLE_KWARGS)

    def test_get_meta_empty(self):
        """Test that unset metadata is missing."""
        meta = get_meta(self.td)

        assert list(meta.index) == ['E1', 'E2', 'E3']
        assert list(meta.columns) == list(META_FIELDS)
        assert meta.isna().all().all()

    def test_set_then_get(self):
        """Test that metadata set is returned by get_meta."""
        meta = get_meta(self.td)
        meta.loc['E1', 'trLocation'] = 'Wageningen'
        meta.loc['E1', 'trDesign'] = 'res.ibd'
        meta.loc['E2', 'trLat'] = 52.5
        meta.loc['E2', 'trDate'] = pd.Timestamp('2020-05-01')

        new = get_meta(set_meta(self.td, meta))

        assert new.loc['E1', 'trLocation'] == 'Wageningen'
        assert new.loc['E1', 'trDesign'] == 'res.ibd'
        assert new.loc['E2', 'trLat'] == 52.5
        assert new.loc['E2', 'trDate'] == pd.Timestamp('2020-05-01')
        assert pd.isna(new.loc['E2', 'trLocation'])
        assert new.loc['E3'].isna().all()

    def test_set_meta_does_not_modify_input(self):
        """Test that set_meta returns a new object."""
        meta = pd.DataFrame({'trial': ['E1'], 'trLocation': ['Wageningen']})
        set_meta(self.td, meta)

        assert get_meta(self.td)['trLocation'].isna().all()

    def test_unmatched_trials_warn(self):
        """Test that metadata for unknown trials is ignored with a warning."""
        meta = pd.DataFrame({'trial': ['E1', 'E7'], 'trLocation': ['A', 'B']})

        with pytest.warns(MetadataWarning, match="E7"):
            td = set_meta(self.td, meta)
        assert get_meta(td).loc['E1', 'trLocation'] == 'A'
        assert 'E7' not in get_meta(td).index

    def test_missing_value_unsets(self):
        """Test that a missing value removes a field."""
        td = set_meta(self.td, pd.DataFrame({'trial': ['E1'], 'trLocation': ['A']}))
        td = set_meta(td, pd.DataFrame({'trial': ['E1'], 'trLocation': [None]}))

        assert pd.isna(get_meta(td).loc['E1', 'trLocation'])

    def test_invalid_numeric_field(self):
        """Test that non numeric coordinates are rejected."""
        meta = pd.DataFrame({'trial': ['E1'], 'trLat': ['north']})

        with pytest.raises(TypeConversionError, match="trLat"):
            set_meta(self.td, meta)


class TestDescribeTD:
    """Test descriptive statistics."""

    def setup_method(self):
        """Set up test data."""
        self.td = create_td(generate_trial_data(), **ROLE_KWARGS)

    def test_summary_values(self):
        """Test summary statistics against numpy."""
        summary = describe_td(self.td, 'E1', traits=['t1', 't3'])
        values = self.td['E1']['t3']

        assert list(summary.columns) == ['t1', 't3']
        assert summary.loc['nVals', 't3'] == 30
        assert summary.loc['nMiss', 't3'] == values.isna().sum()
        assert summary.loc['mean', 't3'] == pytest.approx(values.mean())
        assert summary.loc['sd', 't3'] == pytest.approx(values.std())
        assert summary.loc['range', 't1'] == pytest.approx(
            self.td['E1']['t1'].max() - self.td['E1']['t1'].min())

    def test_by_genotype(self):
        """Test statistics per genotype."""
        summary = describe_td(self.td, 'E1', traits=['t1'], by_genotype=True)

        assert summary.index.names == ['genotype', 'statistic']
        assert summary.loc[('G1', 'nObs'), 't1'] == 2

    def test_unknown_trait(self):
        """Test that unknown traits raise an error."""
        with pytest.raises(ColumnNotFoundError):
            describe_td(self.td, 'E1', traits=['t9'])
