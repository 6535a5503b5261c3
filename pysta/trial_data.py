"""
Trial data container.

A TrialData maps trial identifiers to plot level data. Every sub-table
carries the canonical column roles (genotype, replicate, sub-block, row
and column coordinates and identifiers), the mapping from canonical to
original column names and the trial metadata.
"""

import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from .design import DESIGN_CODES
from .errors import (
    ColumnNotFoundError,
    DuplicateTrialError,
    MetadataWarning,
    TypeConversionError,
    UnknownDesignError,
    UnknownTrialError,
)

# role keyword -> canonical column name
ROLES = {
    'genotype': 'genotype',
    'trial': 'trial',
    'rep_id': 'repId',
    'sub_block': 'subBlock',
    'row_coord': 'rowCoord',
    'col_coord': 'colCoord',
    'row_id': 'rowId',
    'col_id': 'colId',
}
CANONICAL_COLUMNS = tuple(ROLES.values())
FACTOR_COLUMNS = ('genotype', 'trial', 'repId', 'subBlock', 'rowId', 'colId')
NUMERIC_COLUMNS = ('rowCoord', 'colCoord')

META_FIELDS = ('trLocation', 'trDate', 'trLat', 'trLong',
               'trPlWidth', 'trPlLength', 'trDesign')
_META_KEYWORDS = {
    'tr_location': 'trLocation',
    'tr_date': 'trDate',
    'tr_lat': 'trLat',
    'tr_long': 'trLong',
    'tr_pl_width': 'trPlWidth',
    'tr_pl_length': 'trPlLength',
    'tr_design': 'trDesign',
}
_NUMERIC_META = ('trLat', 'trLong', 'trPlWidth', 'trPlLength')


@dataclass(frozen=True)
class TrialTable:
    """
    Data of a single trial.

    Attributes
    ----------
    data : pd.DataFrame
        Plot level data with canonical role columns
    renamed : dict
        Canonical column name -> original column name
    meta : dict
        Metadata fields that are set for the trial
    """
    data: pd.DataFrame
    renamed: Dict[str, str] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    def original_name(self, canonical: str) -> str:
        """Original name of a canonical column."""
        return self.renamed.get(canonical, canonical)

    def canonical_names(self, original: str) -> List[str]:
        """Canonical columns created from an original column."""
        return [canon for canon, orig in self.renamed.items() if orig == original]


class TrialData(Mapping):
    """
    Mapping of trial identifier -> plot data of that trial.

    Indexing returns a copy of the trial DataFrame, so a TrialData is
    never modified through the frames it hands out. Use `create_td`,
    `add_td`, `drop_td` and `set_meta` to derive new objects.
    """

    def __init__(self, tables: Optional[Dict[str, TrialTable]] = None):
        self._tables = dict(tables or {})

    def __getitem__(self, trial: str) -> pd.DataFrame:
        return self.table(trial).data.copy()

    def __iter__(self):
        return iter(self._tables)

    def __len__(self):
        return len(self._tables)

    def table(self, trial: str) -> TrialTable:
        if trial not in self._tables:
            raise UnknownTrialError(f"Trial '{trial}' not found. Available trials: {list(self._tables)}")
        return self._tables[trial]

    @property
    def trials(self) -> List[str]:
        return list(self._tables)

    def renamed(self, trial: str) -> Dict[str, str]:
        return dict(self.table(trial).renamed)

    def __repr__(self):
        sizes = ", ".join(f"{trial}: {len(table.data)}" for trial, table in self._tables.items())
        return f"TrialData({sizes})"


def _is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return False
    return bool(pd.isna(value))


def _check_meta_value(name: str, value):
    if name == 'trDesign':
        if value not in DESIGN_CODES:
            raise UnknownDesignError(f"Unknown design '{value}'. Design must be one of {DESIGN_CODES}")
        return value
    if name == 'trDate':
        return pd.Timestamp(value)
    if name in _NUMERIC_META:
        try:
            return float(value)
        except (TypeError, ValueError) as err:
            raise TypeConversionError(f"Metadata field {name} must be numeric, got {value!r}") from err
    return str(value)


def _collect_meta(meta_kwargs: Dict[str, Any]) -> Dict[str, Any]:
    meta = {}
    for keyword, value in meta_kwargs.items():
        name = _META_KEYWORDS[keyword]
        if not _is_missing(value):
            meta[name] = _check_meta_value(name, value)
    return meta


def _prepare_data(data: pd.DataFrame, roles: Dict[str, str]):
    """Rename role columns to canonical names and cast them to their types."""
    if not isinstance(data, pd.DataFrame):
        raise ValueError("data must be a pandas DataFrame")

    missing_cols = [source for source in roles.values() if source not in data.columns]
    if missing_cols:
        raise ColumnNotFoundError(f"Columns not found in data: {missing_cols}")

    targets_by_source: Dict[str, List[str]] = {}
    for role, source in roles.items():
        targets_by_source.setdefault(source, []).append(ROLES[role])
    targets = {ROLES[role] for role in roles}

    # An unmapped column that carries a canonical name is replaced by the mapped one
    overwritten = [col for col in data.columns if col in targets and col not in targets_by_source]
    if overwritten:
        warnings.warn(f"Columns {overwritten} are overwritten by mapped role columns", UserWarning)

    columns = {}
    for col in data.columns:
        if col in targets_by_source:
            for target in targets_by_source[col]:
                columns[target] = data[col]
        elif col not in overwritten:
            columns[col] = data[col]
    prepared = pd.DataFrame(columns, index=data.index)
    renamed = {ROLES[role]: source for role, source in roles.items()}

    for col in FACTOR_COLUMNS:
        if col in renamed:
            prepared[col] = prepared[col].astype('category')
    for col in NUMERIC_COLUMNS:
        if col in renamed:
            try:
                prepared[col] = pd.to_numeric(prepared[col])
            except (TypeError, ValueError) as err:
                raise TypeConversionError(
                    f"Column '{renamed[col]}' used as {col} cannot be converted to numeric"
                ) from err
    return prepared, renamed


def _drop_unused_levels(frame: pd.DataFrame) -> pd.DataFrame:
    for col in frame.columns:
        if isinstance(frame[col].dtype, pd.CategoricalDtype):
            frame[col] = frame[col].cat.remove_unused_categories()
    return frame


def _split_trials(data: pd.DataFrame, renamed: Dict[str, str], meta: Dict[str, Any],
                  trial_name: str) -> Dict[str, TrialTable]:
    if 'trial' not in data.columns:
        return {trial_name: TrialTable(_drop_unused_levels(data.copy()), dict(renamed), dict(meta))}
    if data['trial'].isna().any():
        raise ValueError("Trial column contains missing values")
    tables = {}
    for trial, sub in data.groupby('trial', sort=True, observed=True):
        tables[str(trial)] = TrialTable(_drop_unused_levels(sub.copy()), dict(renamed), dict(meta))
    return tables


def create_td(
    data: pd.DataFrame,
    genotype: Optional[str] = None,
    trial: Optional[str] = None,
    rep_id: Optional[str] = None,
    sub_block: Optional[str] = None,
    row_coord: Optional[str] = None,
    col_coord: Optional[str] = None,
    row_id: Optional[str] = None,
    col_id: Optional[str] = None,
    tr_location: Optional[str] = None,
    tr_date=None,
    tr_lat: Optional[float] = None,
    tr_long: Optional[float] = None,
    tr_pl_width: Optional[float] = None,
    tr_pl_length: Optional[float] = None,
    tr_design: Optional[str] = None,
    trial_name: str = "trial"
) -> TrialData:
    """
    Create a TrialData object from plot level data.

    Parameters
    ----------
    data : pd.DataFrame
        Plot level data, one row per observation
    genotype, trial, rep_id, sub_block, row_coord, col_coord, row_id, col_id : str, optional
        Names of the columns in data holding each role. The same column
        may be used for several roles, e.g. a row number as both row_id
        and row_coord.
    tr_location, tr_date, tr_lat, tr_long, tr_pl_width, tr_pl_length, tr_design : optional
        Metadata applied to every trial created
    trial_name : str, default="trial"
        Identifier of the single trial when no trial column is given

    Returns
    -------
    TrialData
        One sub-table per unique value of the trial column

    Examples
    --------
    >>> td = create_td(data, genotype='seed', trial='field', rep_id='rep',
    ...                row_coord='Y', col_coord='X', row_id='Y', col_id='X')
    >>> td.trials
    ['E1', 'E2', 'E3']
    """
    roles = {role: source for role, source in (
        ('genotype', genotype), ('trial', trial), ('rep_id', rep_id),
        ('sub_block', sub_block), ('row_coord', row_coord), ('col_coord', col_coord),
        ('row_id', row_id), ('col_id', col_id)) if source is not None}
    meta = _collect_meta({
        'tr_location': tr_location, 'tr_date': tr_date, 'tr_lat': tr_lat,
        'tr_long': tr_long, 'tr_pl_width': tr_pl_width,
        'tr_pl_length': tr_pl_length, 'tr_design': tr_design,
    })
    prepared, renamed = _prepare_data(data, roles)
    return TrialData(_split_trials(prepared, renamed, meta, trial_name))


def add_td(td: TrialData, data: pd.DataFrame, **kwargs) -> TrialData:
    """
    Add new trials to an existing TrialData.

    Takes the same keyword arguments as `create_td`. Raises
    DuplicateTrialError when one of the new trials already exists.
    """
    new = create_td(data, **kwargs)
    duplicated = [trial for trial in new if trial in td]
    if duplicated:
        raise DuplicateTrialError(f"Trials already present in data: {duplicated}")
    return TrialData({**td._tables, **new._tables})


def drop_td(td: TrialData, trials: Union[str, Iterable[str]]) -> TrialData:
    """Remove trials from a TrialData."""
    trials = [trials] if isinstance(trials, str) else list(trials)
    unknown = [trial for trial in trials if trial not in td]
    if unknown:
        raise UnknownTrialError(f"Trials not found in data: {unknown}")
    return TrialData({name: table for name, table in td._tables.items() if name not in trials})


def get_meta(td: TrialData) -> pd.DataFrame:
    """
    Metadata of all trials, one row per trial.

    Fields that are not set are missing.
    """
    records = [{name: td.table(trial).meta.get(name) for name in META_FIELDS} for trial in td]
    meta = pd.DataFrame(records, index=pd.Index(td.trials, name='trial'), columns=list(META_FIELDS))
    meta['trDate'] = pd.to_datetime(meta['trDate'])
    for name in _NUMERIC_META:
        meta[name] = meta[name].astype(float)
    return meta


def set_meta(td: TrialData, meta: pd.DataFrame) -> TrialData:
    """
    Merge metadata into a TrialData.

    Parameters
    ----------
    td : TrialData
        Trial data to update
    meta : pd.DataFrame
        Metadata indexed by trial, or with a 'trial' column. Missing
        values unset the field. Rows for unknown trials are ignored with
        a MetadataWarning.

    Returns
    -------
    TrialData
        New object with updated metadata
    """
    meta = meta.copy()
    if 'trial' in meta.columns:
        meta = meta.set_index('trial')
    meta.index = meta.index.astype(str)
    if meta.index.duplicated().any():
        raise ValueError("Metadata contains duplicated trials")

    unmatched = [trial for trial in meta.index if trial not in td]
    if unmatched:
        warnings.warn(f"Metadata for trials {unmatched} ignored: trials not present in data",
                      MetadataWarning)
    unknown_fields = [col for col in meta.columns if col not in META_FIELDS]
    if unknown_fields:
        warnings.warn(f"Unknown metadata fields {unknown_fields} ignored", MetadataWarning)

    tables = dict(td._tables)
    fields = [col for col in meta.columns if col in META_FIELDS]
    for trial in meta.index:
        if trial not in tables:
            continue
        new_meta = dict(tables[trial].meta)
        for name in fields:
            value = meta.at[trial, name]
            if _is_missing(value):
                new_meta.pop(name, None)
            else:
                new_meta[name] = _check_meta_value(name, value)
        tables[trial] = replace(tables[trial], meta=new_meta)
    return TrialData(tables)


def default_traits(data: pd.DataFrame) -> List[str]:
    """Numeric columns that are not role columns."""
    return [col for col in data.columns
            if col not in CANONICAL_COLUMNS
            and pd.api.types.is_numeric_dtype(data[col])
            and not pd.api.types.is_bool_dtype(data[col])]


def _describe(values: pd.Series) -> Dict[str, float]:
    x = values.dropna().to_numpy(dtype=float)
    n = len(x)
    out = {'nVals': float(len(values)), 'nObs': float(n), 'nMiss': float(len(values) - n)}
    if n == 0:
        for name in ('mean', 'median', 'min', 'max', 'range', 'lowerQ', 'upperQ',
                     'sd', 'seMean', 'var', 'CV', 'skew', 'kurt'):
            out[name] = np.nan
        return out
    mean = x.mean()
    sd = x.std(ddof=1) if n > 1 else np.nan
    out.update({
        'mean': mean,
        'median': np.median(x),
        'min': x.min(),
        'max': x.max(),
        'range': x.max() - x.min(),
        'lowerQ': np.quantile(x, 0.25),
        'upperQ': np.quantile(x, 0.75),
        'sd': sd,
        'seMean': sd / np.sqrt(n),
        'var': sd ** 2,
        'CV': 100 * sd / mean if mean != 0 else np.nan,
        'skew': stats.skew(x, bias=False) if n > 2 else np.nan,
        'kurt': stats.kurtosis(x, bias=False) if n > 3 else np.nan,
    })
    return out


def describe_td(td: TrialData, trial: str, traits: Optional[List[str]] = None,
                by_genotype: bool = False) -> pd.DataFrame:
    """
    Descriptive statistics of traits in a trial.

    Returns a DataFrame with one row per statistic and one column per
    trait. With by_genotype=True the rows are indexed by
    (genotype, statistic).
    """
    data = td[trial]
    traits = traits or default_traits(data)
    missing_cols = [trait for trait in traits if trait not in data.columns]
    if missing_cols:
        raise ColumnNotFoundError(f"Traits not found in trial {trial}: {missing_cols}")
    for trait in traits:
        if not pd.api.types.is_numeric_dtype(data[trait]):
            raise ValueError(f"Trait '{trait}' must be numeric")

    def summarize(frame):
        return pd.DataFrame({trait: _describe(frame[trait]) for trait in traits})

    if not by_genotype:
        return summarize(data)
    if 'genotype' not in data.columns:
        raise ColumnNotFoundError(f"No genotype column in trial {trial}")
    per_genotype = {geno: summarize(sub) for geno, sub in data.groupby('genotype', observed=True)}
    return pd.concat(per_genotype, names=['genotype', 'statistic'])
