"""
Trial designs and the model formulas derived from them.
"""

import itertools
import warnings
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from .errors import (
    ColumnNotFoundError,
    MissingDesignError,
    ModelTermWarning,
    UnknownDesignError,
)

DESIGN_CODES = ('ibd', 'res.ibd', 'rcbd', 'rowcol', 'res.rowcol')

SPATIAL_ENGINE = 'spats'
MIXED_ENGINE = 'mixedlm'
LICENSED_ENGINE = 'asreml'

Term = Tuple[str, ...]


@dataclass(frozen=True)
class DesignSpec:
    """Fixed and random terms of a design, genotype excluded."""
    fixed: Tuple[Term, ...]
    random: Tuple[Term, ...]
    default_engine: str


DESIGNS: Dict[str, DesignSpec] = {
    'ibd': DesignSpec(
        fixed=(),
        random=(('subBlock',),),
        default_engine=MIXED_ENGINE),
    'res.ibd': DesignSpec(
        fixed=(('repId',),),
        random=(('repId', 'subBlock'),),
        default_engine=MIXED_ENGINE),
    'rcbd': DesignSpec(
        fixed=(('repId',),),
        random=(),
        default_engine=MIXED_ENGINE),
    'rowcol': DesignSpec(
        fixed=(),
        random=(('rowId',), ('colId',)),
        default_engine=SPATIAL_ENGINE),
    'res.rowcol': DesignSpec(
        fixed=(('repId',),),
        random=(('repId', 'rowId'), ('repId', 'colId')),
        default_engine=SPATIAL_ENGINE),
}


def term_name(term: Term) -> str:
    return ":".join(term)


@dataclass(frozen=True)
class ModelFormula:
    """
    Model for one trait of one trial.

    Attributes
    ----------
    trait : str
        Response column
    design : str
        Design code the formula was built from
    fixed, random : tuple of terms
        Design terms; a term is a tuple of factor columns, more than one
        column meaning their interaction
    genotype_random : bool
        Whether genotype enters as random effect
    spatial : bool
        Whether a 2-D smooth term over (colCoord, rowCoord) is added
    nseg : int or tuple, optional
        Segments of the spatial term, passed to the engine untouched
    """
    trait: str
    design: str
    fixed: Tuple[Term, ...]
    random: Tuple[Term, ...]
    genotype_random: bool
    spatial: bool = False
    nseg: Optional[Union[int, Tuple[int, int]]] = None

    @property
    def columns(self) -> List[str]:
        """Data columns used by the model."""
        cols = [self.trait, 'genotype']
        for term in self.fixed + self.random:
            cols.extend(col for col in term if col not in cols)
        if self.spatial:
            cols.extend(['colCoord', 'rowCoord'])
        return cols

    def __str__(self):
        terms = [term_name(term) for term in self.fixed]
        terms.append('(1|genotype)' if self.genotype_random else 'genotype')
        terms.extend(f'(1|{term_name(term)})' for term in self.random)
        if self.spatial:
            terms.append(f'SAP(colCoord, rowCoord, nseg={self.nseg})')
        return f"{self.trait} ~ " + " + ".join(terms)


@dataclass(frozen=True)
class ResidualStructure:
    """Residual covariance structure of a spatial model."""
    row: str
    col: str
    nugget: bool = False

    @property
    def label(self) -> str:
        label = f"{self.row}(x){self.col}"
        return label + " + nugget" if self.nugget else label


def spatial_candidates() -> List[ResidualStructure]:
    """
    Residual structures compared in spatial model selection.

    Independent errors plus first order autoregressive structures along
    rows and/or columns, the latter with and without a nugget: seven
    structures in total.
    """
    candidates = []
    for nugget, row, col in itertools.product((False, True), ('id', 'AR1'), ('id', 'AR1')):
        if nugget and row == 'id' and col == 'id':
            continue
        candidates.append(ResidualStructure(row=row, col=col, nugget=nugget))
    return candidates


def _check_design(design: str) -> DesignSpec:
    if design not in DESIGNS:
        raise UnknownDesignError(f"Unknown design '{design}'. Design must be one of {DESIGN_CODES}")
    return DESIGNS[design]


def default_engine(design: str) -> str:
    """Engine used for a design when none is requested."""
    return _check_design(design).default_engine


def resolve_design(design: str, trait: str, genotype_random: bool,
                   spatial: bool = False, nseg=None) -> ModelFormula:
    """
    Build the model formula for a design.

    Examples
    --------
    >>> str(resolve_design('res.rowcol', 't1', genotype_random=True))
    't1 ~ repId + (1|genotype) + (1|repId:rowId) + (1|repId:colId)'
    """
    spec = _check_design(design)
    return ModelFormula(trait=trait, design=design, fixed=spec.fixed, random=spec.random,
                        genotype_random=genotype_random, spatial=spatial, nseg=nseg)


def design_for_trial(meta: Dict[str, Any], override: Optional[str] = None) -> str:
    """
    Design of a trial: the override when given, else the trDesign metadata.
    """
    if override is not None:
        _check_design(override)
        return override
    design = meta.get('trDesign')
    if design is None:
        raise MissingDesignError("No design given and no trDesign in the trial metadata")
    _check_design(design)
    return design


def check_columns(formula: ModelFormula, data: pd.DataFrame, trial: str) -> None:
    """Raise ColumnNotFoundError when the data lacks a model column."""
    missing_cols = [col for col in formula.columns if col not in data.columns]
    if missing_cols:
        raise ColumnNotFoundError(
            f"Columns {missing_cols} needed for design '{formula.design}' not found in trial {trial}"
        )


def prune_terms(formula: ModelFormula, data: pd.DataFrame) -> ModelFormula:
    """
    Drop design terms with fewer than two levels in data.

    Returns the formula unchanged when all terms are estimable.
    """
    def levels(term):
        return len(data[list(term)].drop_duplicates())

    kept = {}
    for kind in ('fixed', 'random'):
        kept[kind] = []
        for term in getattr(formula, kind):
            n_levels = levels(term)
            if n_levels < 2:
                warnings.warn(
                    f"{kind.capitalize()} term '{term_name(term)}' has insufficient levels "
                    f"({n_levels}) for trait {formula.trait}. Removing from model.",
                    ModelTermWarning)
                continue
            kept[kind].append(term)
    return replace(formula, fixed=tuple(kept['fixed']), random=tuple(kept['random']))
