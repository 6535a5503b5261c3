"""
Exceptions and warnings raised by pySTA.
"""


class STAError(Exception):
    """Base class for all pySTA errors."""


class ColumnNotFoundError(STAError, KeyError):
    """A column named in a role mapping or required by a design is absent."""

    def __str__(self):
        # KeyError quotes its message; keep it readable
        return str(self.args[0]) if self.args else ""


class TypeConversionError(STAError, ValueError):
    """A column could not be converted to the type its role requires."""


class DuplicateTrialError(STAError, ValueError):
    """Trial identifiers being added already exist."""


class UnknownTrialError(STAError, KeyError):
    """Trial identifiers are not present in the TrialData."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class UnknownDesignError(STAError, ValueError):
    """Design code is not one of the supported trial designs."""


class MissingDesignError(STAError, ValueError):
    """No design given and none stored in the trial metadata."""


class UnsupportedStatisticError(STAError, ValueError):
    """Statistic cannot be extracted from the given fit."""


class MissingStandardErrorError(STAError, ValueError):
    """Weights were requested but no standard error statistic was selected."""


class EngineUnavailableError(STAError, RuntimeError):
    """The requested modeling engine is not available at runtime."""


class ModelFitError(STAError, RuntimeError):
    """Numerical failure of a single model fit."""


class FitConvergenceWarning(UserWarning):
    """A trial/trait fit failed and was skipped."""


class MetadataWarning(UserWarning):
    """Metadata rows could not be matched to trials."""


class KeepColumnWarning(UserWarning):
    """A keep column was dropped from an extraction."""


class ModelTermWarning(UserWarning):
    """A design term was dropped from a model."""
