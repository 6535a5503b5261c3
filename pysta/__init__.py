"""
pySTA: Single Trial Analysis of field trials

Organizes field trial data per trial, fits mixed models with optional
spatial adjustment per trial and trait, and extracts BLUEs, BLUPs,
heritabilities and residual based outliers for multi-environment
analysis.
"""

from .control import STAControl
from .trial_data import TrialData, create_td, add_td, drop_td, get_meta, set_meta, describe_td
from .fitting import FitResult, fit_td
from .extract import extract_sta, sta_to_td
from .outliers import OutlierReport, outlier_sta
from .engines import available_engines, register_engine
from .utils import get_heritability

__version__ = "0.1.0"
__author__ = "Python STA Implementation"

__all__ = [
    "STAControl",
    "TrialData",
    "create_td",
    "add_td",
    "drop_td",
    "get_meta",
    "set_meta",
    "describe_td",
    "FitResult",
    "fit_td",
    "extract_sta",
    "sta_to_td",
    "OutlierReport",
    "outlier_sta",
    "available_engines",
    "register_engine",
    "get_heritability",
]
