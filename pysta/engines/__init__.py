"""
Modeling engines and their registry.
"""

from typing import Dict, List

from ..design import LICENSED_ENGINE, MIXED_ENGINE, SPATIAL_ENGINE
from ..errors import EngineUnavailableError
from .base import Engine, EngineFit, model_frame
from .licensed import LicensedEngine, LicensedEngineFit
from .mixedlm import MixedModelEngine, MixedModelFit
from .spats import SpatialEngine, SpatialEngineFit

ENGINE_NAMES = (SPATIAL_ENGINE, MIXED_ENGINE, LICENSED_ENGINE)

_registry: Dict[str, Engine] = {
    SPATIAL_ENGINE: SpatialEngine(),
    MIXED_ENGINE: MixedModelEngine(),
}


def _check_name(name: str) -> None:
    if name not in ENGINE_NAMES:
        raise ValueError(f"Unknown engine '{name}'. Engine must be one of {ENGINE_NAMES}")


def register_engine(name: str, engine: Engine) -> None:
    """Make an engine available under name, replacing any earlier one."""
    _check_name(name)
    if not isinstance(engine, Engine):
        raise TypeError("engine must be an Engine instance")
    _registry[name] = engine


def unregister_engine(name: str) -> None:
    _check_name(name)
    _registry.pop(name, None)


def get_engine(name: str) -> Engine:
    _check_name(name)
    if name not in _registry:
        raise EngineUnavailableError(
            f"Engine '{name}' is not available. Register a backend with register_engine('{name}', ...)"
        )
    return _registry[name]


def available_engines() -> List[str]:
    return [name for name in ENGINE_NAMES if name in _registry]


__all__ = [
    "Engine",
    "EngineFit",
    "LicensedEngine",
    "LicensedEngineFit",
    "MixedModelEngine",
    "MixedModelFit",
    "SpatialEngine",
    "SpatialEngineFit",
    "available_engines",
    "get_engine",
    "model_frame",
    "register_engine",
    "unregister_engine",
]
