"""
Row transform registry.

Transforms are looked up by registered name (usually the destination table)
or imported from a ``"package.module:function"`` path.
"""
import importlib
import logging
from typing import Callable, Dict, Optional

from ..core.exceptions import ConfigurationError
from ..pipeline.stages.transform import RowTransform

logger = logging.getLogger(__name__)

_TRANSFORMS: Dict[str, RowTransform] = {}


def register_transform(name: str) -> Callable[[RowTransform], RowTransform]:
    """Decorator registering a transform under name"""
    def decorator(func: RowTransform) -> RowTransform:
        if name in _TRANSFORMS and _TRANSFORMS[name] is not func:
            logger.warning(f"Replacing registered transform '{name}'")
        _TRANSFORMS[name] = func
        return func
    return decorator


def registered_transforms() -> Dict[str, RowTransform]:
    return dict(_TRANSFORMS)


def _import_transform(path: str) -> RowTransform:
    module_name, _, attribute = path.partition(':')
    if not module_name or not attribute:
        raise ConfigurationError(f"Transform path '{path}' must look like 'package.module:function'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import transform module '{module_name}': {e}") from e
    func = getattr(module, attribute, None)
    if func is None or not callable(func):
        raise ConfigurationError(f"Module '{module_name}' has no callable '{attribute}'")
    return func


def resolve_transform(name: Optional[str]) -> Optional[RowTransform]:
    """Resolve a transform by registered name or import path; None passes documents through"""
    if not name:
        return None
    if name in _TRANSFORMS:
        return _TRANSFORMS[name]
    if ':' in name:
        return _import_transform(name)
    raise ConfigurationError(
        f"Unknown transform '{name}'; registered: {', '.join(sorted(_TRANSFORMS)) or 'none'}"
    )
