"""
External formula bridge - call("module", "function", args...)

A call formula hands the whole group of positions to a plain Python
function and returns whatever it returns. Modules are looked up in the
risk definition's module path first, then on sys.path.

    # <module path>/limits.py
    def var95(positions, confidence):
        ...
        return 123.4
"""

import importlib
import importlib.util
import logging
import os
from types import ModuleType
from typing import Any, Dict, Sequence, Tuple

logger = logging.getLogger(__name__)

_module_cache: Dict[Tuple[str, str], ModuleType] = {}


def load_module(module: str, path: str = "") -> ModuleType:
    """Load (and cache) a formula module from path, else from sys.path."""
    key = (path, module)
    if key in _module_cache:
        return _module_cache[key]

    file_path = os.path.join(path, *module.split(".")) + ".py" if path else ""
    if file_path and os.path.isfile(file_path):
        spec = importlib.util.spec_from_file_location(f"_openrisk_{module}", file_path)
        loaded = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(loaded)
    else:
        loaded = importlib.import_module(module)

    _module_cache[key] = loaded
    return loaded


def call_python(
    module: str,
    function: str,
    args: Sequence[Any],
    positions: Sequence[Any],
    path: str = "",
) -> Any:
    """
    Invoke function(positions, *args) from module.

    Best effort: a failure is logged and returns None. There is no retry.
    """
    try:
        target = getattr(load_module(module, path), function)
        return target(list(positions), *args)
    except Exception as e:
        logger.warning(f"External formula {module}.{function} failed: {e}")
        return None


def clear_cache() -> None:
    """Forget loaded formula modules (picked up again on next call)."""
    _module_cache.clear()
