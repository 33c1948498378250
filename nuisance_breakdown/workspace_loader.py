"""
Resolve a workspace from a model locator.

The locator is either a path to a Python file or a dotted module name. The
module exposes the workspace under its name, either as a Workspace instance
or as a zero-argument callable returning one.
"""

import importlib
import importlib.util
import logging
from pathlib import Path

from .errors import ConfigurationError
from .model import Workspace

logger = logging.getLogger(__name__)


def _import_locator(locator: str):
    path = Path(locator)
    if path.suffix == ".py":
        if not path.exists():
            raise ConfigurationError(f"Workspace file {locator} doesn't exist!", locator)
        module_name = f"_breakdown_workspace_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, str(path))
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    try:
        return importlib.import_module(locator)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import workspace module {locator}: {e}", locator) from e


def load_workspace(locator: str, ws_name: str = "combined") -> Workspace:
    """
    Load workspace ws_name from locator.

    Raises:
        ConfigurationError: if the module or the workspace does not exist
    """
    logger.info(f"Running over workspace: {locator}")
    module = _import_locator(locator)

    obj = getattr(module, ws_name, None)
    if obj is None:
        raise ConfigurationError(f"Workspace: {ws_name} doesn't exist!", ws_name)
    if callable(obj) and not isinstance(obj, Workspace):
        obj = obj()
    if not isinstance(obj, Workspace):
        raise ConfigurationError(
            f"Workspace: {ws_name} in {locator} is a {type(obj).__name__}, not a Workspace",
            ws_name,
        )
    return obj
