"""
Loading of app and handler modules named on the command line or in config.

A reference is either a dotted module path ('cms.jobs') or a file path
('jobs/handlers.py'). File modules get a stable synthetic name derived from
their real path, so importing the same file twice yields the same module.
sys.path only changes where the caller asks for it or a file's own
directory is needed to resolve its sibling imports.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from types import ModuleType

from drayage.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def is_file_reference(ref: str) -> bool:
    return ref.endswith('.py') or os.path.sep in ref or '/' in ref


def is_project_root(directory: str) -> bool:
    # Only the directory itself: a parent monorepo root must not leak onto sys.path
    return any(os.path.exists(os.path.join(directory, m)) for m in _PROJECT_MARKERS)


def setup_sys_path_from_cwd() -> str | None:
    """Put cwd on sys.path when it is a project root. Returns cwd if it was added."""
    cwd = os.getcwd()
    if not is_project_root(cwd) or cwd in sys.path:
        return None
    sys.path.insert(0, cwd)
    logger.debug(f'Added cwd to sys.path: {cwd}')
    return cwd


def _module_name_for(path: str) -> str:
    return 'drayage._files.' + hashlib.sha256(path.encode()).hexdigest()[:12]


def _loaded_from(path: str) -> ModuleType | None:
    for module in list(sys.modules.values()):
        origin = getattr(module, '__file__', None)
        if origin and os.path.realpath(origin) == path:
            return module
    return None


def import_file_path(file_path: str, module_name: str | None = None) -> ModuleType:
    """
    Import a .py file, reusing the module when that file is already loaded.

    Raises:
        FileNotFoundError: the file does not exist
        ImportError: no loader could be built for it
    """
    path = os.path.realpath(file_path)
    if not os.path.exists(path):
        raise FileNotFoundError(f'Module file not found: {path}')
    loaded = _loaded_from(path)
    if loaded is not None:
        return loaded

    directory = os.path.dirname(path)
    if directory not in sys.path:
        sys.path.insert(0, directory)

    name = module_name or _module_name_for(path)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {path}')
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def import_reference(ref: str) -> ModuleType:
    """Import a dotted module path or a .py file path."""
    if is_file_reference(ref):
        return import_file_path(ref)
    return importlib.import_module(ref)
