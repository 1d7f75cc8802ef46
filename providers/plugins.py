from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
from importlib.machinery import EXTENSION_SUFFIXES, SOURCE_SUFFIXES, ExtensionFileLoader, SourceFileLoader
from pathlib import Path
from types import ModuleType
from typing import List, Optional, Tuple

from core.errors import PluginError
from providers.backend import Backend

logger = logging.getLogger(__name__)

# Subdirectory of the plugin root holding backend plugins.
NAME = "backend"

# Shared-library naming: lib<scheme>.<suffix>
PLUGIN_PREFIX = "lib"

# Zero-argument callable every plugin module must export.
ENTRYPOINT = "register_plugin"

# Parent name plugin modules are registered under in sys.modules.
MODULE_NAMESPACE = "backend_plugins"

# Longest first so "x.cpython-312-x86_64-linux-gnu.so" is not cut at ".so".
_SUFFIXES = sorted(set(SOURCE_SUFFIXES) | set(EXTENSION_SUFFIXES), key=len, reverse=True)


def plugin_suffix(path: Path) -> Optional[str]:
    for suffix in _SUFFIXES:
        if path.name.endswith(suffix) and len(path.name) > len(suffix):
            return suffix
    return None


def plugin_scheme(stem: str) -> Optional[str]:
    """
    `libhdfs` -> `hdfs`. Stems without the shared-library prefix have no scheme.
    """
    if stem.startswith(PLUGIN_PREFIX) and len(stem) > len(PLUGIN_PREFIX):
        return stem[len(PLUGIN_PREFIX):]
    return None


def _import_module(path: Path, suffix: str) -> ModuleType:
    stem = path.name[: -len(suffix)]
    module_name = f"{MODULE_NAMESPACE}.{stem}"

    if suffix in SOURCE_SUFFIXES:
        loader = SourceFileLoader(module_name, str(path))
    else:
        loader = ExtensionFileLoader(module_name, str(path))

    spec = importlib.util.spec_from_file_location(module_name, path, loader=loader)
    if spec is None or spec.loader is None:
        raise PluginError(f"cannot create module spec for {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def _construct(path: Path, module: ModuleType) -> Backend:
    """
    The trust boundary: call the module's constructor after checking that it
    is a zero-argument callable, and check what it hands back.
    """
    register_plugin = getattr(module, ENTRYPOINT, None)
    if register_plugin is None:
        raise PluginError(f"{path} does not export {ENTRYPOINT}")
    if not callable(register_plugin):
        raise PluginError(f"{path}: {ENTRYPOINT} is not callable")

    try:
        sig = inspect.signature(register_plugin)
    except (TypeError, ValueError):
        # builtins from compiled modules may not expose a signature
        sig = None
    if sig is not None:
        required = [
            p.name
            for p in sig.parameters.values()
            if p.default is inspect.Parameter.empty
            and p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        ]
        if required:
            raise PluginError(f"{path}: {ENTRYPOINT} must take no arguments, requires {', '.join(required)}")

    try:
        backend = register_plugin()
    except Exception as err:
        raise PluginError(f"{path}: {ENTRYPOINT} failed: {err}") from err

    if not isinstance(backend, Backend):
        raise PluginError(f"{path}: {ENTRYPOINT} returned {type(backend).__name__}, not a backend")
    for method in ("head", "get"):
        if not inspect.iscoroutinefunction(getattr(backend, method)):
            raise PluginError(f"{path}: backend.{method} must be a coroutine function")
    return backend


def load_plugin(path: Path) -> Backend:
    """Load one plugin file and return the backend it constructs."""
    if not path.is_file():
        raise PluginError(f"{path} is not a file")

    suffix = plugin_suffix(path)
    if suffix is None:
        raise PluginError(f"{path} is not a loadable module")

    try:
        module = _import_module(path, suffix)
    except PluginError:
        raise
    except Exception as err:
        raise PluginError(f"load {path} failed: {err}") from err

    return _construct(path, module)


def load_plugin_backends(plugin_dir: Path) -> List[Tuple[str, Backend]]:
    """
    Load every backend plugin under `<plugin_dir>/backend`, in name order.

    A missing directory is not an error. Any entry that cannot be loaded is:
    the caller gets a PluginError rather than a partial plugin set.
    """
    backend_plugin_dir = plugin_dir / NAME
    if not backend_plugin_dir.exists():
        logger.warning(
            "skip loading plugin backends, because the plugin directory %s does not exist",
            backend_plugin_dir,
        )
        return []
    if not backend_plugin_dir.is_dir():
        raise PluginError(f"{backend_plugin_dir} is not a directory")

    loaded: List[Tuple[str, Backend]] = []
    for path in sorted(backend_plugin_dir.iterdir()):
        if path.name == "__pycache__":
            continue

        backend = load_plugin(path)

        suffix = plugin_suffix(path) or ""
        scheme = plugin_scheme(path.name[: -len(suffix)])
        if scheme is None:
            logger.warning("skip plugin %s, file name must start with %r", path, PLUGIN_PREFIX)
            continue

        loaded.append((scheme, backend))
        logger.info("load [%s] plugin backend", scheme)

    return loaded
