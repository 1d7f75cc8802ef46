from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional
from urllib.parse import urlsplit

from core.errors import InvalidParameter
from core.settings import get_settings
from providers.backend import Backend
from providers.impl.http import HTTPBackend
from providers.impl.object_storage import ObjectStorageBackend
from providers.plugins import load_plugin_backends
from schemas import Scheme

logger = logging.getLogger(__name__)


class BackendFactory:
    """
    Scheme -> backend table.

    Built once at startup: builtin backends (http, https and the object
    storage schemes) first, then plugin backends from `<plugin_dir>/backend`.
    The table is read-only afterwards and shared by every request.

    Plugin backends are modules named lib<scheme>.py (or a compiled extension
    module, lib<scheme>.<ext-suffix>) exporting `register_plugin()`. A plugin
    `libhdfs.py` serves `hdfs://namenode/path` URLs.

    Collisions: last registration wins. Plugins load after builtins, so a
    plugin may replace a builtin scheme; the override is logged as a warning.
    """

    def __init__(self, plugin_dir: Optional[Path] = None):
        backends: Dict[str, Backend] = {}

        self._load_builtin_backends(backends)

        if plugin_dir is not None:
            self._load_plugin_backends(backends, Path(plugin_dir))

        self._backends: Mapping[str, Backend] = MappingProxyType(backends)

    @property
    def backends(self) -> Mapping[str, Backend]:
        return self._backends

    def build(self, url: str) -> Backend:
        """Backend for the URL's scheme (exact match)."""
        try:
            scheme = urlsplit(url).scheme
        except ValueError as err:
            logger.error("parse url failed %s: %s", url, err)
            raise InvalidParameter(f"invalid url: {url}") from err
        if not scheme:
            raise InvalidParameter(f"url has no scheme: {url}")

        backend = self._backends.get(scheme)
        if backend is None:
            raise InvalidParameter(f"no backend registered for scheme {scheme}")
        return backend

    @staticmethod
    def _load_builtin_backends(backends: Dict[str, Backend]) -> None:
        for scheme in (Scheme.HTTP, Scheme.HTTPS):
            backends[scheme.value] = HTTPBackend(scheme.value)
            logger.info("load [%s] builtin backend", scheme)

        for scheme in (Scheme.S3, Scheme.GCS, Scheme.ABS, Scheme.OSS, Scheme.OBS, Scheme.COS):
            backends[scheme.value] = ObjectStorageBackend(scheme)
            logger.info("load [%s] builtin backend", scheme)

    @staticmethod
    def _load_plugin_backends(backends: Dict[str, Backend], plugin_dir: Path) -> None:
        try:
            loaded = load_plugin_backends(plugin_dir)
        except Exception as err:
            logger.error("failed to load plugin backends: %s", err)
            raise

        for scheme, backend in loaded:
            if scheme in backends:
                logger.warning(
                    "plugin backend [%s] replaces the %s backend",
                    scheme,
                    type(backends[scheme]).__name__,
                )
            backends[scheme] = backend


_cached: Optional[BackendFactory] = None


def get_backend_factory() -> BackendFactory:
    """
    Process-wide factory built from settings on first use.
    """
    global _cached
    if _cached is None:
        settings = get_settings()
        _cached = BackendFactory(settings.plugin_dir)
    return _cached


def reset_backend_factory() -> None:
    global _cached
    _cached = None
