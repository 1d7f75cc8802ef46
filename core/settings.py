from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional, TypeVar

N = TypeVar("N", int, float)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else str(v)


def _env_number(name: str, default: N, cast: Callable[[str], N]) -> N:
    raw = _env(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (_env(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_STREAM_CHUNK_SIZE = 64 * 1024


def default_plugin_dir() -> Path:
    """
    Linux daemons keep plugins under /var/lib; everywhere else (macOS dev
    boxes mostly) they live in the user's home.
    """
    if sys.platform.startswith("linux"):
        return Path("/var/lib/origin-backend/plugins")
    return Path.home() / ".origin-backend" / "plugins"


@dataclass(frozen=True)
class Settings:
    """
    Backend layer configuration.

    plugin_dir:
      root directory scanned for extension backends (the loader looks in
      <plugin_dir>/backend). None disables extension loading.
    """
    plugin_dir: Optional[Path]
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE


# ---------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------

def _load_plugin_dir() -> Optional[Path]:
    if _env_bool("BACKEND_DISABLE_PLUGINS", False):
        return None

    raw = (_env("BACKEND_PLUGIN_DIR", "") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return default_plugin_dir()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    timeout = _env_number("BACKEND_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS, float)
    chunk_size = _env_number("BACKEND_STREAM_CHUNK_SIZE", DEFAULT_STREAM_CHUNK_SIZE, int)

    return Settings(
        plugin_dir=_load_plugin_dir(),
        request_timeout_seconds=max(1.0, float(timeout)),
        stream_chunk_size=max(1024, int(chunk_size)),
    )
