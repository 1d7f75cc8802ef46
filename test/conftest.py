import sys
from pathlib import Path

import pytest

# Tests import the top-level packages (core, providers, schemas) straight from
# the repo root, the same way the service runs from a checkout.
REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from core.settings import get_settings  # noqa: E402
from providers.factory import reset_backend_factory  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in (
        "BACKEND_PLUGIN_DIR",
        "BACKEND_DISABLE_PLUGINS",
        "BACKEND_REQUEST_TIMEOUT_SECONDS",
        "BACKEND_STREAM_CHUNK_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    reset_backend_factory()
    yield
    get_settings.cache_clear()
    reset_backend_factory()
