import pathlib
import sys
from typing import Any, Callable

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from graph_backend.config import Settings, get_settings  # noqa: E402


@pytest.fixture
def settings_factory(tmp_path: pathlib.Path) -> Callable[..., Settings]:
    """Build isolated settings that ignore the developer's `.env` file."""

    def _factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "OPENROUTER_API_KEY": "test-key",
            "OPENROUTER_BASE_URL": "https://openrouter.test/api/v1",
            "DEEPGRAM_API_KEY": "dg-key",
            "OUTCOME_LOG_DIR": str(tmp_path / "outcomes"),
            "LOGGING_SETTINGS_PATH": str(tmp_path / "logging_settings.conf"),
            "IMAGE_GENERATION_RETRY_DELAY": 0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)  # pyright: ignore[reportCallIssue]

    return _factory


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
