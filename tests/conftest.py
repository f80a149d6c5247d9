import os
from pathlib import Path

import pytest

from turnloop.config import get_settings
from turnloop.db.migrations.runner import run_migrations
from turnloop.logging import clear_context


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    db = tmp_path / "test.db"
    os.environ["APP_DB"] = str(db)
    os.environ["APP_ENV"] = "dev"
    os.environ["OPENAI_API_KEY"] = ""
    os.environ["ANTHROPIC_API_KEY"] = ""
    os.environ["CHAT_RATE_LIMIT"] = "1000/minute"
    get_settings.cache_clear()
    run_migrations()
    yield
    get_settings.cache_clear()
    clear_context()
