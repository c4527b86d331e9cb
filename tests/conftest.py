import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from tortoise import Tortoise

from jobcrawler.storage.postgres.postgres_init import init_postgres
from jobcrawler.utils.env_loader import load_environment


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def orm(anyio_backend):
    """Tortoise on an in-memory SQLite database with the crawler schema."""
    await init_postgres("sqlite://:memory:")
    yield
    await Tortoise.close_connections()


@pytest.fixture(autouse=True)
def load_dotenv_defaults(monkeypatch):
    """Ensure .env defaults are available for every test."""

    # Clear key variables so tests always use the .env baseline unless they
    # explicitly override values via monkeypatch or a custom env file.
    for key in [
        "POSTGRES_URL",
        "DATABASE_URL",
        "JOBCRAWLER_DATABASE_URL",
        "JOBCRAWLER_CONFIG",
        "CRAWLER_USER_AGENT",
        "MONGO_URL",
        "MONGO_URI",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_DB",
        "WORKERS",
    ]:
        monkeypatch.delenv(key, raising=False)

    load_environment(override=True)

    yield

    # Clean up to avoid leaking state between tests.
    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)
