from __future__ import annotations

import os
import tempfile
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="relay-lb-tests-"))
TEST_DB_PATH = TEST_DB_DIR / "relay-lb.db"

os.environ["RELAYLB_DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["RELAYLB_ENCRYPTION_KEY_FILE"] = str(TEST_DB_DIR / "encryption.key")
os.environ["RELAYLB_ELECTION_ENABLED"] = "false"

from relaylb.db.models import Base  # noqa: E402
from relaylb.db.session import engine  # noqa: E402
from relaylb.main import create_app  # noqa: E402


async def _reset_database() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def app_instance():
    app = create_app()
    await _reset_database()
    return app


@pytest_asyncio.fixture(scope="session", autouse=True)
async def dispose_engine():
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db_setup():
    await _reset_database()
    return True


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client


@pytest.fixture(autouse=True)
def temp_key_file(monkeypatch):
    key_path = TEST_DB_DIR / f"encryption-{uuid4().hex}.key"
    monkeypatch.setenv("RELAYLB_ENCRYPTION_KEY_FILE", str(key_path))
    from relaylb.core.config.settings import get_settings

    get_settings.cache_clear()
    return key_path
