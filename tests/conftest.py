import asyncio
import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "masonchat-test-logs"))

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from masonchat.core.db import Base
from masonchat.models.chat import Message, ReadState  # noqa: F401  registers tables

pytest_plugins = ('pytest_asyncio',)


@pytest.fixture(autouse=True)
def suppress_logging(monkeypatch):
    """Lower logging during tests to reduce noise."""
    import logging
    logging.getLogger().setLevel(logging.WARNING)
    yield


def make_session_factory(path):
    """Fresh SQLite file with the schema, and an async session factory on it."""
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory for sync tests that drive the app through TestClient."""
    _engine, factory = make_session_factory(tmp_path / "app.db")
    return factory


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = make_session_factory(tmp_path / "chat.db")
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class DummyWebSocket:
    def __init__(self, fail_send=False):
        self.accepted = False
        self.sent = []
        self.fail_send = fail_send

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail_send:
            raise RuntimeError("send failed")
        # simulate async send delay
        await asyncio.sleep(0)
        self.sent.append(message)

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture
def make_ws():
    """Factory for in-memory stand-ins of server-side WebSockets."""
    return DummyWebSocket
