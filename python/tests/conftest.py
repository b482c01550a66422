"""Pytest configuration and fixtures for unfurl tests.

Test isolation strategy:
- Every test gets its own SQLite database file built from the ORM metadata
- The default session factory is pointed at that database, so API routes
  and tasks see the same data as the db_session fixture
- Blob storage is an in-memory FakeStorageClient
- Outbound HTTP is mocked with respx inside individual tests, and DNS
  resolves every hostname to a public address unless a test says otherwise
"""

import os
import socket
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

os.environ.setdefault("UNFURL_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from unfurl.api.deps import get_storage
from unfurl.app import add_request_id_middleware, create_app
from unfurl.config import clear_settings_cache
from unfurl.db.engine import create_db_engine
from unfurl.db.models import Base
from unfurl.db.session import create_session_factory, set_session_factory
from unfurl.storage import FakeStorageClient, get_storage_client


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """A fresh SQLite database file with the full schema."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'unfurl.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Generator[sessionmaker[Session], None, None]:
    """Session factory bound to the test database, installed as the default."""
    factory = create_session_factory(engine)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def app(session_factory, storage: FakeStorageClient):
    """FastAPI app wired to the test database and fake storage."""
    app = create_app()
    app.dependency_overrides[get_storage] = lambda: storage
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_cached_singletons():
    """Reset settings and storage caches around each test."""
    clear_settings_cache()
    get_storage_client.cache_clear()
    yield
    clear_settings_cache()
    get_storage_client.cache_clear()


PUBLIC_TEST_ADDRESS = "93.184.216.34"


@pytest.fixture(autouse=True)
def dns(monkeypatch) -> dict[str, str]:
    """Resolve every hostname to a public address.

    Tests map a hostname to another address (e.g. a private one) by
    assigning into the returned dict.
    """
    addresses: dict[str, str] = {}

    def fake_getaddrinfo(host, port, *args, **kwargs):
        address = addresses.get(host, PUBLIC_TEST_ADDRESS)
        family = socket.AF_INET6 if ":" in address else socket.AF_INET
        return [(family, socket.SOCK_STREAM, 6, "", (address, port or 0))]

    monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)
    return addresses
