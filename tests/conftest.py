"""Shared fixtures: an isolated database per test and an in-memory IMAP server."""
import pytest

from smartmail import config
from smartmail.core.session import SessionManager
from smartmail.core.sync_manager import SyncManager, SyncRegistry
from smartmail.models import Account
from smartmail.storage import cache_repo, db

from fakes import FakeServer


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the store, the key file and the logs at tmp_path and create the schema."""
    monkeypatch.setattr(config, "SQLITE_DB_PATH", tmp_path / "smartmail.db")
    monkeypatch.setattr(config, "SECRET_KEY_PATH", tmp_path / "secret.key")
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "logs")
    db.init_db()
    return tmp_path / "smartmail.db"


@pytest.fixture
def account(temp_db):
    cache_repo.add_account(Account(
        id="acc1",
        name="Test",
        email="user@example.com",
        provider="gmx",
        imap_host="imap.example.com",
        imap_port=993,
        password="s3cret",
    ))
    return cache_repo.get_account("acc1")


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def session_manager(server):
    return SessionManager(client_factory=server.client_factory, timeout=5, retries=1)


@pytest.fixture
def sync_manager(session_manager):
    return SyncManager(session_manager=session_manager, registry=SyncRegistry(), batch_size=2)
