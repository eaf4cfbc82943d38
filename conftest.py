import httpx
import pytest

from shelvy import database
from shelvy.accounts import AccountManager
from shelvy.cache import cache_manager
from shelvy.config import settings
from shelvy.services.http_client import OptimizedHTTPClient, set_http_client


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    database.initialize_database()

    for delay in ("backfill_delay", "backfill_all_delay", "isbndb_delay",
                  "isbndb_rate_limit_pause", "cover_refresh_delay"):
        monkeypatch.setattr(settings, delay, 0)
    monkeypatch.setattr(settings, "password_hash_iterations", 1000)
    cache_manager.clear()
    yield db_file
    set_http_client(None)


@pytest.fixture
def accounts():
    return AccountManager()


@pytest.fixture
def make_user(accounts):
    """Factory creating accounts; returns the user dict."""
    def _make(name: str, password: str = "secret123"):
        return accounts.sign_up(f"{name}@example.com", password, name)
    return _make


@pytest.fixture
def mock_http():
    """Route every upstream request through a handler function."""
    def _install(handler):
        set_http_client(OptimizedHTTPClient(transport=httpx.MockTransport(handler)))
    return _install
