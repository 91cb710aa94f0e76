import pytest
from pydantic import ValidationError

from membersys.backends import create_store
from membersys.backends.cassandra import CassandraStore
from membersys.backends.relational import RelationalStore
from membersys.config import BackendKind, CassandraSettings, PostgresSettings, StoreSettings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("MEMBERSYS_BACKEND", "MEMBERSYS_REQUEST_TIMEOUT", "CASSANDRA_HOSTS", "CASSANDRA_WRITE_CONSISTENCY", "DB_URL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = StoreSettings()

    assert settings.backend == BackendKind.POSTGRESQL
    assert settings.request_timeout == 30.0
    assert settings.cassandra.write_consistency == "QUORUM"
    assert settings.cassandra.listing_consistency == "ONE"
    assert settings.logging.format == "json"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MEMBERSYS_BACKEND", "cassandra")
    monkeypatch.setenv("CASSANDRA_HOSTS", '["cass-1", "cass-2"]')
    monkeypatch.setenv("CASSANDRA_WRITE_CONSISTENCY", "local_quorum")

    settings = get_settings()

    assert settings.backend == BackendKind.CASSANDRA
    assert settings.cassandra.hosts == ["cass-1", "cass-2"]
    assert settings.cassandra.write_consistency == "LOCAL_QUORUM"
    assert get_settings() is settings


def test_unknown_consistency_level():
    with pytest.raises(ValidationError):
        CassandraSettings(listing_consistency="SOMETIMES")


def test_backend_must_be_known():
    with pytest.raises(ValidationError):
        StoreSettings(backend="mongodb")


def test_cassandra_backend_needs_hosts():
    with pytest.raises(ValidationError):
        StoreSettings(backend="cassandra", cassandra=CassandraSettings(hosts=[]))


async def test_create_store_relational(tmp_path):
    settings = StoreSettings(
        backend="postgresql",
        request_timeout=3,
        postgresql=PostgresSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'factory.db'}"),
    )

    store = await create_store(settings)
    try:
        assert isinstance(store, RelationalStore)
        assert store.request_timeout == 3
    finally:
        await store.close()


async def test_create_store_cassandra(monkeypatch):
    seen = {}

    async def fake_connect(cls, config, *, request_timeout=None):
        seen["hosts"] = config.hosts
        seen["timeout"] = request_timeout
        return "cassandra-store"

    monkeypatch.setattr(CassandraStore, "connect", classmethod(fake_connect))
    settings = StoreSettings(backend="cassandra", cassandra=CassandraSettings(hosts=["cass-1"]))

    assert await create_store(settings) == "cassandra-store"
    assert seen == {"hosts": ["cass-1"], "timeout": 30.0}
