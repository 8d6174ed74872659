import subprocess
import pytest
from types import SimpleNamespace
from sqlalchemy import make_url
from sqlalchemy.pool import AsyncAdaptedQueuePool

import db
from db import DatabaseManager, asyncpg_ssl, ASYNC_PG_DRIVER


@pytest.fixture
def postgres_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_NAME", raising=False)
    monkeypatch.delenv("DB_PORT", raising=False)
    monkeypatch.setenv("POSTGRES_USER", "portfolio")
    monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
    monkeypatch.setenv("POSTGRES_HOST", "db.local")


@pytest.mark.parametrize("database_url", [
    "postgres://u:p@db.example.com:5432/spotify",
    "postgresql://u:p@db.example.com:5432/spotify",
    "postgresql+psycopg2://u:p@db.example.com:5432/spotify",
])
def test_database_url_is_moved_to_asyncpg(monkeypatch, database_url):
    monkeypatch.setenv("DATABASE_URL", database_url)

    url = DatabaseManager().create_database_url()

    assert url.drivername == ASYNC_PG_DRIVER
    assert (url.host, url.port, url.database) == ("db.example.com", 5432, "spotify")
    assert (url.username, url.password) == ("u", "p")

def test_database_url_sslmode_becomes_ssl(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.example.com/spotify?sslmode=require&application_name=site")

    url = DatabaseManager().create_database_url()

    assert "sslmode" not in url.query
    assert url.query["ssl"] == "require"
    assert url.query["application_name"] == "site"

def test_sqlite_database_url_is_left_alone(monkeypatch, tmp_path):
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'site.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)

    assert DatabaseManager().create_database_url() == make_url(database_url)

def test_asyncpg_ssl_without_sslmode():
    url = make_url("postgresql+asyncpg://u:p@db.example.com/spotify")

    assert asyncpg_ssl(url) is url

def test_postgres_env_uses_test_database_name(postgres_env, monkeypatch):
    monkeypatch.setenv("TEST_DATABASE_NAME", "portfolio_ci")

    url = DatabaseManager().create_database_url()

    assert url.drivername == ASYNC_PG_DRIVER
    assert url.database == "portfolio_ci"
    assert (url.username, url.password, url.host, url.port) == ("portfolio", "secret", "db.local", 5432)

def test_postgres_env_in_test_mode(postgres_env, monkeypatch):
    monkeypatch.setenv("TEST_MODE", "true")

    assert DatabaseManager().create_database_url().database == "test_db"

def test_postgres_env_outside_test_mode(postgres_env, monkeypatch):
    monkeypatch.delenv("TEST_MODE", raising=False)
    monkeypatch.setenv("DB_PORT", "6543")

    url = DatabaseManager().create_database_url()
    assert url.database == "postgres"
    assert url.port == 6543

    monkeypatch.setenv("POSTGRES_DB", "portfolio")
    assert DatabaseManager().create_database_url().database == "portfolio"

def test_postgres_engine_options():
    options = DatabaseManager()._engine_options(make_url("postgresql+asyncpg://u:p@db.example.com/spotify"))

    assert options["poolclass"] is AsyncAdaptedQueuePool
    assert options["pool_pre_ping"]
    assert options["connect_args"]["statement_cache_size"] == 0
    assert options["connect_args"]["command_timeout"] == 60
    assert options["connect_args"]["server_settings"]["application_name"].startswith("spotify_portfolio_pid_")

def test_sqlite_engine_options(tmp_path):
    options = DatabaseManager()._engine_options(make_url(f"sqlite+aiosqlite:///{tmp_path / 'site.db'}"))

    assert options == {"echo": False}


@pytest.fixture
def alembic_calls(monkeypatch):
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd[-2:])
        return SimpleNamespace(stdout="")

    monkeypatch.setattr(db.subprocess, "run", run)
    return calls

@pytest.mark.asyncio
async def test_setup_tables_upgrades(test_db, alembic_calls, monkeypatch):
    monkeypatch.delenv("FORCE_RECREATE_TABLES", raising=False)

    await test_db.setup_tables()

    assert alembic_calls == [["upgrade", "head"]]

@pytest.mark.asyncio
async def test_setup_tables_recreate_downgrades_first(test_db, alembic_calls, monkeypatch):
    monkeypatch.setenv("FORCE_RECREATE_TABLES", "true")

    await test_db.setup_tables()

    assert alembic_calls == [["downgrade", "base"], ["upgrade", "head"]]

@pytest.mark.asyncio
async def test_setup_tables_stops_on_failed_migration(test_db, monkeypatch):
    monkeypatch.setenv("FORCE_RECREATE_TABLES", "true")
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd[-2:])
        raise subprocess.CalledProcessError(1, cmd, stderr="Can't locate revision")

    monkeypatch.setattr(db.subprocess, "run", run)

    with pytest.raises(subprocess.CalledProcessError):
        await test_db.setup_tables()

    assert calls == [["downgrade", "base"]]
