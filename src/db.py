import os
import sys
import asyncio
import contextlib
import functools
import subprocess
from typing import Optional, AsyncGenerator, Dict

from sqlalchemy import URL, text, event, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from models import Base

from dotenv import load_dotenv
load_dotenv()

ASYNC_PG_DRIVER = "postgresql+asyncpg"

def asyncpg_ssl(url: URL) -> URL:
    """Move libpq's sslmode (asyncpg rejects it) to asyncpg's equivalent ssl argument."""
    if "sslmode" not in url.query:
        return url

    sslmode = url.query["sslmode"]
    return url.difference_update_query(["sslmode"]).update_query_dict({"ssl": sslmode})

class DatabaseManager:
    """Process-local singleton database manager with proper connection handling"""

    _instances: Dict[int, 'DatabaseManager'] = {}  # keyed by process ID

    def __new__(cls) -> 'DatabaseManager':
        pid = os.getpid()
        if pid not in cls._instances:
            instance = super().__new__(cls)
            instance._engine: Optional[AsyncEngine] = None
            instance._session_factory: Optional[async_sessionmaker] = None
            instance._initialized: bool = False
            cls._instances[pid] = instance
        return cls._instances[pid]

    def create_database_url(self) -> URL:
        if database_url := os.environ.get("DATABASE_URL"):
            url = make_url(database_url)
            # Hosted providers hand out plain postgres:// connection strings.
            if url.drivername in ("postgres", "postgresql", "postgresql+psycopg2"):
                url = url.set(drivername=ASYNC_PG_DRIVER)
            if url.drivername == ASYNC_PG_DRIVER:
                url = asyncpg_ssl(url)

            LOGGER.info(f"Using database from DATABASE_URL '{url.database}' (PID: {os.getpid()}).")
            return url

        if test_db := os.environ.get("TEST_DATABASE_NAME"):
            database_name = test_db
        elif os.getenv("TEST_MODE"):
            database_name = "test_db"
        else:
            database_name = os.environ.get("POSTGRES_DB", "postgres")

        LOGGER.info(f"Using database '{database_name}' (PID: {os.getpid()}).")

        return URL.create(
            drivername=ASYNC_PG_DRIVER,
            username=os.environ["POSTGRES_USER"],
            password=os.environ["POSTGRES_PASSWORD"],
            host=os.environ["POSTGRES_HOST"],
            port=int(os.environ.get("DB_PORT", 5432)),
            database=database_name
        )

    def _engine_options(self, url: URL) -> dict:
        if url.get_backend_name() != "postgresql":
            return {"echo": False}

        return {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": 5,
            "max_overflow": 5,
            "pool_pre_ping": True,              # Hosted DBs drop idle connections
            "pool_recycle": 1800,
            "pool_timeout": 30,
            "echo": False,
            "connect_args": {
                "server_settings": {
                    "application_name": f"spotify_portfolio_pid_{os.getpid()}",
                    "jit": "off"
                },
                "command_timeout": 60,
                "statement_cache_size": 0,      # Required behind pgbouncer
            }
        }

    async def initialize(self) -> None:
        """Initialize database engine and session factory"""
        if self._initialized:
            LOGGER.debug(f"Database already initialized for PID {os.getpid()}")
            return

        LOGGER.info(f"Initializing DB engine for PID {os.getpid()}")
        try:
            url = self.create_database_url()
            self._engine = create_async_engine(url, **self._engine_options(url))

            @event.listens_for(self._engine.sync_engine, "connect")
            def receive_connect(dbapi_connection, connection_record):
                LOGGER.debug(f"New database connection established (PID: {os.getpid()})")

            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                LOGGER.info(f"Database connection test to '{url.database}' successful (PID: {os.getpid()})")

            self._session_factory = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,          # Keep objects usable after commit
                autoflush=True,
            )

            self._initialized = True
            LOGGER.info(f"Database engine and session factory initialized (PID: {os.getpid()})")

        except Exception as e:
            LOGGER.error(f"Could not initialize database (PID: {os.getpid()}): {traceback.format_exc()}")
            await self.cleanup()
            raise Exception(f"Database initialization failed: {str(e)}")

    @contextlib.asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions with proper cleanup"""
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            LOGGER.error(f"Session error, rolling back (PID: {os.getpid()}): {traceback.format_exc()}")
            raise
        finally:
            await session.close()

    async def get_engine(self) -> AsyncEngine:
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()
        return self._engine

    async def cleanup(self) -> None:
        """Cleanup database resources for this process"""
        if self._engine:
            await self._engine.dispose()
            LOGGER.info(f"Database engine disposed (PID: {os.getpid()})")

        self._engine = None
        self._session_factory = None
        self._initialized = False

        pid = os.getpid()
        if pid in self._instances:
            del self._instances[pid]

    async def create_tables(self) -> None:
        """Create tables straight from the models, for tests and local SQLite."""
        engine = await self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def _run_alembic(self, command: str, revision: str) -> None:
        try:
            result = subprocess.run([
                sys.executable, "-m", "alembic", command, revision
            ], check=True, capture_output=True, text=True)
            LOGGER.info(f"Alembic {command} to {revision} completed: {result.stdout}")
        except subprocess.CalledProcessError as e:
            LOGGER.error(f"Alembic {command} to {revision} failed: {e.stderr}")
            raise

    async def create_tables_with_alembic(self) -> None:
        await self.initialize()
        self._run_alembic("upgrade", "head")

    async def setup_tables(self) -> None:
        await self.initialize()

        # Downgrade drops alembic_version's revision and the time_range enum along with the tables.
        if os.getenv("FORCE_RECREATE_TABLES"):
            self._run_alembic("downgrade", "base")

        await self.create_tables_with_alembic()

        LOGGER.info(f"Database setup completed (PID: {os.getpid()})")


    @classmethod
    async def cleanup_all_instances(cls) -> None:
        """Cleanup all database instances across all processes (for test cleanup)"""
        for pid, instance in list(cls._instances.items()):
            await instance.cleanup()
        cls._instances.clear()


def get_db_manager() -> DatabaseManager:
    return DatabaseManager()

def get_session():
    """Get session context manager"""
    return get_db_manager().get_session()

def pass_session_capable(func):
    """Lets `func` join a caller's session or open (and commit) its own."""
    @functools.wraps(func)
    async def inner(*args, **kwargs):
        if kwargs.get("session") is not None:
            return await func(*args, **kwargs)

        async with get_session() as s:
            kwargs["session"] = s
            return await func(*args, **kwargs)

    return inner


if __name__ == "__main__":
    from logger import setup_logging

    async def main():
        setup_logging()
        LOGGER.info("Setting up tables.")

        prompt = "This will migrate the PROD database to the latest schema. Are you sure? "
        if "-t" in sys.argv or "--test" in sys.argv:
            os.environ["TEST_MODE"] = "true"
            prompt = "This will migrate the TEST database to the latest schema. Are you sure? "

        if not input(prompt).lower().startswith("y"):
            return

        try:
            await get_db_manager().setup_tables()
        finally:
            await get_db_manager().cleanup()

    asyncio.run(main())
