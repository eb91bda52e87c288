import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Type

from sqlalchemy import event, literal_column, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel

from sepal_server.entities import Message, Run, RunStep, Thread

logger = logging.getLogger(__name__)


def create_session_maker(
    db_url: str | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    if db_url is None:
        db_url = "sqlite+aiosqlite:///sepal.db"

    engine = create_async_engine(
        db_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        connect_args={
            "check_same_thread": False,
            "timeout": 20,
        },
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-64000")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session(
    session_maker: async_sessionmaker[AsyncSession],
    read_only: bool = False,
) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        try:
            yield session
            if not read_only:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_all_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def check_database_setup(engine: AsyncEngine) -> bool:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database check failed: {e}")
        return False


def insertion_order(model: Type[SQLModel]) -> ColumnElement[Any]:
    """SQLite rowid of a table, used to break ties between rows created in the same second."""
    return literal_column(f"{model.__tablename__}.rowid")


def current_timestamp() -> int:
    return int(time.time())


__all__ = [
    "create_session_maker",
    "get_session",
    "create_all_tables",
    "check_database_setup",
    "insertion_order",
    "current_timestamp",
    "Thread",
    "Message",
    "Run",
    "RunStep",
]
