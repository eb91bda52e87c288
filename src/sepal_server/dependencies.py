from collections.abc import AsyncIterator
from typing import Protocol, cast

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sepal_server.runs.driver import RunDriver
from sepal_server.settings import Settings


class HasRunDriver(Protocol):
    run_driver: RunDriver


class HasSettings(Protocol):
    settings: Settings


async def get_db_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.get_db_session() as session:
        yield session


async def get_readonly_db_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.get_db_session(read_only=True) as session:
        yield session


def get_session_maker(request: Request) -> async_sessionmaker[AsyncSession]:
    return cast(async_sessionmaker[AsyncSession], request.app.state.db_session_maker)


def get_run_driver(request: Request) -> RunDriver:
    state = cast(HasRunDriver, request.app.state)
    return state.run_driver


def get_settings(request: Request) -> Settings:
    state = cast(HasSettings, request.app.state)
    return getattr(state, "settings", Settings())
