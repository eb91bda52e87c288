import uuid
from typing import Any, AsyncGenerator, Dict, Generator, List, Sequence, Union

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from sepal_server import database
from sepal_server.dependencies import get_db_session, get_readonly_db_session, get_run_driver, get_session_maker
from sepal_server.entities.messages import Message
from sepal_server.entities.runs import Run
from sepal_server.entities.threads import Thread
from sepal_server.messages.store import create_message, text_content
from sepal_server.providers.base import FragmentStream
from sepal_server.runs.accumulator import Fragment, ToolCallFragment
from sepal_server.runs.driver import RunDriver

ScriptItem = Union[Fragment, Exception]


class ScriptedProvider:
    """Replays one scripted response per ``create`` call.

    A script is either an exception, raised from ``create``, or a list of
    fragments. Exceptions inside a fragment list are raised mid-stream.
    """

    def __init__(self, *scripts: Union[Exception, Sequence[ScriptItem]]) -> None:
        self.scripts = list(scripts)
        self.requests: List[Dict[str, Any]] = []
        self.closed = 0

    def add(self, script: Union[Exception, Sequence[ScriptItem]]) -> None:
        self.scripts.append(script)

    async def create(self, request: Dict[str, Any]) -> FragmentStream:
        self.requests.append(request)
        if not self.scripts:
            raise AssertionError("ScriptedProvider ran out of scripts")
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return self._replay(list(script))

    async def _replay(self, script: List[ScriptItem]) -> FragmentStream:
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed += 1


def text(value: str) -> Fragment:
    return Fragment(text=value)


def tool_call(
    index: int,
    arguments: str = "",
    *,
    id: Any = None,
    name: Any = None,
) -> Fragment:
    return Fragment(tool_calls=(ToolCallFragment(index=index, id=id, name=name, arguments=arguments),))


def _shared_memory_uri() -> str:
    return f"file:sepal_test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest_asyncio.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    await database.create_all_tables(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def thread(session_maker: async_sessionmaker[AsyncSession]) -> Thread:
    async with database.get_session(session_maker) as session:
        thread = Thread()
        session.add(thread)
    return thread


async def add_message(
    session_maker: async_sessionmaker[AsyncSession], thread_id: str, content: str, role: str = "user"
) -> None:
    async with database.get_session(session_maker) as session:
        await create_message(session, Message(thread_id=thread_id, role=role, content=text_content(content)))


@pytest_asyncio.fixture
async def run(session_maker: async_sessionmaker[AsyncSession], thread: Thread) -> Run:
    await add_message(session_maker, thread.id, "What is the weather in Paris?")
    async with database.get_session(session_maker) as session:
        run = Run(
            thread_id=thread.id,
            model="test-model",
            instructions="You are a weather bot.",
            tools=[{"type": "function", "function": {"name": "get_weather", "parameters": {"type": "object"}}}],
        )
        session.add(run)
    return run


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> None:
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = None


@pytest.fixture
def client(provider: ScriptedProvider) -> Generator[TestClient, None, None]:
    from starlette.routing import _DefaultLifespan

    from sepal_server.app import create_app

    shared_memory_uri = _shared_memory_uri()
    sync_engine = create_engine(f"sqlite+pysqlite:///{shared_memory_uri}", poolclass=StaticPool)
    SQLModel.metadata.create_all(sync_engine)

    engine = create_async_engine(f"sqlite+aiosqlite:///{shared_memory_uri}", echo=False, poolclass=StaticPool)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    driver = RunDriver(session_maker, provider)

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with database.get_session(session_maker) as session:
            yield session

    async def override_readonly_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with database.get_session(session_maker, read_only=True) as session:
            yield session

    app = create_app()

    app.router.lifespan_context = _DefaultLifespan(app.router)

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_readonly_db_session] = override_readonly_db_session
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_run_driver] = lambda: driver

    with TestClient(app) as test_client:
        yield test_client

    sync_engine.dispose()
