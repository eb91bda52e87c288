"""Run a pass of the state machine and hand its events to one consumer.

Events are applied before they are forwarded: the envelope the consumer
receives is built from the committed record. The channel between the pass and
the consumer holds a single item, so a slow consumer slows the pass down
rather than letting events pile up in memory.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Set, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sepal_server.database import get_session
from sepal_server.entities.runs import Run
from sepal_server.events.event_types import CanonicalEvent, EventEnvelope
from sepal_server.events.formatters import RunsFormatter
from sepal_server.providers.base import ProviderClient
from sepal_server.runs.applier import AppliedEventResult, EventApplier, MessageApplied, RunApplied, StepApplied
from sepal_server.runs.errors import RunNotFoundError
from sepal_server.runs.prompt_builder import HistoryLoader
from sepal_server.runs.state_machine import GetMessages, handle_run
from sepal_server.runs.statuses import InvalidRunTransitionError, RunStatus

logger = logging.getLogger(__name__)


class RunCancelledError(Exception):
    """The run was cancelled while a pass was in flight."""


class _Closed:
    pass


class _Failed:
    def __init__(self, error: BaseException) -> None:
        self.error = error


_CLOSED = _Closed()


class EventChannel:
    """Single-slot channel from a run pass to its one consumer."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Union[EventEnvelope, _Closed, _Failed]]" = asyncio.Queue(maxsize=1)
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    async def send(self, envelope: EventEnvelope) -> None:
        if not self._detached:
            await self._queue.put(envelope)

    async def fail(self, error: BaseException) -> None:
        if not self._detached:
            await self._queue.put(_Failed(error))

    async def close(self) -> None:
        if not self._detached:
            await self._queue.put(_CLOSED)

    def detach(self) -> None:
        """The consumer has gone away; later sends are dropped."""
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[EventEnvelope]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Closed):
                return
            if isinstance(item, _Failed):
                raise item.error
            yield item


def applied_record(result: AppliedEventResult) -> Any:
    if isinstance(result, RunApplied):
        return result.run
    if isinstance(result, MessageApplied):
        return result.message
    if isinstance(result, StepApplied):
        return result.step
    raise TypeError(f"Unknown applied result: {type(result).__name__}")


class RunDriver:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        provider: ProviderClient,
        *,
        stream: bool = True,
        get_messages: Optional[GetMessages] = None,
    ) -> None:
        self._session_maker = session_maker
        self._provider = provider
        self._stream = stream
        self._applier = EventApplier(session_maker)
        self._formatter = RunsFormatter()
        self._get_messages = get_messages or HistoryLoader(session_maker)
        self._tasks: Set["asyncio.Task[None]"] = set()

    async def _load_run(self, run_id: str) -> Optional[Run]:
        async with get_session(self._session_maker, read_only=True) as session:
            return await session.get(Run, run_id)

    async def _apply_and_forward(
        self, run_id: str, event: CanonicalEvent, channel: EventChannel
    ) -> Optional[AppliedEventResult]:
        run = await self._load_run(run_id)
        if run is not None and run.status == RunStatus.CANCELLED:
            raise RunCancelledError(run_id)

        try:
            result = await self._applier.apply(event)
        except InvalidRunTransitionError as e:
            if e.current == RunStatus.CANCELLED:
                raise RunCancelledError(e.run_id) from e
            raise

        if result is not None:
            await channel.send(self._formatter.format_event(event, applied_record(result)))
        return result

    async def _produce(self, run_id: str, channel: EventChannel) -> None:
        try:
            run = await self._load_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)

            async def on_event(event: CanonicalEvent) -> Optional[AppliedEventResult]:
                return await self._apply_and_forward(run_id, event, channel)

            await handle_run(run, on_event, self._get_messages, self._provider, stream=self._stream)
        except RunCancelledError:
            logger.info(f"Run {run_id} was cancelled, stopping")
        except Exception as e:
            logger.exception(f"Run {run_id} aborted")
            await channel.fail(e)
        finally:
            await channel.close()

    async def stream(self, run_id: str) -> AsyncIterator[EventEnvelope]:
        """Start a pass of ``run_id`` and yield its envelopes as they are applied.

        If the consumer stops early the pass keeps running to its end in the
        background; it just stops forwarding.
        """
        channel = EventChannel()
        task = asyncio.create_task(self._produce(run_id, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        try:
            async for envelope in channel:
                yield envelope
        finally:
            channel.detach()

    async def run(self, run_id: str) -> Optional[Run]:
        """Drive a pass to its end and return the run as persisted."""
        async for _ in self.stream(run_id):
            pass
        return await self._load_run(run_id)

    async def wait_idle(self) -> None:
        """Wait for passes whose consumers went away."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
