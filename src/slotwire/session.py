# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import contextlib
import logging
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Protocol

from . import aio
from .configuration import Configuration
from .correlation import CorrelationTable
from .exceptions import SlotwireError
from .frames import DataFrame, FrameType

__all__ = 'SessionState', 'OutgoingRequest', 'Transmission', 'OutgoingSession'  # noqa: RUF022


logger = logging.getLogger(__name__)


class SessionState(Enum):
    Idle = 'idle'
    Sending = 'sending'

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'


class SessionOwner(Protocol):
    configuration: Configuration
    correlation: CorrelationTable

    def new_message_id(self) -> str: ...

    def fragment(self, message: Any, frame_type: FrameType, message_id: str) -> list[DataFrame]: ...

    def transmit(self, frames: Sequence[DataFrame]) -> asyncio.Task[None]: ...

    async def wait_ready(self) -> None: ...


@dataclass
class OutgoingRequest:
    message: Any
    response: asyncio.Future[Any] = field(init=False, default_factory=asyncio.Future)

    def __await__(self) -> Generator[Any, None, Any]:
        return self.response.__await__()

    def notify_sender(self, result: Any = None, *, status: type[Exception] | Exception | None = None) -> None:
        if self.response.done():
            return
        if status is None:
            self.response.set_result(result)
        else:
            self.response.set_exception(status)


class Transmission:
    """
    Write the chunks of a message to the slot using stop-and-wait.

    Each chunk is written only after the previous chunk was acknowledged,
    which means there is never more than one unconfirmed chunk in the slot.
    Acknowledgments for any other chunk than the one in the slot are
    ignored.
    """

    def __init__(self, frames: Sequence[DataFrame], write: Callable[[DataFrame], None]) -> None:
        if not frames:
            raise ValueError('Cannot transmit a message without chunks')
        self.frames = frames
        self.message_id = frames[0].message_id
        self._write = write
        self._expected_index: int | None = None
        self._acknowledged: asyncio.Future[None] | None = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.frames[0].type} {self.message_id}, {len(self.frames)} chunks, waiting for {self._expected_index}>'

    @property
    def expected_index(self) -> int | None:
        return self._expected_index

    def acknowledge(self, index: int) -> bool:
        """Record the acknowledgment for a chunk. Return False if it is not for the chunk in the slot."""
        if index != self._expected_index or self._acknowledged is None or self._acknowledged.done():
            return False
        self._acknowledged.set_result(None)
        return True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            for frame in self.frames:
                self._expected_index = frame.index
                self._acknowledged = loop.create_future()
                self._write(frame)
                await self._acknowledged
        finally:
            self._expected_index = None
            self._acknowledged = None


class OutgoingSession:
    """
    Send requests to the peer one at a time, in the order they were made.

    A request is only taken from the queue after the previous one got its
    response or timed out. The request chunks are transmitted with
    stop-and-wait and then the response is awaited, all within the request
    deadline.
    """

    def __init__(self, owner: SessionOwner, *, name: str = '') -> None:
        self.name = name
        self.state = SessionState.Idle
        self._owner = owner
        self._queue = aio.Channel[OutgoingRequest]()
        self._current: OutgoingRequest | None = None
        self._sender_task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__} {self.name}: {self.state!r}, queued={len(self._queue)}>'

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> bool:
        return self.state is SessionState.Sending

    @property
    def closed(self) -> bool:
        return self._queue.closed

    def start(self) -> None:
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._sender_loop(), name=f'OutgoingSession {self.name} sender')

    async def send(self, message: Any) -> Any:
        if self._queue.closed:
            raise aio.ClosedResourceError
        self._queue.send_nowait(request := OutgoingRequest(message))
        return await request

    async def close(self, status: type[Exception] | Exception = aio.ClosedResourceError) -> None:
        self._queue.close()
        for request in self._queue.drain():
            request.notify_sender(status=status)
        if self._current is not None:
            self._current.notify_sender(status=status)
        if self._sender_task is not None and self._sender_task is not asyncio.current_task():
            self._sender_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sender_task

    async def _sender_loop(self) -> None:
        async for request in self._queue:
            if request.response.done():
                continue  # the sender is no longer waiting for it
            self._current = request
            try:
                await self._owner.wait_ready()
                self.state = SessionState.Sending
                response = await self._round_trip(request.message)
            except (SlotwireError, aio.BrokenResourceError, aio.ClosedResourceError, TypeError, ValueError) as exc:
                request.notify_sender(status=exc)
            else:
                request.notify_sender(response)
            finally:
                self._current = None
                self.state = SessionState.Idle

    async def _round_trip(self, message: Any) -> Any:
        owner = self._owner
        message_id = owner.new_message_id()
        frames = owner.fragment(message, FrameType.REQ, message_id)
        pending = owner.correlation.add(message_id)
        logger.debug('Sending request %s in %d chunks on %s', message_id, len(frames), self.name)
        transmission = owner.transmit(frames)
        transmission.add_done_callback(partial(self._transmission_done, message_id))
        try:
            return await owner.correlation.wait(pending, owner.configuration.request_timeout)
        except TimeoutError:
            logger.warning('Request %s on %s timed out', message_id, self.name)
            raise
        finally:
            # the response may arrive before the last acknowledgment was seen
            transmission.cancel()

    def _transmission_done(self, message_id: str, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and (exc := task.exception()) is not None:
            self._owner.correlation.fail(message_id, exc)
