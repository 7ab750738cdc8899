# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from asyncio import AbstractEventLoop, CancelledError, Future, get_running_loop
from collections import deque
from typing import Self

from . import exceptions

__all__ = 'Channel',  # noqa: COM818


class ReaderQueue[T](deque[Future[T]]):
    def discard(self, future: Future[T]) -> None:
        try:  # noqa: SIM105
            self.remove(future)
        except ValueError:
            pass


class Channel[T]:
    """
    An unbounded FIFO channel between producers and a consumer task.

    Sending never blocks. Receiving waits until a value is available or
    the channel is closed. After closing, the values that are still queued
    can be taken out with :meth:`drain`, for example to notify their
    owners that they will never be processed.
    """

    def __init__(self) -> None:
        self._queue = deque[T]()
        self._readers = ReaderQueue[T]()
        self._closed = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: queued={len(self._queue)}, closed={self._closed}>'

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def _loop(self) -> AbstractEventLoop:
        loop = get_running_loop()
        if '_loop' not in self.__dict__ and self.__dict__.setdefault('_loop', loop) is not loop:
            raise RuntimeError(f'{self!r} is bound to a different event loop')
        return loop

    @property
    def closed(self) -> bool:
        return self._closed

    def send_nowait(self, value: T) -> None:
        if self._closed:
            raise exceptions.ClosedResourceError
        while self._readers:
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_result(value)
                return
        self._queue.append(value)

    def receive_nowait(self) -> T:
        if self._queue:
            return self._queue.popleft()
        if self._closed:
            raise exceptions.EndOfChannel
        raise exceptions.WouldBlock

    async def receive(self) -> T:
        try:
            return self.receive_nowait()
        except exceptions.WouldBlock:
            future = self._loop.create_future()
            self._readers.append(future)
            try:
                return await future
            except CancelledError:
                self._readers.discard(future)
                raise

    def drain(self) -> list[T]:
        """Remove and return all the queued values"""
        values = list(self._queue)
        self._queue.clear()
        return values

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._readers:
            # terminate pending readers as they would otherwise wait forever.
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_exception(exceptions.EndOfChannel)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.receive()
        except exceptions.EndOfChannel as exc:
            raise StopAsyncIteration from exc
