# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
from dataclasses import dataclass, field
from typing import Any

from .exceptions import RequestTimeout

__all__ = 'PendingRequest', 'CorrelationTable'  # noqa: RUF022


@dataclass
class PendingRequest:
    message_id: str
    response: asyncio.Future[Any] = field(init=False, default_factory=asyncio.Future)

    def notify_done(self, result: Any = None, *, status: type[Exception] | Exception | None = None) -> bool:
        if self.response.done():
            return False
        if status is None:
            self.response.set_result(result)
        else:
            self.response.set_exception(status)
        return True


class CorrelationTable:
    """Map the ids of the requests that are in flight to their pending responses"""

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._pending

    def add(self, message_id: str) -> PendingRequest:
        if message_id in self._pending:
            raise ValueError(f'A request with id {message_id!r} is already in flight')
        request = self._pending[message_id] = PendingRequest(message_id)
        return request

    def resolve(self, message_id: str, message: Any) -> bool:
        """Complete the request with the response message. Return False if no such request is in flight."""
        request = self._pending.pop(message_id, None)
        return request is not None and request.notify_done(message)

    def fail(self, message_id: str, status: type[Exception] | Exception) -> bool:
        request = self._pending.pop(message_id, None)
        return request is not None and request.notify_done(status=status)

    def fail_all(self, status: type[Exception] | Exception) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.notify_done(status=status)

    async def wait(self, request: PendingRequest, timeout: float | None) -> Any:
        """
        Wait for the response to the request for at most timeout seconds.

        The request is removed from the table when this returns, no matter
        the outcome. Raise RequestTimeout if the deadline passes first.
        """
        try:
            async with asyncio.timeout(timeout):
                return await asyncio.shield(request.response)
        except TimeoutError:
            if not request.response.done():
                request.response.cancel()
                raise RequestTimeout(f'No response for request {request.message_id} within {timeout} seconds') from None
            if request.response.exception() is None:
                return request.response.result()  # the response arrived just as the deadline passed
            raise  # the request itself failed with a TimeoutError
        finally:
            if self._pending.get(request.message_id) is request:
                del self._pending[request.message_id]
