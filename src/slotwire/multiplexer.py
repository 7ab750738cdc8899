# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import logging
from collections.abc import Callable, Hashable, Iterator
from typing import Any, Self

from . import aio
from .configuration import Configuration
from .dispatch import Dispatcher, FailureHandler, MessageHandler
from .frames import new_message_id
from .handshake import Role
from .link import SlotLink
from .slot import Slot

__all__ = 'Multiplexer',  # noqa: COM818


logger = logging.getLogger(__name__)


class Multiplexer[D: Hashable]:
    """
    Hold an independent link with each destination.

    The resolver maps a destination handle to the slot that is shared with
    that destination. Links are created the first time a destination is
    used and live until the destination is closed. All links share the same
    message handlers, which get the destination in the message context.
    """

    def __init__(
        self,
        resolver: Callable[[D], Slot],
        *,
        configuration: Configuration | None = None,
        role: Role | None = None,
        id_factory: Callable[[], str] = new_message_id,
    ) -> None:
        self.configuration = configuration or Configuration()
        self.dispatcher = Dispatcher()
        self._resolver = resolver
        self._role = role
        self._id_factory = id_factory
        self._links: dict[D, SlotLink] = {}
        self._closed = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {len(self._links)} links, role={self._role!r}>'

    def __len__(self) -> int:
        return len(self._links)

    def __contains__(self, destination: object) -> bool:
        return destination in self._links

    def __iter__(self) -> Iterator[D]:
        return iter(list(self._links))

    @property
    def closed(self) -> bool:
        return self._closed

    async def link(self, destination: D) -> SlotLink:
        """Return the link with destination, creating it if needed"""
        if self._closed:
            raise aio.ClosedResourceError
        link = self._links.get(destination)
        if link is None or link.closed:
            link = self._links[destination] = SlotLink(
                self._resolver(destination),
                configuration=self.configuration,
                role=self._role,
                dispatcher=self.dispatcher,
                destination=destination,
                id_factory=self._id_factory,
            )
            logger.debug('Created link for destination %r', destination)
            await link.start()
        return link

    async def send(self, destination: D, message: Any) -> Any:
        link = await self.link(destination)
        return await link.send(message)

    def on_message(self, handler: MessageHandler) -> None:
        self.dispatcher.add_handler(handler)

    def on_failure(self, handler: FailureHandler) -> None:
        self.dispatcher.add_failure_handler(handler)

    async def close(self, destination: D) -> None:
        """Tear down the link with destination, failing its pending requests with ClosedResourceError"""
        link = self._links.pop(destination, None)
        if link is not None:
            await link.close()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        links, self._links = self._links, {}
        async with asyncio.TaskGroup() as group:
            for link in links.values():
                group.create_task(link.close())

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        await self.aclose()
