# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import inspect
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .link import SlotLink

__all__ = 'MessageContext', 'MessageHandler', 'FailureHandler', 'Dispatcher'  # noqa: RUF022


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageContext:
    destination: Hashable | None
    link: 'SlotLink'


type MessageHandler = Callable[[Any, MessageContext], Any | Awaitable[Any]]
type FailureHandler = Callable[[Exception, MessageContext], None]


class Dispatcher:
    """
    Deliver incoming requests to the registered message handlers.

    All handlers are called in the order they were registered. A handler
    answers a request by returning a value other than None, either directly
    or by returning an awaitable that produces it. The first answer becomes
    the response and answers from later handlers are dropped.

    Requests that arrive but cannot be delivered (their payload does not
    decode) are reported to the failure handlers instead.
    """

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []
        self._failure_handlers: list[FailureHandler] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        self._handlers.remove(handler)

    def add_failure_handler(self, handler: FailureHandler) -> None:
        self._failure_handlers.append(handler)

    def report_failure(self, error: Exception, context: MessageContext) -> None:
        for handler in list(self._failure_handlers):
            try:
                handler(error, context)
            except Exception:
                logger.exception('Failure handler %r failed', handler)

    async def dispatch(self, message: Any, context: MessageContext, respond: Callable[[Any], None]) -> bool:
        """Run the handlers for message and call respond at most once. Return True if a response was produced."""
        responded = False
        for handler in list(self._handlers):
            try:
                result = handler(message, context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception('Message handler %r failed', handler)
                continue
            if result is None:
                continue
            if responded:
                logger.debug('Dropping the response from %r as the request was already answered', handler)
                continue
            responded = True
            respond(result)
        return responded
