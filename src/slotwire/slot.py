# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
The slot is the only channel between two endpoints.

It holds a single string value. Writing replaces the value and observers
get notified when the value changes. Notifications are edge triggered and
may coalesce: an observer is only guaranteed to see the latest value, not
every value that was written in between.
"""

import asyncio
from collections.abc import Callable
from typing import Protocol

from .exceptions import SlotOverflow

__all__ = 'Slot', 'SlotCallback', 'MemorySlot', 'SlotPort'  # noqa: RUF022


type SlotCallback = Callable[[str], None]


class Slot(Protocol):
    @property
    def value(self) -> str: ...

    def write(self, value: str) -> None: ...

    def subscribe(self, callback: SlotCallback, /) -> Callable[[], None]:
        """Call callback with the current value whenever it changes. Return a function that cancels the subscription."""
        ...


class MemorySlot:
    """
    An in-process slot shared by any number of ports.

    Each party uses its own port to access the slot. A write that changes
    the value notifies the subscribers of all the other ports, on the next
    iteration of the event loop. Multiple writes before the notification
    runs are coalesced and the subscribers only see the latest value.
    If the latest value was written by the port itself, its subscribers
    are not notified at all.
    """

    def __init__(self, value: str = '', *, max_size: int | None = None) -> None:
        self.max_size = max_size
        self.history: list[str] = []
        self._value = value
        self._writer: SlotPort | None = None
        self._ports: list[SlotPort] = []

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self._value!r}, max_size={self.max_size!r})'

    @property
    def value(self) -> str:
        return self._value

    def port(self) -> 'SlotPort':
        port = SlotPort(self)
        self._ports.append(port)
        return port

    def _write(self, port: 'SlotPort', value: str) -> None:
        if self.max_size is not None and len(value.encode()) > self.max_size:
            raise SlotOverflow(f'Cannot write {len(value.encode())} bytes into a slot that holds at most {self.max_size} bytes')
        if value == self._value:
            return
        self._value = value
        self._writer = port
        self.history.append(value)
        for other in self._ports:
            if other is not port:
                other._schedule_notification()


class SlotPort:
    def __init__(self, slot: MemorySlot) -> None:
        self.slot = slot
        self._callbacks: list[SlotCallback] = []
        self._notification_scheduled = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__} of {self.slot!r}>'

    @property
    def value(self) -> str:
        return self.slot.value

    def write(self, value: str) -> None:
        self.slot._write(self, value)

    def subscribe(self, callback: SlotCallback, /) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _schedule_notification(self) -> None:
        if self._notification_scheduled or not self._callbacks:
            return
        self._notification_scheduled = True
        asyncio.get_running_loop().call_soon(self._notify)

    def _notify(self) -> None:
        self._notification_scheduled = False
        if self.slot._writer is self:
            return
        value = self.slot.value
        for callback in list(self._callbacks):
            callback(value)
