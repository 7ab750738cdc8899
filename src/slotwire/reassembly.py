# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar

from . import codec
from .exceptions import ProtocolViolation
from .frames import DataFrame, FrameType

__all__ = 'Complete', 'ReassemblyEntry', 'ReassemblyBuffer'  # noqa: RUF022


logger = logging.getLogger(__name__)


type EntryKey = tuple[FrameType, str]


@dataclass(frozen=True)
class Complete:
    message: Any


@dataclass
class ReassemblyEntry:
    total: int
    chunks: dict[int, str] = field(init=False, default_factory=dict)
    size: int = field(init=False, default=0)
    last_seen: float = field(init=False, default_factory=time.monotonic)

    @property
    def filled(self) -> int:
        return len(self.chunks)

    @property
    def complete(self) -> bool:
        return len(self.chunks) == self.total

    def store(self, index: int, payload: str) -> None:
        self.size += len(payload) - len(self.chunks.get(index, ''))
        self.chunks[index] = payload
        self.last_seen = time.monotonic()

    def payloads(self) -> list[str]:
        return [self.chunks[index] for index in range(self.total)]


class ReassemblyBuffer:
    """
    Collect the chunks of incoming messages until they are complete.

    Entries are keyed by frame type and message id, as a response uses the
    same message id as the request it answers. The chunk count reported by
    the first chunk seen for a message is authoritative. Completion is
    decided by counting the distinct chunks received, so duplicated or out
    of order chunks are handled correctly.

    Entries that see no activity for longer than stale_timeout seconds are
    evicted, so that a peer that stops halfway through a message does not
    leave it in the buffer forever.

    The keys of the last few completed messages are remembered, so that a
    chunk that is observed again after its message was completed does not
    start a new entry and deliver the message twice.

    When max_message_bytes is set, a message that announces more chunks
    than that or whose chunks add up to more bytes is rejected, as it could
    never be accepted once complete.
    """

    completed_history: ClassVar[int] = 128

    def __init__(self, *, stale_timeout: float | None = None, max_message_bytes: int | None = None) -> None:
        self.stale_timeout = stale_timeout
        self.max_message_bytes = max_message_bytes
        self._entries: dict[EntryKey, ReassemblyEntry] = {}
        self._completed: dict[EntryKey, None] = {}  # insertion ordered set

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(stale_timeout={self.stale_timeout!r}, max_message_bytes={self.max_message_bytes!r})'

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def add(self, frame: DataFrame) -> Complete | None:
        """
        Store a chunk and return the decoded message once all chunks arrived.

        Raise ProtocolViolation if the chunk contradicts previous chunks of the
        same message or the message exceeds the size limit (the partial
        message is dropped) and MalformedPayload if the reassembled payload
        cannot be decoded.
        """
        self.evict_stale()
        key = (frame.type, frame.message_id)
        if key in self._completed:
            logger.debug('Ignoring chunk %d of the already completed %s message %s', frame.index, frame.type, frame.message_id)
            return None
        entry = self._entries.get(key)
        # DataFrame guarantees 0 <= index < total, so once the chunk count
        # matches the entry, the index is known to be in range.
        if entry is None:
            # every chunk except the one of an empty message holds at least one byte
            if self.max_message_bytes is not None and frame.total > self.max_message_bytes:
                raise ProtocolViolation(f'Message {frame.message_id} announces {frame.total} chunks, more than the {self.max_message_bytes} bytes limit allows')
            entry = self._entries[key] = ReassemblyEntry(frame.total)
        elif frame.total != entry.total:
            del self._entries[key]
            raise ProtocolViolation(f'Chunk count changed from {entry.total} to {frame.total} for message {frame.message_id}')
        entry.store(frame.index, frame.payload)
        if self.max_message_bytes is not None and entry.size > self.max_message_bytes:
            del self._entries[key]
            raise ProtocolViolation(f'Message {frame.message_id} exceeds the {self.max_message_bytes} bytes limit')
        if not entry.complete:
            return None
        del self._entries[key]
        self._completed[key] = None
        if len(self._completed) > self.completed_history:
            del self._completed[next(iter(self._completed))]
        return Complete(codec.defragment(entry.payloads()))

    def evict_stale(self, now: float | None = None) -> int:
        if self.stale_timeout is None or not self._entries:
            return 0
        if now is None:
            now = time.monotonic()
        stale_keys = [key for key, entry in self._entries.items() if now - entry.last_seen > self.stale_timeout]
        for key in stale_keys:
            entry = self._entries.pop(key)
            logger.debug('Evicted stale partial %s message %s (%d of %d chunks received)', key[0], key[1], entry.filled, entry.total)
        return len(stale_keys)

    def clear(self) -> None:
        self._entries.clear()
        self._completed.clear()
