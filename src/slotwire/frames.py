# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Wire representation of the frames written to a slot.

Every write replaces the whole slot value with exactly one frame:

    INIT:<secret>
    ACK-INIT:<secret>
    MSG:[<secret>:]<REQ|RES>:<id>:<index>/<total>:<payload>
    ACK:[<secret>:]<id>:<index>

The secret segment is only present when the link negotiated a session
secret with its peer. Values that do not start with one of the frame
prefixes belong to somebody else sharing the slot and are not frames.
"""

import re
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar

from .exceptions import ProtocolViolation

__all__ = 'FrameType', 'Frame', 'InitFrame', 'InitAckFrame', 'DataFrame', 'AckFrame', 'parse_frame', 'new_message_id'  # noqa: RUF022


_token_re = re.compile(r'[^:\s]+')
_payload_re = re.compile(r'[A-Za-z0-9_-]*')
_sequence_re = re.compile(r'(?P<index>\d+)/(?P<total>\d+)')


class FrameType(StrEnum):
    REQ = 'REQ'
    RES = 'RES'


def _check_token(name: str, value: str) -> None:
    if not _token_re.fullmatch(value):
        raise ValueError(f'{name} must be a non-empty string without colons or whitespace: {value!r}')


@dataclass(frozen=True)
class InitFrame:
    secret: str

    prefix: ClassVar[str] = 'INIT'

    def __post_init__(self) -> None:
        _check_token('secret', self.secret)

    def to_wire(self) -> str:
        return f'{self.prefix}:{self.secret}'


@dataclass(frozen=True)
class InitAckFrame:
    secret: str

    prefix: ClassVar[str] = 'ACK-INIT'

    def __post_init__(self) -> None:
        _check_token('secret', self.secret)

    def to_wire(self) -> str:
        return f'{self.prefix}:{self.secret}'


@dataclass(frozen=True, kw_only=True)
class DataFrame:
    type: FrameType
    message_id: str
    index: int
    total: int
    payload: str
    secret: str | None = None

    prefix: ClassVar[str] = 'MSG'

    def __post_init__(self) -> None:
        _check_token('message_id', self.message_id)
        if self.secret is not None:
            _check_token('secret', self.secret)
        if not 0 <= self.index < self.total:
            raise ValueError(f'chunk index {self.index} is outside of the [0, {self.total}) range')
        if not _payload_re.fullmatch(self.payload):
            raise ValueError('payload contains characters outside of the transport alphabet')

    def to_wire(self) -> str:
        return self.header(self.type, self.message_id, self.index, self.total, secret=self.secret) + self.payload

    @classmethod
    def header(cls, frame_type: FrameType, message_id: str, index: int, total: int, *, secret: str | None = None) -> str:
        secret_segment = f'{secret}:' if secret is not None else ''
        return f'{cls.prefix}:{secret_segment}{frame_type}:{message_id}:{index}/{total}:'


@dataclass(frozen=True, kw_only=True)
class AckFrame:
    message_id: str
    index: int
    secret: str | None = None

    prefix: ClassVar[str] = 'ACK'

    def __post_init__(self) -> None:
        _check_token('message_id', self.message_id)
        if self.secret is not None:
            _check_token('secret', self.secret)
        if self.index < 0:
            raise ValueError('the acknowledged chunk index must be non-negative')

    def to_wire(self) -> str:
        secret_segment = f'{self.secret}:' if self.secret is not None else ''
        return f'{self.prefix}:{secret_segment}{self.message_id}:{self.index}'


type Frame = InitFrame | InitAckFrame | DataFrame | AckFrame


def parse_frame(value: str) -> Frame | None:  # noqa: C901
    """
    Parse a slot value into a frame.

    Return None if the value is not a protocol frame at all. Raise
    ProtocolViolation if it starts with a frame prefix but is malformed.
    """
    prefix, separator, rest = value.partition(':')
    if not separator:
        return None
    try:
        match prefix:
            case InitFrame.prefix:
                return InitFrame(rest)
            case InitAckFrame.prefix:
                return InitAckFrame(rest)
            case DataFrame.prefix:
                match rest.split(':'):
                    case [frame_type, message_id, sequence, payload]:
                        secret = None
                    case [secret, frame_type, message_id, sequence, payload]:
                        pass
                    case _:
                        raise ProtocolViolation(f'Invalid data frame: {value[:80]!r}')
                if (sequence_match := _sequence_re.fullmatch(sequence)) is None:
                    raise ProtocolViolation(f'Invalid chunk sequence {sequence!r} in data frame')
                return DataFrame(
                    type=FrameType(frame_type),
                    message_id=message_id,
                    index=int(sequence_match['index']),
                    total=int(sequence_match['total']),
                    payload=payload,
                    secret=secret,
                )
            case AckFrame.prefix:
                match rest.split(':'):
                    case [message_id, index]:
                        secret = None
                    case [secret, message_id, index]:
                        pass
                    case _:
                        raise ProtocolViolation(f'Invalid ack frame: {value[:80]!r}')
                if not index.isdigit():
                    raise ProtocolViolation(f'Invalid chunk index {index!r} in ack frame')
                return AckFrame(message_id=message_id, index=int(index), secret=secret)
            case _:
                return None
    except ProtocolViolation:
        raise
    except ValueError as exc:
        raise ProtocolViolation(f'Invalid {prefix} frame: {exc}') from exc


def new_message_id() -> str:
    return str(uuid.uuid4())
