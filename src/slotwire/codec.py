# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Message encoding and fragmentation.

A message is serialized to compact JSON, encoded as UTF-8 and then as
URL-safe base64 without padding, which only uses characters that are
legal inside a slot value (letters, digits, '-' and '_'). The resulting
text is split into chunks that fit into a single frame together with
the frame header.
"""

import binascii
import json
from base64 import urlsafe_b64decode, urlsafe_b64encode
from collections.abc import Iterable
from math import ceil
from typing import Any

from .exceptions import MalformedPayload
from .frames import DataFrame, FrameType

__all__ = 'MAX_SLOT_BYTES', 'FRAME_OVERHEAD', 'MAX_MESSAGE_BYTES', 'encode_payload', 'decode_payload', 'split', 'fragment', 'defragment', 'chunk_size_for'  # noqa: RUF022


MAX_SLOT_BYTES = 4000  # the largest value a slot write may hold
FRAME_OVERHEAD = 120   # the minimum number of bytes reserved for the frame header
MAX_MESSAGE_BYTES = 16 * 1024 * 1024  # the largest encoded message accepted by a peer


def encode_payload(message: Any) -> str:
    data = json.dumps(message, separators=(',', ':'), ensure_ascii=False, allow_nan=False).encode('utf-8')
    return urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def decode_payload(text: str) -> Any:
    try:
        data = urlsafe_b64decode(text + '=' * (-len(text) % 4))
        return json.loads(data.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload(f'Cannot decode message payload: {exc}') from exc


def split(text: str, chunk_size: int) -> list[str]:
    """Split text into ordered chunks of at most chunk_size characters (at least one chunk)"""
    if chunk_size < 1:
        raise ValueError('chunk_size must be a positive integer')
    if not text:
        return ['']
    return [text[position:position + chunk_size] for position in range(0, len(text), chunk_size)]


def chunk_size_for(text_length: int, frame_type: FrameType, message_id: str, *, max_slot_bytes: int, frame_overhead: int, secret: str | None = None) -> int:
    """
    Compute the chunk size that keeps every frame within max_slot_bytes.

    At least frame_overhead bytes are reserved for the frame header. If the
    actual header for this message is longer than that (very long message
    ids or secrets), the reservation grows to the actual header length.
    The header length depends on the number of chunks, which in turn depends
    on the chunk size, so iterate until the chunk count is stable.
    """
    total = 1
    while True:
        header_length = len(DataFrame.header(frame_type, message_id, total, total, secret=secret).encode())
        chunk_size = max_slot_bytes - max(frame_overhead, header_length)
        if chunk_size < 1:
            raise ValueError(f'A slot of {max_slot_bytes} bytes cannot hold a frame header of {header_length} bytes')
        required_total = max(1, ceil(text_length / chunk_size))
        if len(str(required_total)) <= len(str(total)):
            return chunk_size
        total = required_total


def fragment(  # noqa: PLR0913
    message: Any,
    *,
    frame_type: FrameType,
    message_id: str,
    max_slot_bytes: int = MAX_SLOT_BYTES,
    frame_overhead: int = FRAME_OVERHEAD,
    secret: str | None = None,
    chunk_size: int | None = None,
    max_message_bytes: int | None = None,
) -> list[DataFrame]:
    text = encode_payload(message)
    if max_message_bytes is not None and len(text) > max_message_bytes:
        raise ValueError(f'The encoded message has {len(text)} bytes, more than the {max_message_bytes} bytes limit')
    if chunk_size is None:
        chunk_size = chunk_size_for(len(text), frame_type, message_id, max_slot_bytes=max_slot_bytes, frame_overhead=frame_overhead, secret=secret)
    chunks = split(text, chunk_size)
    total = len(chunks)
    return [
        DataFrame(type=frame_type, message_id=message_id, index=index, total=total, payload=chunk, secret=secret)
        for index, chunk in enumerate(chunks)
    ]


def defragment(payloads: Iterable[str]) -> Any:
    """Join the chunk payloads (in index order) and decode the message"""
    return decode_payload(''.join(payloads))
