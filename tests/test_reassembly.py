# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import time

import pytest

from slotwire import codec
from slotwire.exceptions import MalformedPayload, ProtocolViolation
from slotwire.frames import DataFrame, FrameType
from slotwire.reassembly import Complete, ReassemblyBuffer


def make_frames(message, message_id='message-1', frame_type=FrameType.REQ, chunk_size=4) -> list[DataFrame]:
    return codec.fragment(message, frame_type=frame_type, message_id=message_id, chunk_size=chunk_size)


class TestReassembly:

    def test_in_order(self) -> None:
        buffer = ReassemblyBuffer()
        frames = make_frames({'op': 'ping'})
        assert len(frames) > 2
        results = [buffer.add(frame) for frame in frames]
        assert results[:-1] == [None] * (len(frames) - 1)
        assert results[-1] == Complete({'op': 'ping'})
        assert len(buffer) == 0

    def test_out_of_order(self) -> None:
        buffer = ReassemblyBuffer()
        frames = make_frames({'op': 'ping', 'data': list(range(10))})
        for frame in reversed(frames[1:]):
            assert buffer.add(frame) is None
        assert buffer.add(frames[0]) == Complete({'op': 'ping', 'data': list(range(10))})

    def test_duplicate_chunks_are_not_counted_twice(self) -> None:
        buffer = ReassemblyBuffer()
        first, second, *rest = make_frames({'op': 'ping'})
        assert rest
        assert buffer.add(first) is None
        assert buffer.add(first) is None
        assert buffer.add(second) is None
        assert buffer.add(second) is None
        assert (FrameType.REQ, 'message-1') in buffer
        results = [buffer.add(frame) for frame in rest]
        assert results[-1] == Complete({'op': 'ping'})

    def test_chunks_after_completion_are_ignored(self) -> None:
        buffer = ReassemblyBuffer()
        frames = make_frames('hello', chunk_size=100)
        assert len(frames) == 1
        assert buffer.add(frames[0]) == Complete('hello')
        assert buffer.add(frames[0]) is None
        assert len(buffer) == 0

    def test_request_and_response_are_separate(self) -> None:
        buffer = ReassemblyBuffer()
        request = make_frames('request', frame_type=FrameType.REQ)
        response = make_frames('response', frame_type=FrameType.RES)
        assert buffer.add(request[0]) is None
        assert buffer.add(response[0]) is None
        assert len(buffer) == 2
        assert [buffer.add(frame) for frame in request[1:]][-1] == Complete('request')
        assert [buffer.add(frame) for frame in response[1:]][-1] == Complete('response')

    def test_chunk_count_mismatch(self) -> None:
        buffer = ReassemblyBuffer()
        buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=0, total=3, payload='abc'))
        with pytest.raises(ProtocolViolation):
            buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=1, total=2, payload='def'))
        assert len(buffer) == 0

    def test_malformed_payload(self) -> None:
        buffer = ReassemblyBuffer()
        assert buffer.add(DataFrame(type=FrameType.RES, message_id='message-1', index=0, total=2, payload='AA')) is None
        with pytest.raises(MalformedPayload):
            buffer.add(DataFrame(type=FrameType.RES, message_id='message-1', index=1, total=2, payload='AA'))
        assert len(buffer) == 0

    def test_stale_entries_are_evicted(self) -> None:
        buffer = ReassemblyBuffer(stale_timeout=10)
        frames = make_frames({'op': 'ping'})
        buffer.add(frames[0])
        assert buffer.evict_stale() == 0
        assert len(buffer) == 1
        assert buffer.evict_stale(now=time.monotonic() + 100) == 1
        assert len(buffer) == 0

    def test_no_eviction_without_timeout(self) -> None:
        buffer = ReassemblyBuffer()
        buffer.add(make_frames({'op': 'ping'})[0])
        assert buffer.evict_stale(now=time.monotonic() + 10000) == 0
        assert len(buffer) == 1

    def test_clear(self) -> None:
        buffer = ReassemblyBuffer()
        frames = make_frames('hello', chunk_size=100)
        buffer.add(frames[0])
        buffer.clear()
        # the completed message history is cleared as well
        assert buffer.add(frames[0]) == Complete('hello')

    def test_announced_chunk_count_is_bounded(self) -> None:
        buffer = ReassemblyBuffer(max_message_bytes=1000)
        with pytest.raises(ProtocolViolation, match='announces'):
            buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=0, total=100000000000000, payload='AAAA'))
        assert len(buffer) == 0
        # without a limit, chunks are stored as they arrive instead of preallocated
        unbounded = ReassemblyBuffer()
        assert unbounded.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=0, total=100000000000000, payload='AAAA')) is None
        assert len(unbounded) == 1

    def test_message_size_is_bounded(self) -> None:
        buffer = ReassemblyBuffer(max_message_bytes=10)
        assert buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=0, total=3, payload='AAAA')) is None
        assert buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=0, total=3, payload='AAAA')) is None
        assert buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=1, total=3, payload='AAAA')) is None
        with pytest.raises(ProtocolViolation, match='exceeds'):
            buffer.add(DataFrame(type=FrameType.REQ, message_id='message-1', index=2, total=3, payload='AAAA'))
        assert len(buffer) == 0
        frames = make_frames('short', chunk_size=2)
        assert [buffer.add(frame) for frame in frames][-1] == Complete('short')
