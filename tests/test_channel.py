# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import unittest

import pytest

from slotwire.aio import Channel, ClosedResourceError, EndOfChannel, WouldBlock


class TestChannel(unittest.IsolatedAsyncioTestCase):

    async def test_fifo(self) -> None:
        channel = Channel[int]()
        for value in range(5):
            channel.send_nowait(value)
        assert len(channel) == 5
        assert [await channel.receive() for _ in range(5)] == [0, 1, 2, 3, 4]
        with pytest.raises(WouldBlock):
            channel.receive_nowait()

    async def test_waiting_receiver(self) -> None:
        channel = Channel[str]()
        receiver = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)
        channel.send_nowait('value')
        assert await receiver == 'value'
        assert len(channel) == 0

    async def test_cancelled_receiver(self) -> None:
        channel = Channel[str]()
        receiver = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)
        receiver.cancel()
        with pytest.raises(asyncio.CancelledError):
            await receiver
        channel.send_nowait('value')
        assert channel.receive_nowait() == 'value'

    async def test_close(self) -> None:
        channel = Channel[str]()
        receiver = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)
        channel.close()
        with pytest.raises(EndOfChannel):
            await receiver
        with pytest.raises(ClosedResourceError):
            channel.send_nowait('value')
        assert channel.closed

    async def test_drain(self) -> None:
        channel = Channel[str]()
        channel.send_nowait('one')
        channel.send_nowait('two')
        channel.close()
        assert channel.drain() == ['one', 'two']
        with pytest.raises(EndOfChannel):
            channel.receive_nowait()

    async def test_async_iteration(self) -> None:
        with Channel[int]() as channel:
            for value in range(3):
                channel.send_nowait(value)
        assert [value async for value in channel] == [0, 1, 2]
