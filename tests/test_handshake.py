# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import unittest

import pytest

from slotwire import Configuration, HandshakeTimeout, MemorySlot, Role, SlotLink
from slotwire.aio import ClosedResourceError
from slotwire.frames import InitAckFrame, InitFrame
from slotwire.handshake import Handshake, generate_secret


async def settle(iterations: int = 20) -> None:
    for _ in range(iterations):
        await asyncio.sleep(0)


class TestHandshake:

    def test_secret(self) -> None:
        secrets = {generate_secret() for _ in range(50)}
        assert len(secrets) == 50
        for secret in secrets:
            InitFrame(secret)  # the secret is usable inside a frame

    def test_initiator(self) -> None:
        handshake = Handshake(Role.Initiator)
        init = handshake.begin()
        assert handshake.secret == init.secret
        assert not handshake.established
        assert not handshake.matches(init.secret)
        assert handshake.matches(init.secret, pending=True)
        assert handshake.receive(InitAckFrame('other')) is None
        assert not handshake.established
        assert handshake.receive(InitAckFrame(init.secret)) is None
        assert handshake.established
        assert handshake.matches(init.secret)
        assert not handshake.matches(None)
        # an initiator ignores INIT frames
        assert handshake.receive(InitFrame('other')) is None
        assert handshake.secret == init.secret

    def test_responder(self) -> None:
        handshake = Handshake(Role.Responder)
        assert not handshake.matches('secret')
        with pytest.raises(RuntimeError):
            handshake.begin()
        assert handshake.receive(InitAckFrame('secret')) is None
        assert not handshake.established
        assert handshake.receive(InitFrame('secret')) == InitAckFrame('secret')
        assert handshake.established
        assert handshake.matches('secret')
        # a new INIT replaces the session secret
        assert handshake.receive(InitFrame('renewed')) == InitAckFrame('renewed')
        assert handshake.matches('renewed')
        assert not handshake.matches('secret')
        # only an initiator treats tagged traffic as a confirmation
        assert not handshake.confirm('renewed')

    def test_implicit_confirmation(self) -> None:
        handshake = Handshake(Role.Initiator)
        assert not handshake.confirm('anything')
        init = handshake.begin()
        assert not handshake.confirm('other')
        assert not handshake.confirm(None)
        assert not handshake.established
        assert handshake.confirm(init.secret)
        assert handshake.established
        assert not handshake.confirm(init.secret)


class TestSessionSecret(unittest.IsolatedAsyncioTestCase):

    async def test_handshake(self) -> None:
        slot = MemorySlot()
        async with SlotLink(slot.port(), role=Role.Responder) as server, SlotLink(slot.port(), role=Role.Initiator) as client:
            server.on_message(lambda message, context: {'op': 'pong'} if message == {'op': 'ping'} else None)
            assert await client.send({'op': 'ping'}) == {'op': 'pong'}
            assert client.ready
            assert server.ready
            assert client.secret is not None
            assert client.secret == server.secret
            assert slot.history[:2] == [f'INIT:{client.secret}', f'ACK-INIT:{client.secret}']
            assert all(value.startswith(('MSG:' + client.secret, 'ACK:' + client.secret)) for value in slot.history[2:])

    async def test_responder_started_late(self) -> None:
        slot = MemorySlot()
        async with SlotLink(slot.port(), role=Role.Initiator) as client:
            await settle()
            # the INIT frame is still in the slot when the responder starts
            async with SlotLink(slot.port(), role=Role.Responder) as server:
                server.on_message(lambda message, context: message)
                assert await client.send('echo') == 'echo'

    async def test_foreign_secret_is_ignored(self) -> None:
        slot = MemorySlot()
        peer = slot.port()
        async with SlotLink(slot.port(), role=Role.Responder) as server:
            server.on_message(lambda message, context: 'answer')
            peer.write('INIT:secret')
            await settle()
            assert server.secret == 'secret'
            assert slot.history == ['INIT:secret', 'ACK-INIT:secret']
            # neither untagged frames nor frames tagged with another secret are acknowledged
            peer.write('MSG:REQ:request-1:0/1:InBpbmci')
            await settle()
            peer.write('MSG:other:REQ:request-1:0/1:InBpbmci')
            await settle()
            peer.write('ACK:other:request-1:0')
            await settle()
            assert slot.history[-1] == 'ACK:other:request-1:0'
            assert len(slot.history) == 5
            assert len(server.reassembly) == 0
            assert server.secret == 'secret'
            peer.write('MSG:secret:REQ:request-1:0/1:InBpbmci')
            await settle()
            assert slot.history[6] == 'ACK:secret:request-1:0'

    async def test_lost_init_acknowledgment(self) -> None:
        slot = MemorySlot()
        peer = slot.port()
        async with SlotLink(slot.port(), role=Role.Initiator) as client:
            await settle()
            secret = client.handshake.secret
            assert slot.history == [f'INIT:{secret}']
            assert not client.ready
            # the responder sends a request right after confirming the secret and
            # the client only observes the last write
            peer.write(f'ACK-INIT:{secret}')
            peer.write(f'MSG:{secret}:REQ:peer-1:0/1:InBpbmci')
            await settle()
            assert client.ready
            assert client.secret == secret
            assert slot.history[-1] == f'ACK:{secret}:peer-1:0'

    async def test_handshake_timeout(self) -> None:
        configuration = Configuration(handshake_timeout=0.1)
        link = SlotLink(MemorySlot().port(), role=Role.Initiator, configuration=configuration)
        with pytest.raises(HandshakeTimeout):
            await link.send({'op': 'ping'})
        assert link.closed
        assert not link.ready
        with pytest.raises(ClosedResourceError):
            await link.send({'op': 'ping'})
