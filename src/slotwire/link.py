# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import logging
from collections.abc import Callable, Coroutine, Hashable, Sequence
from typing import Any, Self

from . import aio, codec
from .configuration import Configuration
from .correlation import CorrelationTable
from .dispatch import Dispatcher, FailureHandler, MessageContext, MessageHandler
from .exceptions import HandshakeTimeout, MalformedPayload, ProtocolViolation
from .frames import AckFrame, DataFrame, Frame, FrameType, InitAckFrame, InitFrame, new_message_id, parse_frame
from .handshake import Handshake, Role
from .reassembly import Complete, ReassemblyBuffer
from .session import OutgoingSession, Transmission
from .slot import Slot

__all__ = 'SlotLink',  # noqa: COM818


logger = logging.getLogger(__name__)


class SlotLink:
    """
    A request/response channel with the peer on the other side of a slot.

    Requests made with send() are delivered in order, one at a time, and
    send() returns the response produced by the peer's message handlers.
    Requests from the peer are delivered to the handlers registered with
    on_message() and their answer is sent back as the response.

    When a role is given, the link first negotiates a session secret with
    the peer and ignores all the traffic that does not carry it. Without a
    role the link assumes the slot is used exclusively by the two peers.
    """

    def __init__(
        self,
        slot: Slot,
        *,
        configuration: Configuration | None = None,
        role: Role | None = None,
        dispatcher: Dispatcher | None = None,
        destination: Hashable | None = None,
        id_factory: Callable[[], str] = new_message_id,
    ) -> None:
        self.slot = slot
        self.configuration = configuration or Configuration()
        self.destination = destination
        self.dispatcher = dispatcher if dispatcher is not None else Dispatcher()
        self.handshake = Handshake(role) if role is not None else None
        self.correlation = CorrelationTable()
        self.reassembly = ReassemblyBuffer(stale_timeout=self.configuration.reassembly_timeout, max_message_bytes=self.configuration.max_message_bytes)
        self.session = OutgoingSession(self, name=repr(destination) if destination is not None else '')
        self._id_factory = id_factory
        self._transmissions: dict[str, Transmission] = {}
        self._task_list: set[asyncio.Task[None]] = set()
        self._ready = asyncio.Event()
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False
        self._closed = False

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.slot!r}, destination={self.destination!r}, role={self.role!r})'

    @property
    def role(self) -> Role | None:
        return self.handshake.role if self.handshake is not None else None

    @property
    def secret(self) -> str | None:
        if self.handshake is None or not self.handshake.established:
            return None
        return self.handshake.secret

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._closed:
            raise aio.ClosedResourceError
        if self._started:
            return
        self._started = True
        self._unsubscribe = self.slot.subscribe(self._slot_changed)
        self.session.start()
        match self.role:
            case None:
                self._ready.set()
            case Role.Initiator:
                self._spawn(self._initiate(), name=f'{self!r} handshake')
        # the peer may have written to the slot before we started listening
        self._slot_changed(self.slot.value)

    async def close(self, status: type[Exception] | Exception = aio.ClosedResourceError) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.correlation.fail_all(status)
        await self.session.close(status)
        current_task = asyncio.current_task()
        tasks = [task for task in self._task_list if task is not current_task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._transmissions.clear()
        self.reassembly.clear()
        logger.info('Closed %r', self)

    async def send(self, message: Any) -> Any:
        """Send a request to the peer and return its response"""
        if not self._started:
            await self.start()
        return await self.session.send(message)

    def on_message(self, handler: MessageHandler) -> None:
        self.dispatcher.add_handler(handler)

    def on_failure(self, handler: FailureHandler) -> None:
        """Register handler to be called with the error when a request from the peer cannot be decoded"""
        self.dispatcher.add_failure_handler(handler)

    async def wait_ready(self) -> None:
        await self._ready.wait()

    # Interface used by the outgoing session

    def new_message_id(self) -> str:
        return self._id_factory()

    def fragment(self, message: Any, frame_type: FrameType, message_id: str) -> list[DataFrame]:
        return codec.fragment(
            message,
            frame_type=frame_type,
            message_id=message_id,
            max_slot_bytes=self.configuration.max_slot_bytes,
            frame_overhead=self.configuration.frame_overhead,
            secret=self.secret,
            max_message_bytes=self.configuration.max_message_bytes,
        )

    def transmit(self, frames: Sequence[DataFrame]) -> asyncio.Task[None]:
        transmission = Transmission(frames, self._write_frame)
        self._transmissions[transmission.message_id] = transmission
        task = self._spawn(transmission.run(), name=f'{self!r} transmission {transmission.message_id}')
        task.add_done_callback(lambda _: self._transmission_done(transmission))
        return task

    # Internal methods

    def _spawn(self, coroutine: Coroutine[Any, Any, None], *, name: str | None = None) -> asyncio.Task[None]:
        task = asyncio.create_task(coroutine, name=name)
        self._task_list.add(task)
        task.add_done_callback(self._task_list.discard)
        return task

    def _transmission_done(self, transmission: Transmission) -> None:
        if self._transmissions.get(transmission.message_id) is transmission:
            del self._transmissions[transmission.message_id]

    def _write_frame(self, frame: Frame) -> None:
        value = frame.to_wire()
        try:
            self.slot.write(value)
        except (OSError, ValueError) as exc:
            raise aio.BrokenResourceError(f'Cannot write to {self.slot!r}') from exc
        logger.debug('Wrote %.80s to %r', value, self.slot)

    def _slot_changed(self, value: str) -> None:
        if self._closed:
            return
        try:
            frame = parse_frame(value)
        except ProtocolViolation as exc:
            logger.warning('Ignoring malformed frame on %r: %s', self, exc)
            return
        if isinstance(frame, AckFrame | DataFrame) and self.handshake is not None and self.handshake.confirm(frame.secret):
            # the peer overwrote its ACK-INIT before we observed it
            self._session_established()
        match frame:
            case None:
                return
            case InitFrame() | InitAckFrame():
                self._handle_handshake(frame)
            case AckFrame() | DataFrame() if not self._accepts(frame.secret):
                logger.debug('Ignoring frame without the session secret on %r', self)
            case AckFrame():
                self._handle_ack(frame)
            case DataFrame():
                self._handle_data(frame)

    def _accepts(self, secret: str | None) -> bool:
        if self.handshake is None:
            return secret is None
        return self.handshake.matches(secret)

    def _handle_handshake(self, frame: InitFrame | InitAckFrame) -> None:
        if self.handshake is None:
            return
        previous_secret = self.secret
        reply = self.handshake.receive(frame)
        if reply is not None:
            try:
                self._write_frame(reply)
            except aio.BrokenResourceError as exc:
                logger.warning('Cannot acknowledge the session secret on %r: %s', self, exc.__cause__)
                return
        if self.handshake.established and self.secret != previous_secret:
            self._session_established()

    def _session_established(self) -> None:
        # partial messages from the previous session will never be completed
        self.reassembly.clear()
        logger.info('Session established on %r', self)
        self._ready.set()

    def _handle_ack(self, frame: AckFrame) -> None:
        transmission = self._transmissions.get(frame.message_id)
        if transmission is None or not transmission.acknowledge(frame.index):
            logger.debug('Ignoring unmatched ack for chunk %d of %s on %r', frame.index, frame.message_id, self)

    def _handle_data(self, frame: DataFrame) -> None:
        try:
            result = self.reassembly.add(frame)
        except ProtocolViolation as exc:
            logger.warning('Dropped partial message on %r: %s', self, exc)
            return
        except MalformedPayload as exc:
            self._acknowledge(frame)
            logger.warning('Received malformed %s %s on %r: %s', frame.type, frame.message_id, self, exc)
            if frame.type is FrameType.RES:
                self.correlation.fail(frame.message_id, exc)
            else:
                self.dispatcher.report_failure(exc, MessageContext(destination=self.destination, link=self))
            return
        self._acknowledge(frame)
        match result:
            case None:
                pass
            case Complete(message) if frame.type is FrameType.REQ:
                self._spawn(self._dispatch_request(frame.message_id, message), name=f'{self!r} dispatch {frame.message_id}')
            case Complete(message):
                if not self.correlation.resolve(frame.message_id, message):
                    logger.debug('Ignoring response %s with no matching request on %r', frame.message_id, self)

    def _acknowledge(self, frame: DataFrame) -> None:
        try:
            self._write_frame(AckFrame(message_id=frame.message_id, index=frame.index, secret=self.secret))
        except aio.BrokenResourceError as exc:
            logger.warning('Cannot acknowledge chunk %d of %s on %r: %s', frame.index, frame.message_id, self, exc.__cause__)

    async def _dispatch_request(self, message_id: str, message: Any) -> None:
        context = MessageContext(destination=self.destination, link=self)
        if not await self.dispatcher.dispatch(message, context, lambda response: self._respond(message_id, response)):
            logger.debug('No handler answered request %s on %r', message_id, self)

    def _respond(self, message_id: str, response: Any) -> None:
        try:
            frames = self.fragment(response, FrameType.RES, message_id)
        except (TypeError, ValueError):
            logger.exception('Cannot encode the response for request %s on %r', message_id, self)
            return
        self._spawn(self._send_response(frames), name=f'{self!r} response {message_id}')

    async def _send_response(self, frames: Sequence[DataFrame]) -> None:
        message_id = frames[0].message_id
        try:
            async with asyncio.timeout(self.configuration.request_timeout):
                await self.transmit(frames)
        except TimeoutError:
            logger.warning('The peer did not acknowledge the response for %s on %r in time', message_id, self)
        except aio.BrokenResourceError as exc:
            logger.warning('Failed to send the response for %s on %r: %s', message_id, self, exc.__cause__)

    async def _initiate(self) -> None:
        assert self.handshake is not None  # noqa: S101 (used by type checkers)
        try:
            self._write_frame(self.handshake.begin())
            async with asyncio.timeout(self.configuration.handshake_timeout):
                await self._ready.wait()
        except TimeoutError:
            logger.warning('The peer did not acknowledge the session secret on %r', self)
            await self.close(HandshakeTimeout(f'The peer did not acknowledge the session secret within {self.configuration.handshake_timeout} seconds'))
        except aio.BrokenResourceError as exc:
            await self.close(exc)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        await self.close()
