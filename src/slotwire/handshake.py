# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import secrets
from enum import Enum

from cryptography.hazmat.primitives.constant_time import bytes_eq

from .frames import InitAckFrame, InitFrame

__all__ = 'Role', 'Handshake', 'generate_secret'  # noqa: RUF022


logger = logging.getLogger(__name__)


class Role(Enum):
    Initiator = 'initiator'
    Responder = 'responder'

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'


def generate_secret() -> str:
    return secrets.token_urlsafe(16)


class Handshake:
    """
    Negotiate the session secret that tags the traffic of a link.

    The initiator picks the secret and announces it with an INIT frame. The
    responder adopts the secret from the INIT frame and confirms it with an
    ACK-INIT frame. A responder accepts a new INIT at any time, which starts
    a new session with a new secret (the initiator was restarted).
    """

    def __init__(self, role: Role) -> None:
        self.role = role
        self.secret: str | None = None
        self.established = False

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(role={self.role!r}, established={self.established!r})'

    def begin(self) -> InitFrame:
        if self.role is not Role.Initiator:
            raise RuntimeError('Only the initiator can start the handshake')
        self.secret = generate_secret()
        self.established = False
        return InitFrame(self.secret)

    def receive(self, frame: InitFrame | InitAckFrame) -> InitAckFrame | None:
        """Process a handshake frame and return the reply to send to the peer, if any"""
        match frame, self.role:
            case InitFrame(secret), Role.Responder:
                if secret != self.secret:
                    logger.info('New session secret announced by the peer')
                self.secret = secret
                self.established = True
                return InitAckFrame(secret)
            case InitAckFrame(secret), Role.Initiator if not self.established and self.matches(secret, pending=True):
                self.established = True
        return None

    def confirm(self, secret: str | None) -> bool:
        """
        Establish the session if secret is the pending secret of an initiator.

        The responder may write its first MSG or ACK frame right after the
        ACK-INIT frame, in which case the ACK-INIT edge is lost. Traffic that
        carries the pending secret proves the responder adopted it. Return
        True if this established the session.
        """
        if self.role is not Role.Initiator or self.established or not self.matches(secret, pending=True):
            return False
        self.established = True
        return True

    def matches(self, secret: str | None, *, pending: bool = False) -> bool:
        """Check if secret is the session secret (an unconfirmed secret only counts if pending is true)"""
        if secret is None or self.secret is None or not (self.established or pending):
            return False
        return bytes_eq(secret.encode(), self.secret.encode())
