# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .__info__ import __version__
from .configuration import Configuration
from .dispatch import MessageContext
from .exceptions import HandshakeTimeout, MalformedPayload, ProtocolViolation, RequestTimeout, SlotOverflow, SlotwireError
from .handshake import Role
from .link import SlotLink
from .multiplexer import Multiplexer
from .slot import MemorySlot, Slot

__all__ = (  # noqa: RUF022
    '__version__',

    # Endpoints
    'SlotLink',
    'Multiplexer',
    'MessageContext',
    'Role',

    # Slots
    'Slot',
    'MemorySlot',

    # Configuration
    'Configuration',

    # Errors
    'SlotwireError',
    'RequestTimeout',
    'HandshakeTimeout',
    'MalformedPayload',
    'ProtocolViolation',
    'SlotOverflow',
)
