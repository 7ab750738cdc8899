# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = 'SlotwireError', 'RequestTimeout', 'HandshakeTimeout', 'MalformedPayload', 'ProtocolViolation', 'SlotOverflow'  # noqa: RUF022


class SlotwireError(Exception):
    """Base class for the errors raised by the messaging protocol."""


class RequestTimeout(SlotwireError, TimeoutError):
    """Raised when a request did not get a response within the deadline."""


class HandshakeTimeout(RequestTimeout):
    """Raised when the peer did not acknowledge the session secret in time."""


class MalformedPayload(SlotwireError, ValueError):
    """Raised when a reassembled payload cannot be decoded into a message."""


class ProtocolViolation(SlotwireError, ValueError):
    """
    Raised when a frame is inconsistent with the protocol.

    This covers frames that start with a known prefix but do not have the
    expected shape, as well as chunks that contradict what was previously
    received for the same message (like a different chunk count).
    """


class SlotOverflow(SlotwireError, ValueError):
    """Raised when writing a value that exceeds the maximum slot size."""
