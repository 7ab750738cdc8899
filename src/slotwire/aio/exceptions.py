# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = 'WouldBlock', 'ClosedResourceError', 'BrokenResourceError', 'EndOfChannel'


class WouldBlock(Exception):
    """Raised by ``X_nowait`` functions if ``X`` would block."""


class ClosedResourceError(Exception):
    """
    Raised when attempting to use a resource after it has been closed.

    For a link this means that it was torn down explicitly, either directly
    or through the multiplexer that owns it. Requests that were still queued
    or in flight at that moment are failed with this exception.

    """


class BrokenResourceError(Exception):
    """
    Raised when using a resource fails due to external causes.

    For example, writing to a slot whose underlying storage rejected the
    value. The original error is available as the ``__cause__`` attribute.

    """


class EndOfChannel(Exception):
    """
    Raised when trying to receive from a closed :class:`aio.Channel` that
    has no more data to receive.

    """
