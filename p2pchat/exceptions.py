"""Exception types for channel sessions and transports."""
from __future__ import annotations

USER_INITIATED_ABORT = 12
"""SCTP abort cause code for a user-initiated abort (RFC 4960, 3.3.10.12)."""


class ChannelError(Exception):
    """Base exception type for errors local to one peer channel.

    Args:
        peer_id: Numeric id of the participant the error concerns.
        detail: Optional description of the underlying problem.
    """

    def __init__(self, peer_id: int, detail: str | None = None) -> None:
        self.peer_id = peer_id
        self.detail = detail
        super().__init__(detail if detail is not None else '')


class DialTimeoutError(ChannelError):
    """Timeout waiting on a channel to a peer to open."""

    pass


class DialFailureError(ChannelError):
    """Transport rejected the attempt to open a channel to a peer."""

    pass


class WriteFailureError(ChannelError):
    """Error writing a message onto an open channel."""

    pass


class ReadFailureError(ChannelError):
    """Error reading the next message from an open channel."""

    pass


class RemoteDisconnectedError(ReadFailureError):
    """The remote peer aborted the channel."""

    pass


class UnknownPeerError(ChannelError):
    """The numeric id or identity does not map to an addressable peer."""

    pass


class TransportError(Exception):
    """Error raised by a transport fabric when a dial is rejected."""

    pass


class StreamError(TransportError):
    """Error reading from or writing to a transport message stream.

    Args:
        detail: Description of the failure.
        abort_cause: Optional abort cause code set when the remote end of
            the underlying session aborted it. See
            [`USER_INITIATED_ABORT`][p2pchat.exceptions.USER_INITIATED_ABORT].
    """

    def __init__(self, detail: str, abort_cause: int | None = None) -> None:
        self.detail = detail
        self.abort_cause = abort_cause
        super().__init__(detail)

    @property
    def remote_aborted(self) -> bool:
        """If the remote peer explicitly aborted the session."""
        return self.abort_cause == USER_INITIATED_ABORT


class RelayClientError(Exception):
    """Base exception type for exceptions raised by relay clients."""

    pass


class RelayNotConnectedError(RelayClientError):
    """The client's websocket connection to the relay server is not open."""

    pass


class RelayRegistrationError(RelayClientError):
    """The relay server refused or did not answer a registration."""

    pass


class RelayServerError(Exception):
    """Base exception type for exceptions raised by the relay server."""

    pass


class BadRequestError(RelayServerError):
    """A client request is malformed (e.g., an invalid identity string)."""

    pass


class ForbiddenError(RelayServerError):
    """Client attempted to forward messages before registering."""

    pass
