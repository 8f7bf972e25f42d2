"""Transport fabric interface protocols.

A transport fabric dials routes to remote participants, accepts inbound
streams for registered protocol names, and exposes a framed message stream
per logical connection. The
[`ChannelSessionManager`][p2pchat.session.ChannelSessionManager] only
interacts with a fabric through these protocols.
"""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Literal
from typing import Protocol
from typing import runtime_checkable

from p2pchat.address import Route
from p2pchat.identity import Identity

EVENT_TYPES = (
    'connection:close',
    'connection:open',
    'peer:discovery',
    'start',
    'stop',
    'transport:close',
    'transport:listening',
)
"""Lifecycle events emitted by transports."""


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """Detail payload of `connection:open` and `connection:close` events.

    Attributes:
        id: Unique id of the connection within the transport.
        direction: Whether the connection was dialed or accepted.
        remote_peer: Identity of the remote participant.
        remote_addr: Address the remote participant was reached through.
        status: One of `'open'` or `'closed'`.
    """

    id: str
    direction: Literal['inbound', 'outbound']
    remote_peer: Identity
    remote_addr: str
    status: Literal['open', 'closed']


@dataclasses.dataclass(frozen=True)
class PeerInfo:
    """Detail payload of `peer:discovery` events.

    Attributes:
        id: Identity of the discovered participant.
        addresses: Addresses the participant is reachable at.
    """

    id: Identity
    addresses: tuple[str, ...]


@runtime_checkable
class MessageStream(Protocol):
    """Framed bidirectional byte stream to one remote participant."""

    @property
    def remote_identity(self) -> Identity:
        """Identity of the participant at the other end of the stream."""
        ...

    async def read(self) -> bytes:
        """Read the next frame.

        Raises:
            StreamError: If the stream closed or failed. The error's
                `abort_cause` is set if the remote peer aborted the stream.
        """
        ...

    async def write(self, data: bytes) -> None:
        """Write a frame.

        Raises:
            StreamError: If the stream is not writable.
        """
        ...

    async def close(self) -> None:
        """Close the stream."""
        ...


StreamHandler = Callable[[Identity, MessageStream], Awaitable[None]]
"""Callback invoked with the remote identity and stream of inbound streams."""


@runtime_checkable
class Transport(Protocol):
    """Transport fabric interface."""

    @property
    def identity(self) -> Identity:
        """Identity of the local participant."""
        ...

    async def start(self) -> None:
        """Start listening for inbound streams."""
        ...

    async def close(self) -> None:
        """Close the transport and all of its streams."""
        ...

    def handle(self, protocol: str, handler: StreamHandler) -> None:
        """Register the handler for inbound streams of a protocol.

        The handler is invoked once per inbound stream and the stream
        belongs to the handler for the handler's lifetime.
        """
        ...

    def unhandle(self, protocol: str) -> None:
        """Remove the handler for a protocol."""
        ...

    async def dial(self, route: Route, protocol: str) -> MessageStream:
        """Open a stream to the participant at the end of a route.

        Note:
            Dialing may take arbitrarily long. Callers bound the dial by
            cancelling it (e.g., with [`asyncio.wait_for()`][asyncio.wait_for])
            and implementations must release any partially established
            connection when cancelled.

        Raises:
            TransportError: If the route cannot be dialed.
        """
        ...

    def on(self, event: str, listener: Callable[..., Any]) -> Any:
        """Register a listener for a lifecycle event."""
        ...

    def remove_listener(
        self,
        event: str,
        listener: Callable[..., Any],
    ) -> None:
        """Remove a listener for a lifecycle event."""
        ...
