"""In-process transport fabric.

All participants of a [`MemoryNetwork`][p2pchat.transport.memory.MemoryNetwork]
live in the same event loop and exchange frames through queues. The fabric
mirrors the failure behavior of real transports: closing a stream aborts it
for the remote reader with a user-initiated abort cause, dials to unknown
participants are rejected, and unreachable participants make dials hang.

Example:
    ```python
    from p2pchat.address import RelayAddress
    from p2pchat.address import Route
    from p2pchat.transport.memory import MemoryNetwork

    network = MemoryNetwork(RelayAddress('relay.local', 9001))
    alice = network.create_transport(alice_identity)
    bob = network.create_transport(bob_identity)

    async def echo(remote, stream):
        await stream.write(await stream.read())

    bob.handle('/echo', echo)
    stream = await alice.dial(Route(network.relay, bob.identity), '/echo')
    await stream.write(b'hello')
    assert await stream.read() == b'hello'
    ```
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Literal

from pyee.asyncio import AsyncIOEventEmitter

from p2pchat.address import RelayAddress
from p2pchat.address import Route
from p2pchat.exceptions import StreamError
from p2pchat.exceptions import TransportError
from p2pchat.exceptions import USER_INITIATED_ABORT
from p2pchat.identity import Identity
from p2pchat.transport.protocols import ConnectionInfo
from p2pchat.transport.protocols import PeerInfo
from p2pchat.transport.protocols import StreamHandler
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class MemoryStream:
    """One end of an in-memory stream.

    Warning:
        Streams are created in pairs by
        [`MemoryTransport.dial()`][p2pchat.transport.memory.MemoryTransport.dial].

    Args:
        connection_id: Id of the connection shared by both ends.
        direction: Direction of the connection from this end.
        local_identity: Identity of this end.
        remote_identity: Identity of the other end.
        remote_addr: Address the other end was reached through.
    """

    def __init__(
        self,
        connection_id: str,
        direction: Literal['inbound', 'outbound'],
        local_identity: Identity,
        remote_identity: Identity,
        remote_addr: str,
    ) -> None:
        self.connection_id = connection_id
        self.direction = direction
        self._local_identity = local_identity
        self._remote_identity = remote_identity
        self._remote_addr = remote_addr
        self._incoming: asyncio.Queue[bytes | StreamError] = asyncio.Queue()
        self._peer: MemoryStream | None = None
        self._error: StreamError | None = None
        self._transport: MemoryTransport | None = None

    @property
    def remote_identity(self) -> Identity:
        """Identity of the participant at the other end of the stream."""
        return self._remote_identity

    @property
    def closed(self) -> bool:
        """If this end of the stream has been closed or aborted."""
        return self._error is not None

    @property
    def info(self) -> ConnectionInfo:
        """Connection info of this end of the stream."""
        return ConnectionInfo(
            id=self.connection_id,
            direction=self.direction,
            remote_peer=self._remote_identity,
            remote_addr=self._remote_addr,
            status='closed' if self.closed else 'open',
        )

    def _pair(self, peer: MemoryStream, transport: MemoryTransport) -> None:
        self._peer = peer
        self._transport = transport

    def _terminate(self, error: StreamError) -> None:
        if self._error is not None:
            return
        self._error = error
        self._incoming.put_nowait(error)
        if self._transport is not None:
            self._transport._stream_closed(self)

    async def read(self) -> bytes:
        """Read the next frame.

        Raises:
            StreamError: If the stream was closed or aborted.
        """
        if self._error is not None and self._incoming.empty():
            raise self._error
        item = await self._incoming.get()
        if isinstance(item, StreamError):
            # Leave the error for subsequent readers.
            self._incoming.put_nowait(item)
            raise item
        return item

    async def write(self, data: bytes) -> None:
        """Write a frame to the other end.

        Raises:
            StreamError: If either end of the stream is closed.
        """
        if self._error is not None:
            raise StreamError(f'stream is closed: {self._error.detail}')
        assert self._peer is not None
        if self._peer.closed:
            raise StreamError('remote end of stream is closed')
        self._peer._incoming.put_nowait(bytes(data))

    async def close(self) -> None:
        """Close the stream.

        The remote reader observes a user-initiated abort.
        """
        self.abort('stream closed by remote peer', USER_INITIATED_ABORT)
        self._terminate(StreamError('stream closed locally'))

    def abort(self, detail: str, cause: int | None = None) -> None:
        """Abort the stream for the remote reader.

        Args:
            detail: Description of the failure seen by the remote reader.
            cause: Optional abort cause code seen by the remote reader.
        """
        if self._peer is not None:
            self._peer._terminate(StreamError(detail, abort_cause=cause))

    def fail(self, detail: str, cause: int | None = None) -> None:
        """Fail this end of the stream for the local reader."""
        self._terminate(StreamError(detail, abort_cause=cause))


class MemoryTransport(AsyncIOEventEmitter):
    """In-memory transport fabric for one participant.

    Tip:
        Create instances with
        [`MemoryNetwork.create_transport()`][p2pchat.transport.memory.MemoryNetwork.create_transport].

    Args:
        identity: Identity of the local participant.
        network: Network the participant is attached to.
    """

    def __init__(self, identity: Identity, network: MemoryNetwork) -> None:
        super().__init__()
        self._identity = identity
        self._network = network
        self._handlers: dict[str, StreamHandler] = {}
        self._streams: dict[str, MemoryStream] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._started = False
        self.dial_count = 0

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{str(self._identity)[-8:]}]'

    @property
    def identity(self) -> Identity:
        """Identity of the local participant."""
        return self._identity

    @property
    def streams(self) -> list[MemoryStream]:
        """Open streams of this participant."""
        return list(self._streams.values())

    async def start(self) -> None:
        """Attach to the network and start accepting inbound streams."""
        if self._started:
            return
        self._network._attach(self)
        self._started = True
        self.emit('start', None)
        self.emit('transport:listening', None)
        logger.info(f'{self._log_prefix}: listening on {self._network.relay}')

    async def close(self) -> None:
        """Detach from the network and abort all streams."""
        self._network._detach(self)
        for stream in list(self._streams.values()):
            await stream.close()
        for task in list(self._tasks):
            await cancel_and_wait(task)
        if self._started:
            self._started = False
            self.emit('transport:close', None)
            self.emit('stop', None)
        logger.info(f'{self._log_prefix}: closed')

    def handle(self, protocol: str, handler: StreamHandler) -> None:
        """Register the handler for inbound streams of a protocol."""
        self._handlers[protocol] = handler

    def unhandle(self, protocol: str) -> None:
        """Remove the handler for a protocol."""
        self._handlers.pop(protocol, None)

    async def dial(self, route: Route, protocol: str) -> MemoryStream:
        """Open a stream to the participant at the end of a route.

        Raises:
            TransportError: If the route names another relay, the target is
                not attached to the network, or the target has no handler
                for the protocol.
        """
        self.dial_count += 1
        if route.relay != self._network.relay:
            raise TransportError(
                f'No reservation on relay {route.relay}.',
            )

        target = await self._network._resolve(route.target)
        handler = target._handlers.get(protocol)
        if handler is None:
            raise TransportError(
                f'Peer {route.target} does not support protocol {protocol}.',
            )

        connection_id = str(uuid.uuid4())
        local = MemoryStream(
            connection_id,
            'outbound',
            self._identity,
            target.identity,
            str(route),
        )
        remote = MemoryStream(
            connection_id,
            'inbound',
            target.identity,
            self._identity,
            str(self._network.relay),
        )
        local._pair(remote, self)
        remote._pair(local, target)
        self._opened(local)
        target._opened(remote)

        task = spawn_guarded_background_task(
            target._run_handler,
            handler,
            self._identity,
            remote,
            name=f'memory-stream-handler-{connection_id}',
        )
        target._tasks.add(task)
        task.add_done_callback(target._tasks.discard)

        logger.debug(f'{self._log_prefix}: dialed {route} for {protocol}')
        return local

    async def _run_handler(
        self,
        handler: StreamHandler,
        remote: Identity,
        stream: MemoryStream,
    ) -> None:
        try:
            await handler(remote, stream)
        except StreamError as e:
            logger.debug(
                f'{self._log_prefix}: handler of stream from {remote} '
                f'ended: {e}',
            )
        finally:
            await stream.close()

    def _opened(self, stream: MemoryStream) -> None:
        self._streams[stream.connection_id] = stream
        self.emit('connection:open', stream.info)

    def _stream_closed(self, stream: MemoryStream) -> None:
        if self._streams.pop(stream.connection_id, None) is not None:
            self.emit('connection:close', stream.info)


class MemoryNetwork:
    """Switchboard connecting in-process transports.

    Args:
        relay: Address of the relay all participants have a reservation
            with. Routes naming any other relay are rejected.
    """

    def __init__(self, relay: RelayAddress) -> None:
        self.relay = relay
        self._transports: dict[Identity, MemoryTransport] = {}
        self._unreachable: set[Identity] = set()

    def create_transport(self, identity: Identity) -> MemoryTransport:
        """Create a transport for a participant on this network."""
        return MemoryTransport(identity, self)

    def set_unreachable(
        self,
        identity: Identity,
        unreachable: bool = True,
    ) -> None:
        """Make dials to a participant hang until cancelled."""
        if unreachable:
            self._unreachable.add(identity)
        else:
            self._unreachable.discard(identity)

    def _attach(self, transport: MemoryTransport) -> None:
        self._transports[transport.identity] = transport
        for other in self._transports.values():
            if other is not transport:
                other.emit(
                    'peer:discovery',
                    PeerInfo(
                        transport.identity,
                        (str(Route(self.relay, transport.identity)),),
                    ),
                )

    def _detach(self, transport: MemoryTransport) -> None:
        if self._transports.get(transport.identity) is transport:
            del self._transports[transport.identity]

    async def _resolve(self, identity: Identity) -> MemoryTransport:
        if identity in self._unreachable:
            # Hang until the dialer gives up.
            await asyncio.Event().wait()
        try:
            return self._transports[identity]
        except KeyError:
            raise TransportError(
                f'Peer {identity} has no reservation on relay {self.relay}.',
            ) from None
