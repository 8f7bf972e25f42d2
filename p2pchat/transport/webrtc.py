"""WebRTC transport fabric.

Participants register with a relay server and negotiate a WebRTC data
channel per stream through it using
[aiortc](https://aiortc.readthedocs.io/en/latest/){target=_blank}. The relay
only forwards the offer and answer session descriptions; once the data
channel is open, frames flow directly between the participants, traversing
NATs via ICE.

Example:
    ```python
    from p2pchat.address import Route
    from p2pchat.relay.client import RelayClient
    from p2pchat.transport.webrtc import WebRTCTransport

    transport = WebRTCTransport(RelayClient(relay.websocket_url, identity))
    await transport.start()
    stream = await transport.dial(Route(relay, target), '/p2pchat/1.0.0')
    await stream.write(b'hello')
    await transport.close()
    ```
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
import warnings
from typing import Literal
from typing import Sequence

import websockets.exceptions
from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.contrib.signaling import object_from_string
from aiortc.contrib.signaling import object_to_string
from aiortc.exceptions import InvalidStateError
from cryptography.utils import CryptographyDeprecationWarning
from pyee.asyncio import AsyncIOEventEmitter

from p2pchat.address import Route
from p2pchat.exceptions import RelayClientError
from p2pchat.exceptions import StreamError
from p2pchat.exceptions import TransportError
from p2pchat.exceptions import USER_INITIATED_ABORT
from p2pchat.identity import Identity
from p2pchat.relay.client import RelayClient
from p2pchat.relay.messages import PeerConnectionRequest
from p2pchat.relay.messages import RelayMessage
from p2pchat.relay.messages import RelayMessageDecodeError
from p2pchat.relay.messages import RelayResponse
from p2pchat.transport.protocols import ConnectionInfo
from p2pchat.transport.protocols import PeerInfo
from p2pchat.transport.protocols import StreamHandler
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)


class DataChannelStream:
    """Message stream over one WebRTC data channel.

    Each data channel message is one frame. The stream owns the peer
    connection the channel belongs to and closes it when the stream closes.

    Args:
        connection_id: Id of the connection shared with the remote peer.
        direction: Direction of the connection from this end.
        remote_identity: Identity of the remote participant.
        remote_addr: Address the remote participant was reached through.
        pc: Peer connection of the data channel.
        channel: Data channel carrying the frames.
    """

    def __init__(
        self,
        connection_id: str,
        direction: Literal['inbound', 'outbound'],
        remote_identity: Identity,
        remote_addr: str,
        pc: RTCPeerConnection,
        channel: RTCDataChannel,
    ) -> None:
        self.connection_id = connection_id
        self.direction = direction
        self._remote_identity = remote_identity
        self._remote_addr = remote_addr
        self._pc = pc
        self._channel = channel
        self._incoming: asyncio.Queue[bytes | StreamError] = asyncio.Queue()
        self._buffer_low = asyncio.Event()
        self._closing = False
        self._error: StreamError | None = None
        self._transport: WebRTCTransport | None = None

        channel.on('message', self._on_message)
        channel.on('bufferedamountlow', self._buffer_low.set)
        channel.on('close', self._on_channel_close)
        pc.on('connectionstatechange', self._on_connection_state_change)

    @property
    def remote_identity(self) -> Identity:
        """Identity of the participant at the other end of the stream."""
        return self._remote_identity

    @property
    def closed(self) -> bool:
        """If the stream has been closed or has failed."""
        return self._error is not None

    @property
    def info(self) -> ConnectionInfo:
        """Connection info of the stream."""
        return ConnectionInfo(
            id=self.connection_id,
            direction=self.direction,
            remote_peer=self._remote_identity,
            remote_addr=self._remote_addr,
            status='closed' if self.closed else 'open',
        )

    def _attach(self, transport: WebRTCTransport) -> None:
        self._transport = transport
        # The underlying RTCDtlsTransport reflects the remote closing the
        # peer connection before the channel itself is closed.
        self._channel.transport.transport.on(
            'statechange',
            self._on_dtls_state_change,
        )

    def _terminate(self, error: StreamError) -> None:
        if self._error is not None:
            return
        self._error = error
        self._incoming.put_nowait(error)
        # Wake writers blocked on a full send buffer.
        self._buffer_low.set()
        if self._transport is not None:
            self._transport._stream_closed(self)

    def _on_message(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode('utf-8')
        self._incoming.put_nowait(data)

    def _on_channel_close(self) -> None:
        if not self._closing:
            self._terminate(
                StreamError(
                    'data channel closed by remote peer',
                    abort_cause=USER_INITIATED_ABORT,
                ),
            )

    def _on_dtls_state_change(self) -> None:
        state = self._channel.transport.transport.state
        if self._closing:
            return
        if state == 'closed':
            self._terminate(
                StreamError(
                    'peer connection closed by remote peer',
                    abort_cause=USER_INITIATED_ABORT,
                ),
            )
        elif state == 'failed':
            self._terminate(StreamError('DTLS transport failed'))

    async def _on_connection_state_change(self) -> None:
        if self._pc.connectionState == 'failed':
            self._terminate(StreamError('peer connection failed'))

    async def read(self) -> bytes:
        """Read the next frame.

        Raises:
            StreamError: If the stream was closed or failed.
        """
        if self._error is not None and self._incoming.empty():
            raise self._error
        item = await self._incoming.get()
        if isinstance(item, StreamError):
            self._incoming.put_nowait(item)
            raise item
        return item

    async def write(self, data: bytes) -> None:
        """Write a frame.

        Waits for the channel's send buffer to drain below its low
        threshold before queueing the frame.

        Raises:
            StreamError: If the stream is closed or the channel is not open.
        """
        if self._error is not None:
            raise StreamError(f'stream is closed: {self._error.detail}')
        channel = self._channel
        if channel.bufferedAmount > channel.bufferedAmountLowThreshold:
            self._buffer_low.clear()
            await self._buffer_low.wait()
            if self._error is not None:
                raise StreamError(f'stream is closed: {self._error.detail}')
        try:
            channel.send(bytes(data))
        except InvalidStateError as e:
            raise StreamError(
                f'data channel is {channel.readyState}: {e}',
            ) from e

    async def close(self) -> None:
        """Close the data channel and its peer connection."""
        if self._closing:
            return
        self._closing = True
        if self._channel.readyState == 'open':
            # Flush send buffers before close
            # https://github.com/aiortc/aiortc/issues/547
            transport = self._channel._RTCDataChannel__transport
            await transport._data_channel_flush()
            await transport._transmit()
        self._channel.close()
        await self._pc.close()
        self._terminate(StreamError('stream closed locally'))


@dataclasses.dataclass
class _PendingDial:
    pc: RTCPeerConnection
    stream: DataChannelStream
    opened: asyncio.Future[None]


class WebRTCTransport(AsyncIOEventEmitter):
    """WebRTC transport fabric.

    Handles negotiating data channels through the relay server, accepting
    inbound data channels for registered protocols, and tracking open
    streams.

    Note:
        The class can also be used as an asynchronous context manager.

    Args:
        relay_client: Client of the relay server this participant registers
            with. The transport owns the client and closes it on close.
        ice_servers: Optional STUN/TURN server URLs used to gather ICE
            candidates. If `None`, aiortc's default STUN server is used.
    """

    _relay_retry_delay = 0.5

    def __init__(
        self,
        relay_client: RelayClient,
        *,
        ice_servers: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        self._relay_client = relay_client
        self._ice_servers = ice_servers
        self._handlers: dict[str, StreamHandler] = {}
        self._pending: dict[str, _PendingDial] = {}
        self._streams: dict[str, DataChannelStream] = {}
        self._answering: set[RTCPeerConnection] = set()
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._known_peers: set[Identity] = set()
        self._server_task: asyncio.Task[None] | None = None

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._relay_client.name}]'

    @property
    def identity(self) -> Identity:
        """Identity of the local participant."""
        return self._relay_client.identity

    @property
    def relay_client(self) -> RelayClient:
        """Client of the relay server."""
        return self._relay_client

    @property
    def streams(self) -> list[DataChannelStream]:
        """Open streams of this participant."""
        return list(self._streams.values())

    async def __aenter__(self) -> WebRTCTransport:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def start(self) -> None:
        """Register with the relay server and accept inbound streams."""
        if self._server_task is not None:
            return
        await self._relay_client.connect()
        self._server_task = spawn_guarded_background_task(
            self._handle_relay_messages,
            name=f'webrtc-relay-message-handler-{self.identity}',
        )
        self.emit('start', None)
        self.emit('transport:listening', None)
        logger.info(
            f'{self._log_prefix}: listening via relay at '
            f'{self._relay_client.address}',
        )

    async def close(self) -> None:
        """Close every stream and the connection to the relay server."""
        await cancel_and_wait(self._server_task)
        started = self._server_task is not None
        self._server_task = None

        for task in list(self._handler_tasks):
            await cancel_and_wait(task)
        for stream in list(self._streams.values()):
            await stream.close()
        for pending in list(self._pending.values()):
            await pending.pc.close()
        for pc in list(self._answering):
            await pc.close()

        await self._relay_client.close()
        if started:
            self.emit('transport:close', None)
            self.emit('stop', None)
        logger.info(f'{self._log_prefix}: closed')

    def handle(self, protocol: str, handler: StreamHandler) -> None:
        """Register the handler for inbound streams of a protocol."""
        self._handlers[protocol] = handler

    def unhandle(self, protocol: str) -> None:
        """Remove the handler for a protocol."""
        self._handlers.pop(protocol, None)

    def _create_peer_connection(self) -> RTCPeerConnection:
        if self._ice_servers is None:
            return RTCPeerConnection()
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self._ice_servers],
        )
        return RTCPeerConnection(configuration=configuration)

    def _check_route(self, route: Route) -> None:
        if route.relay.websocket_url != self._relay_client.address:
            raise TransportError(
                f'No reservation on relay {route.relay}. This participant is '
                f'registered with {self._relay_client.address}.',
            )
        relay_identity = self._relay_client.relay_identity
        if (
            route.relay.peer is not None
            and relay_identity is not None
            and route.relay.peer != relay_identity
        ):
            raise TransportError(
                f'Relay at {self._relay_client.address} is {relay_identity} '
                f'but the route expects {route.relay.peer}.',
            )

    async def dial(self, route: Route, protocol: str) -> DataChannelStream:
        """Open a data channel to the participant at the end of a route.

        The dial completes once the data channel is open. Cancelling the
        dial closes the partially negotiated peer connection.

        Raises:
            TransportError: If the route names another relay, the relay
                cannot forward the offer, or negotiation fails.
        """
        self._check_route(route)

        connection_id = str(uuid.uuid4())
        pc = self._create_peer_connection()
        channel = pc.createDataChannel(protocol, ordered=True)
        stream = DataChannelStream(
            connection_id,
            'outbound',
            route.target,
            str(route),
            pc,
            channel,
        )
        opened: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )

        def _on_open() -> None:
            if not opened.done():
                opened.set_result(None)

        channel.on('open', _on_open)
        self._pending[connection_id] = _PendingDial(pc, stream, opened)

        try:
            await pc.setLocalDescription(await pc.createOffer())
            offer = PeerConnectionRequest(
                source_peer=str(self.identity),
                source_name=self._relay_client.name,
                target_peer=str(route.target),
                connection_id=connection_id,
                protocol=protocol,
                description_type='offer',
                description=object_to_string(pc.localDescription),
            )
            logger.info(f'{self._log_prefix}: sending offer to {route.target}')
            await self._relay_client.send(offer)
            await opened
        except asyncio.CancelledError:
            await pc.close()
            raise
        except TransportError:
            await pc.close()
            raise
        except Exception as e:
            await pc.close()
            raise TransportError(
                f'Failed to negotiate channel to {route.target}: {e!r}',
            ) from e
        finally:
            self._pending.pop(connection_id, None)

        self._opened(stream)
        return stream

    def _opened(self, stream: DataChannelStream) -> None:
        stream._attach(self)
        self._streams[stream.connection_id] = stream
        self.emit('connection:open', stream.info)
        logger.info(
            f'{self._log_prefix}: {stream.direction} channel '
            f'{stream.connection_id} with {stream.remote_identity} open',
        )

    def _stream_closed(self, stream: DataChannelStream) -> None:
        if self._streams.pop(stream.connection_id, None) is not None:
            self.emit('connection:close', stream.info)

    async def _run_handler(
        self,
        handler: StreamHandler,
        remote: Identity,
        stream: DataChannelStream,
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

    async def _send_to_relay(self, message: RelayMessage) -> bool:
        """Send a reply to the relay server.

        Failures only affect the negotiation the reply belongs to so they
        are logged rather than raised.

        Returns:
            If the message was sent.
        """
        try:
            await self._relay_client.send(message)
        except (
            websockets.exceptions.ConnectionClosed,
            RelayClientError,
            OSError,
        ) as e:
            logger.error(
                f'{self._log_prefix}: failed to send '
                f'{type(message).__name__} to relay server: {e!r}',
            )
            return False
        return True

    async def _handle_offer(self, message: PeerConnectionRequest) -> None:
        try:
            remote = Identity.from_string(message.source_peer)
        except ValueError:
            logger.error(
                f'{self._log_prefix}: ignoring offer from invalid identity '
                f'{message.source_peer}',
            )
            return

        if remote not in self._known_peers:
            self._known_peers.add(remote)
            self.emit(
                'peer:discovery',
                PeerInfo(remote, (self._relay_client.address,)),
            )

        handler = self._handlers.get(message.protocol)
        if handler is None:
            logger.warning(
                f'{self._log_prefix}: rejecting offer from {remote} for '
                f'unsupported protocol {message.protocol}',
            )
            await self._send_to_relay(
                dataclasses.replace(
                    message,
                    source_peer=str(self.identity),
                    source_name=self._relay_client.name,
                    target_peer=message.source_peer,
                    description_type='answer',
                    description='',
                    error=(
                        f'Peer {self.identity} does not support protocol '
                        f'{message.protocol}.'
                    ),
                ),
            )
            return

        logger.info(f'{self._log_prefix}: received offer from {remote}')
        pc = self._create_peer_connection()
        self._answering.add(pc)

        @pc.on('datachannel')
        def on_datachannel(channel: RTCDataChannel) -> None:
            self._answering.discard(pc)
            stream = DataChannelStream(
                message.connection_id,
                'inbound',
                remote,
                self._relay_client.address,
                pc,
                channel,
            )
            self._opened(stream)
            task = spawn_guarded_background_task(
                self._run_handler,
                handler,
                remote,
                stream,
                name=f'webrtc-stream-handler-{message.connection_id}',
            )
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

        try:
            description = object_from_string(message.description)
            if not isinstance(description, RTCSessionDescription):
                raise ValueError(
                    'offer does not contain a session description',
                )
            await pc.setRemoteDescription(description)
            await pc.setLocalDescription(await pc.createAnswer())
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to answer offer from {remote}: '
                f'{e!r}',
            )
            self._answering.discard(pc)
            await pc.close()
            return

        answer = PeerConnectionRequest(
            source_peer=str(self.identity),
            source_name=self._relay_client.name,
            target_peer=message.source_peer,
            connection_id=message.connection_id,
            protocol=message.protocol,
            description_type='answer',
            description=object_to_string(pc.localDescription),
        )
        logger.info(f'{self._log_prefix}: sending answer to {remote}')
        if not await self._send_to_relay(answer):
            self._answering.discard(pc)
            await pc.close()

    async def _handle_answer(self, message: PeerConnectionRequest) -> None:
        pending = self._pending.get(message.connection_id)
        if pending is None:
            logger.warning(
                f'{self._log_prefix}: received answer for unknown connection '
                f'{message.connection_id}',
            )
            return
        logger.info(
            f'{self._log_prefix}: received answer from {message.source_peer}',
        )
        try:
            description = object_from_string(message.description)
            if not isinstance(description, RTCSessionDescription):
                raise ValueError(
                    'answer does not contain a session description',
                )
            await pending.pc.setRemoteDescription(description)
        except Exception as e:
            if not pending.opened.done():
                pending.opened.set_exception(
                    TransportError(f'Invalid answer from remote peer: {e}'),
                )

    def _handle_error(self, message: PeerConnectionRequest) -> None:
        pending = self._pending.get(message.connection_id)
        if pending is None:
            logger.warning(
                f'{self._log_prefix}: received error for unknown connection '
                f'{message.connection_id}: {message.error}',
            )
        elif not pending.opened.done():
            pending.opened.set_exception(
                TransportError(
                    f'Received error message from relay server: '
                    f'{message.error}',
                ),
            )

    async def _handle_relay_messages(self) -> None:
        """Handle messages from the relay server.

        Offers create inbound peer connections, answers complete pending
        dials, and errors fail pending dials.
        """
        while True:
            try:
                message = await self._relay_client.recv()
            except websockets.exceptions.ConnectionClosed:
                # The relay client reconnects in the background.
                await asyncio.sleep(self._relay_retry_delay)
                continue
            except RelayMessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error deserializing message from '
                    f'relay server: {e} ...skipping message',
                )
                continue

            if isinstance(message, PeerConnectionRequest):
                if message.error is not None:
                    self._handle_error(message)
                elif message.description_type == 'offer':
                    await self._handle_offer(message)
                elif message.description_type == 'answer':
                    await self._handle_answer(message)
                else:
                    logger.error(
                        f'{self._log_prefix}: peer connection message '
                        'contains neither an offer nor an answer',
                    )
            elif isinstance(message, RelayResponse):
                # Registration responses are consumed by the relay client so
                # the server should never send one here.
                logger.error(
                    f'{self._log_prefix}: got unexpected RelayResponse '
                    f'from relay server: {message}',
                )
            else:
                logger.error(
                    f'{self._log_prefix}: received unknown message type '
                    f'{type(message).__name__} from relay server',
                )