"""Manager of message channels to many participants."""
from __future__ import annotations

import asyncio
import enum
import logging
import types
from types import TracebackType
from typing import Any
from typing import Generator
from typing import Literal
from typing import Mapping
from typing import Protocol
from typing import runtime_checkable

from p2pchat.address import RelayAddress
from p2pchat.address import Route
from p2pchat.exceptions import ChannelError
from p2pchat.exceptions import DialFailureError
from p2pchat.exceptions import DialTimeoutError
from p2pchat.exceptions import ReadFailureError
from p2pchat.exceptions import RemoteDisconnectedError
from p2pchat.exceptions import StreamError
from p2pchat.exceptions import TransportError
from p2pchat.exceptions import UnknownPeerError
from p2pchat.exceptions import WriteFailureError
from p2pchat.identity import Identity
from p2pchat.identity import IdentityRegistry
from p2pchat.identity import UNKNOWN_ID
from p2pchat.transport.protocols import MessageStream
from p2pchat.transport.protocols import Transport
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL = '/p2pchat/message/1.0.0'
DEFAULT_DIAL_TIMEOUT = 5.0

TASK_OPEN = 'opening connection'
TASK_SEND = 'sending message'
TASK_READ = 'reading message'


class ChannelState(enum.Enum):
    """Channel state of a remote participant."""

    ABSENT = 'absent'
    """No channel is registered or being opened."""
    OPENING = 'opening'
    """An outbound channel is being dialed."""
    OPEN = 'open'
    """A channel is registered and its read loop is running."""


class ChannelStatus(enum.Enum):
    """Channel lifecycle notices reported to the listener."""

    CONNECTING = 'connecting'
    """An outbound channel is being dialed. Detail is the remote identity."""
    OPENED = 'opened'
    """An outbound channel opened."""
    INBOUND = 'inbound'
    """An inbound channel opened. Detail is the remote identity."""
    REMOTE_DISCONNECTED = 'remote disconnected'
    """The remote participant aborted the channel."""
    CLOSED = 'closed'
    """The channel was closed locally."""


@runtime_checkable
class SessionListener(Protocol):
    """Receiver of messages and notices from a session manager."""

    def on_message(self, peer_id: int, message: str) -> None:
        """Handle a message received from a participant."""
        ...

    def on_error(self, peer_id: int, task: str, error: ChannelError) -> None:
        """Handle an error local to the channel of a participant.

        Args:
            peer_id: Numeric id of the participant.
            task: Short description of what was being done, one of
                `'opening connection'`, `'sending message'`, or
                `'reading message'`.
            error: The error.
        """
        ...

    def on_status(
        self,
        peer_id: int,
        status: ChannelStatus,
        detail: str | None,
    ) -> None:
        """Handle a channel lifecycle notice."""
        ...


class Channel:
    """Message channel to one remote participant.

    The channel exclusively owns its stream. Reading happens in a single
    background task started when the channel is registered with a
    [`ChannelSessionManager`][p2pchat.session.ChannelSessionManager].

    Args:
        peer_id: Numeric id of the remote participant.
        stream: Stream to the remote participant.
        direction: If the channel was dialed or accepted.
    """

    def __init__(
        self,
        peer_id: int,
        stream: MessageStream,
        direction: Literal['inbound', 'outbound'],
    ) -> None:
        self.peer_id = peer_id
        self.stream = stream
        self.direction = direction
        self.superseded = False
        self.error: ChannelError | None = None
        self._closing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        """If the read loop of the channel is running."""
        return self._task is not None and not self._task.done()

    @property
    def remote_identity(self) -> Identity:
        """Identity of the remote participant."""
        return self.stream.remote_identity

    async def wait_closed(self) -> ChannelError | None:
        """Wait for the read loop of the channel to terminate.

        Returns:
            The error that terminated the channel, or `None` if the channel \
            was closed locally.
        """
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.error

    def __repr__(self) -> str:
        state = 'active' if self.active else 'retired'
        return (
            f'{self.__class__.__name__}(peer_id={self.peer_id}, '
            f'direction={self.direction}, {state})'
        )


class ChannelSessionManager:
    """Channel Session Manager.

    Maintains at most one active message channel per remote participant.
    Channels are opened on demand when sending and accepted when a remote
    participant dials this one. Every per-channel failure is reported to the
    listener and only retires the affected channel.

    Example:
        ```python
        from p2pchat.identity import IdentityRegistry
        from p2pchat.session import ChannelSessionManager

        registry = IdentityRegistry.create()
        async with ChannelSessionManager(
            transport, registry, relay, listener,
        ) as manager:
            await manager.send(5, 'hello')
        ```

    Note:
        The class can also be initialized with `await`.

    Args:
        transport: Transport fabric used to dial and accept streams.
        registry: Mapping between numeric ids and identities.
        relay: Relay through which remote participants are dialed.
        listener: Receiver of messages, errors, and status notices.
        protocol: Protocol name streams are dialed and accepted on.
        dial_timeout: Seconds to wait on an outbound channel to open.
    """

    def __init__(
        self,
        transport: Transport,
        registry: IdentityRegistry,
        relay: RelayAddress,
        listener: SessionListener,
        *,
        protocol: str = DEFAULT_PROTOCOL,
        dial_timeout: float = DEFAULT_DIAL_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._relay = relay
        self._listener = listener
        self._protocol = protocol
        self._dial_timeout = dial_timeout

        self._channels: dict[int, Channel] = {}
        self._pending: dict[int, asyncio.Future[Channel]] = {}
        self._dials: dict[int, asyncio.Task[MessageStream]] = {}
        # Channels with running read loops including superseded channels.
        self._live: set[Channel] = set()
        self._started = False
        self._closed = False

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[id:{self.local_id}]'

    @property
    def local_id(self) -> int:
        """Numeric id of the local participant."""
        return self._registry.lookup(self._transport.identity)

    @property
    def registry(self) -> IdentityRegistry:
        """Mapping between numeric ids and identities."""
        return self._registry

    @property
    def protocol(self) -> str:
        """Protocol name channels are opened on."""
        return self._protocol

    @property
    def channels(self) -> Mapping[int, Channel]:
        """Read-only view of the active-channel table."""
        return types.MappingProxyType(self._channels)

    async def start(self) -> None:
        """Start accepting inbound channels."""
        self._closed = False
        if not self._started:
            self._transport.handle(self._protocol, self._handle_inbound)
            self._started = True
            logger.info(
                f'{self._log_prefix}: accepting channels on {self._protocol}',
            )

    async def __aenter__(self) -> ChannelSessionManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, ChannelSessionManager]:
        return self.__aenter__().__await__()

    def state(self, peer_id: int) -> ChannelState:
        """Get the channel state of a participant."""
        if peer_id in self._pending:
            return ChannelState.OPENING
        elif peer_id in self._channels:
            return ChannelState.OPEN
        return ChannelState.ABSENT

    async def send(self, peer_id: int, message: str) -> None:
        """Send a message to a participant.

        Opens a channel to the participant if none is registered. Failures
        are reported to the listener rather than raised.

        Args:
            peer_id: Numeric id of the participant.
            message: Text to send.
        """
        try:
            channel = await self.get_channel(peer_id)
        except ChannelError as e:
            logger.warning(
                f'{self._log_prefix}: {TASK_OPEN} to {peer_id}: {e}',
            )
            self._listener.on_error(peer_id, TASK_OPEN, e)
            return

        try:
            await channel.stream.write(message.encode('utf-8'))
        except TransportError as e:
            logger.warning(
                f'{self._log_prefix}: {TASK_SEND} to {peer_id}: {e}',
            )
            self._listener.on_error(
                peer_id,
                TASK_SEND,
                WriteFailureError(peer_id, str(e)),
            )
        else:
            logger.debug(f'{self._log_prefix}: sent message to {peer_id}')

    async def get_channel(
        self,
        peer_id: int,
        route: Route | None = None,
    ) -> Channel:
        """Get the channel to a participant, opening one if needed.

        Concurrent calls for a participant whose channel is being opened
        share the same dial.

        Args:
            peer_id: Numeric id of the participant.
            route: Route to dial if a channel is opened. Defaults to the
                participant behind the relay of the manager.

        Returns:
            The registered channel.

        Raises:
            UnknownPeerError: If `peer_id` is not an addressable participant.
            DialTimeoutError: If the channel does not open within the timeout.
            DialFailureError: If the transport rejects the dial.
        """
        channel = self._channels.get(peer_id)
        if channel is not None:
            return channel

        pending = self._pending.get(peer_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[Channel] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[peer_id] = future
        try:
            channel = await self._open_channel(peer_id, route)
        except BaseException as e:
            # Callers sharing the dial were not cancelled themselves so they
            # get a dial failure rather than the cancellation.
            error = (
                e
                if isinstance(e, ChannelError)
                else DialFailureError(
                    peer_id,
                    f'opening channel to {peer_id} was cancelled',
                )
            )
            future.set_exception(error)
            # Mark the exception retrieved for when no other caller waits.
            future.exception()
            raise
        else:
            future.set_result(channel)
        finally:
            del self._pending[peer_id]
        return channel

    async def connect(self, route: Route) -> Channel:
        """Open a channel to the participant at the end of a route.

        Unlike [`send()`][p2pchat.session.ChannelSessionManager.send],
        failures are raised rather than reported to the listener.

        Raises:
            UnknownPeerError: If the target of `route` is not in the registry.
            DialTimeoutError: If the channel does not open within the timeout.
            DialFailureError: If the transport rejects the dial.
        """
        peer_id = self._registry.lookup(route.target)
        if peer_id == UNKNOWN_ID:
            raise UnknownPeerError(
                peer_id,
                f'{route.target} is not a known participant',
            )
        return await self.get_channel(peer_id, route)

    async def _open_channel(
        self,
        peer_id: int,
        route: Route | None,
    ) -> Channel:
        identity = self._registry.identity(peer_id)
        if self._closed:
            raise DialFailureError(
                peer_id,
                f'opening channel to {identity}: session manager is closed',
            )
        if route is None:
            route = Route(self._relay, identity)
        logger.info(
            f'{self._log_prefix}: opening channel to {peer_id} via {route}',
        )
        self._listener.on_status(
            peer_id,
            ChannelStatus.CONNECTING,
            str(identity),
        )

        dial = asyncio.create_task(
            self._transport.dial(route, self._protocol),
            name=f'dial-channel-{self.local_id}-{peer_id}',
        )
        self._dials[peer_id] = dial
        try:
            stream = await asyncio.wait_for(dial, self._dial_timeout)
        except asyncio.TimeoutError as e:
            raise DialTimeoutError(
                peer_id,
                f'timed out opening channel to {identity} after '
                f'{self._dial_timeout} seconds',
            ) from e
        except TransportError as e:
            raise DialFailureError(
                peer_id,
                f'opening channel to {identity}: {e}',
            ) from e
        except asyncio.CancelledError:
            # close() cancels dials in progress.
            if not self._closed:
                raise
            raise DialFailureError(
                peer_id,
                f'opening channel to {identity}: session manager closed',
            ) from None
        finally:
            if self._dials.get(peer_id) is dial:
                del self._dials[peer_id]

        if self._closed:
            await stream.close()
            raise DialFailureError(
                peer_id,
                f'opening channel to {identity}: session manager closed',
            )

        channel = Channel(peer_id, stream, 'outbound')
        self._register(channel)
        self._listener.on_status(peer_id, ChannelStatus.OPENED, None)
        return channel

    async def _handle_inbound(
        self,
        remote: Identity,
        stream: MessageStream,
    ) -> None:
        if self._closed:
            logger.info(
                f'{self._log_prefix}: refusing inbound channel from '
                f'{remote} after close',
            )
            await stream.close()
            return

        peer_id = self._registry.lookup(remote)
        if peer_id == UNKNOWN_ID:
            logger.warning(
                f'{self._log_prefix}: inbound channel from unknown peer '
                f'{remote}',
            )
        else:
            logger.info(
                f'{self._log_prefix}: inbound channel from {peer_id}',
            )

        channel = Channel(peer_id, stream, 'inbound')
        self._register(channel)
        self._listener.on_status(peer_id, ChannelStatus.INBOUND, str(remote))
        await channel.wait_closed()

    def _register(self, channel: Channel) -> None:
        previous = self._channels.get(channel.peer_id)
        if previous is not None:
            previous.superseded = True
            logger.info(
                f'{self._log_prefix}: {channel.direction} channel to '
                f'{channel.peer_id} supersedes {previous.direction} channel',
            )
        self._channels[channel.peer_id] = channel
        self._live.add(channel)
        channel._task = spawn_guarded_background_task(
            self._read_loop,
            channel,
            name=f'read-channel-{self.local_id}-{channel.peer_id}',
        )

    def _deregister(self, channel: Channel) -> None:
        self._live.discard(channel)
        if self._channels.get(channel.peer_id) is channel:
            del self._channels[channel.peer_id]

    async def _read_loop(self, channel: Channel) -> None:
        try:
            while True:
                try:
                    data = await channel.stream.read()
                except Exception as e:
                    self._retire(channel, e)
                    return
                self._listener.on_message(
                    channel.peer_id,
                    data.decode('utf-8', errors='replace'),
                )
        finally:
            self._deregister(channel)

    def _retire(self, channel: Channel, error: Exception) -> None:
        peer_id = channel.peer_id
        if channel._closing:
            logger.debug(f'{self._log_prefix}: channel to {peer_id} closed')
            return

        if isinstance(error, StreamError) and error.remote_aborted:
            channel.error = RemoteDisconnectedError(peer_id, str(error))
        else:
            detail = str(error) or type(error).__name__
            channel.error = ReadFailureError(peer_id, detail)

        if channel.superseded:
            logger.info(
                f'{self._log_prefix}: retired superseded channel to '
                f'{peer_id} ({channel.error!r})',
            )
        elif isinstance(channel.error, RemoteDisconnectedError):
            logger.info(f'{self._log_prefix}: {peer_id} disconnected')
            self._listener.on_status(
                peer_id,
                ChannelStatus.REMOTE_DISCONNECTED,
                channel.error.detail,
            )
        else:
            logger.warning(
                f'{self._log_prefix}: {TASK_READ} from {peer_id}: '
                f'{channel.error}',
            )
            self._listener.on_error(peer_id, TASK_READ, channel.error)

    async def _close(self, channel: Channel) -> None:
        channel._closing = True
        await cancel_and_wait(channel._task)
        await channel.stream.close()
        self._deregister(channel)

    async def close_channel(self, peer_id: int) -> bool:
        """Close the channel to a participant if one is registered.

        Args:
            peer_id: Numeric id of the participant.

        Returns:
            If a channel was closed.
        """
        channel = self._channels.get(peer_id)
        if channel is None:
            return False
        logger.info(f'{self._log_prefix}: closing channel to {peer_id}')
        await self._close(channel)
        self._listener.on_status(peer_id, ChannelStatus.CLOSED, None)
        return True

    async def close(self) -> None:
        """Close every channel and stop accepting inbound channels.

        Dials in progress are cancelled and the sends waiting on them
        report a [`DialFailureError`][p2pchat.exceptions.DialFailureError].

        Note:
            This does not close the transport.
        """
        self._closed = True
        if self._started:
            self._transport.unhandle(self._protocol)
            self._started = False

        for dial in list(self._dials.values()):
            dial.cancel()
        pending = list(self._pending.values())
        if len(pending) > 0:
            await asyncio.wait(pending)

        for channel in list(self._live):
            await self._close(channel)
        logger.info(f'{self._log_prefix}: session manager closed')
