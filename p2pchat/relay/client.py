"""Participant side of the relay server connection."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Generator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.protocol import State

from p2pchat.exceptions import RelayNotConnectedError
from p2pchat.exceptions import RelayRegistrationError
from p2pchat.identity import Identity
from p2pchat.relay.messages import decode_relay_message
from p2pchat.relay.messages import encode_relay_message
from p2pchat.relay.messages import RelayMessage
from p2pchat.relay.messages import RelayMessageDecodeError
from p2pchat.relay.messages import RelayRegistrationRequest
from p2pchat.relay.messages import RelayResponse
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 60

# Failures which are worth retrying with backoff. Registration errors are
# not because the relay will refuse again.
_RETRYABLE = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.ConnectionClosed,
)


class RelayClient:
    """Registered connection of one participant to a relay server.

    The client registers the participant's identity when the websocket is
    opened and transparently reopens the websocket if it closes.

    Example:
        ```python
        from p2pchat.identity import derive_identity
        from p2pchat.relay.client import RelayClient

        async with RelayClient('ws://localhost:9001', derive_identity(1)) as c:
            await c.send(request)
            reply = await c.recv()
        ```

    Note:
        The websocket is opened lazily by the first
        [`send()`][p2pchat.relay.client.RelayClient.send],
        [`recv()`][p2pchat.relay.client.RelayClient.recv], or
        [`connect()`][p2pchat.relay.client.RelayClient.connect]. Entering
        the context manager or awaiting the client calls `connect()`.

    Args:
        address: `ws://` or `wss://` URL of the relay server.
        identity: Identity to register as.
        name: Display name to register with. Defaults to the identity
            string.
        expected_relay: If set, registration fails unless the relay
            announces this identity.
        reconnect_task: Run a background task which reconnects as soon as
            the websocket closes. Without it, a closed websocket is only
            reopened by the next `send()` or `recv()`.
        ssl_context: SSL context for `wss://` connections. Defaults to
            [`ssl.create_default_context()`][ssl.create_default_context].
        timeout: Seconds to wait on opening the websocket and on the
            registration reply.
        verify_certificate: Verify the relay's certificate when the default
            SSL context is used.

    Raises:
        ValueError: If `address` is not a `ws://` or `wss://` URL.
    """

    def __init__(
        self,
        address: str,
        identity: Identity,
        *,
        name: str | None = None,
        expected_relay: Identity | None = None,
        reconnect_task: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not address.startswith(('ws://', 'wss://')):
            raise ValueError(
                f'Relay address must be a ws:// or wss:// URL. Got {address}.',
            )

        if address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._address = address
        self._identity = identity
        self._name = str(identity) if name is None else name
        self._expected_relay = expected_relay
        self._ssl_context = ssl_context
        self._timeout = timeout
        self._use_reconnect_task = reconnect_task
        self._initial_backoff_seconds = 1.0

        self._relay_identity: Identity | None = None
        self._websocket: ClientConnection | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, Self]:
        return self.__aenter__().__await__()

    @property
    def address(self) -> str:
        """URL of the relay server."""
        return self._address

    @property
    def name(self) -> str:
        """Display name registered with the relay."""
        return self._name

    @property
    def identity(self) -> Identity:
        """Identity registered with the relay."""
        return self._identity

    @property
    def relay_identity(self) -> Identity | None:
        """Identity the relay announced at the last registration."""
        return self._relay_identity

    @property
    def websocket(self) -> ClientConnection:
        """Open websocket to the relay server.

        Raises:
            RelayNotConnectedError: If no websocket is open. Call
                [`connect()`][p2pchat.relay.client.RelayClient.connect]
                first.
        """
        if self._is_open():
            assert self._websocket is not None
            return self._websocket
        raise RelayNotConnectedError(
            f'No open websocket to the relay server at {self._address}. '
            'Try calling connect() first.',
        )

    def _is_open(self) -> bool:
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    async def _register(self, timeout: float) -> ClientConnection:
        """Open a websocket and register the participant on it.

        Raises:
            OSError: If the relay server is unreachable.
            asyncio.TimeoutError: If the relay server does not reply in
                time.
            websockets.exceptions.ConnectionClosed: If the websocket closed
                during registration.
            RelayRegistrationError: If the relay refused the registration,
                sent an unexpected reply, or announced an unexpected
                identity.
        """
        websocket = await connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
        )
        request = RelayRegistrationRequest(
            name=self._name,
            peer=str(self._identity),
        )
        await websocket.send(encode_relay_message(request))

        reply_str = await asyncio.wait_for(websocket.recv(), timeout)
        if not isinstance(reply_str, str):
            raise AssertionError('Relay server replied with non-string data.')

        try:
            reply = decode_relay_message(reply_str)
        except RelayMessageDecodeError as e:
            await websocket.close()
            raise RelayRegistrationError(
                'Unable to decode response message from relay server.',
            ) from e

        if not isinstance(reply, RelayResponse):
            await websocket.close()
            raise RelayRegistrationError(
                'Relay server replied with unknown message type: '
                f'{type(reply).__name__}.',
            )
        if not reply.success:
            await websocket.close()
            raise RelayRegistrationError(
                f'Relay server refused the registration: {reply.message}',
            )

        announced = (
            None
            if reply.relay_peer is None
            else Identity.from_string(reply.relay_peer)
        )
        if (
            self._expected_relay is not None
            and announced != self._expected_relay
        ):
            await websocket.close()
            raise RelayRegistrationError(
                f'Relay server at {self._address} announced identity '
                f'{announced} but {self._expected_relay} was expected.',
            )

        self._relay_identity = announced
        logger.info(
            f'Registered with relay server at {self._address} as '
            f'{self._identity} ({self._name})',
        )
        return websocket

    async def _reconnect_on_close(self) -> None:
        while True:
            assert self._websocket is not None
            await self._websocket.wait_closed()
            logger.warning(
                f'Websocket to relay server at {self._address} closed, '
                'reconnecting',
            )
            await self.connect()

    async def connect(self, retry: bool = True) -> None:
        """Open and register a websocket if none is open.

        Args:
            retry: Retry failures to reach the relay with exponential
                backoff, starting at one second and capped at one minute.
                Otherwise the first failure is raised.

        Raises:
            RelayRegistrationError: If the relay refused the registration
                or announced an unexpected identity. Never retried.
        """
        async with self._connect_lock:
            if self._is_open():
                return

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._register(self._timeout)
                    break
                except _RETRYABLE as e:
                    if not retry:
                        raise
                    logger.warning(
                        f'Registration with relay server at {self._address} '
                        f'failed: {e!r}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        _MAX_BACKOFF_SECONDS,
                    )

            if self._use_reconnect_task and self._reconnect_task is None:
                self._reconnect_task = spawn_guarded_background_task(
                    self._reconnect_on_close,
                    name=f'relay-client-reconnect-{self._name}',
                )

    async def _open_websocket(self) -> ClientConnection:
        if not self._is_open():
            await self.connect()
        return self.websocket

    async def close(self) -> None:
        """Stop reconnecting and close the websocket."""
        await cancel_and_wait(self._reconnect_task)
        self._reconnect_task = None
        if self._websocket is not None:
            await self._websocket.close()

    async def recv(self) -> RelayMessage:
        """Receive the next message from the relay server.

        Raises:
            RelayMessageDecodeError: If the received data is not a relay
                message.
        """
        websocket = await self._open_websocket()
        message_str = await websocket.recv()
        if not isinstance(message_str, str):
            raise RelayMessageDecodeError(
                'Received non-string data from the relay server.',
            )
        return decode_relay_message(message_str)

    async def send(self, message: RelayMessage) -> None:
        """Send a message to the relay server."""
        message_str = encode_relay_message(message)
        websocket = await self._open_websocket()
        await websocket.send(message_str)
