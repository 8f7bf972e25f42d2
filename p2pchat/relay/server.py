"""Relay server which brokers WebRTC negotiations between participants.

Participants cannot reach each other directly until a data channel is
negotiated, so each one keeps a websocket open to a relay server reachable
by all of them. A participant registers its identity with the relay and
the relay then forwards offers and answers addressed to that identity.
After negotiation, chat traffic never touches the relay.
"""
from __future__ import annotations

import logging
import sys

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from p2pchat.exceptions import BadRequestError
from p2pchat.exceptions import ForbiddenError
from p2pchat.exceptions import RelayServerError
from p2pchat.identity import Identity
from p2pchat.relay.manager import Client
from p2pchat.relay.manager import ClientManager
from p2pchat.relay.messages import decode_relay_message
from p2pchat.relay.messages import encode_relay_message
from p2pchat.relay.messages import PeerConnectionRequest
from p2pchat.relay.messages import RelayMessage
from p2pchat.relay.messages import RelayMessageDecodeError
from p2pchat.relay.messages import RelayMessageEncodeError
from p2pchat.relay.messages import RelayRegistrationRequest
from p2pchat.relay.messages import RelayResponse

logger = logging.getLogger(__name__)

CLOSE_BAD_MESSAGE = 4000
CLOSE_FORBIDDEN = 4002
CLOSE_TOO_LARGE = 4003


class RelayServer:
    """Registry of participants and forwarder of negotiation messages.

    Pass [`handler()`][p2pchat.relay.server.RelayServer.handler] to a
    websockets server, as done by
    [`serve()`][p2pchat.relay.run.serve].

    Args:
        identity: Identity announced to participants when they register.
            Participants may refuse relays announcing another identity.
        max_message_bytes: Optional limit on the size of received messages.
            The size is measured with
            [`sys.getsizeof()`][sys.getsizeof] so includes the Python
            object overhead. Senders of larger messages are disconnected.
    """

    def __init__(
        self,
        identity: Identity,
        max_message_bytes: int | None = None,
    ) -> None:
        self._identity = identity
        self._client_manager = ClientManager()
        self._max_message_bytes = max_message_bytes

    @property
    def identity(self) -> Identity:
        """Identity announced by the relay."""
        return self._identity

    @property
    def client_manager(self) -> ClientManager:
        """Registered participants."""
        return self._client_manager

    async def send(self, client: Client, message: RelayMessage) -> None:
        """Send a message to a participant.

        Encoding failures and closed websockets are logged, not raised.
        """
        try:
            message_str = encode_relay_message(message)
        except RelayMessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await client.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Websocket of {client.peer} ({client.name}) closed while '
                'attempting to send message',
            )

    async def register(
        self,
        websocket: ServerConnection,
        request: RelayRegistrationRequest,
    ) -> None:
        """Register the participant on a websocket.

        A participant registering an identity already registered on another
        websocket replaces that registration and the old websocket is
        closed. The reply announces the identity of the relay.

        Raises:
            BadRequestError: If `request.peer` is not an identity string.
        """
        try:
            Identity.from_string(request.peer)
        except ValueError as e:
            raise BadRequestError(
                f'Invalid identity in registration: {request.peer}.',
            ) from e

        previous = self.client_manager.get_client_by_peer(request.peer)
        if previous is not None and previous.websocket is not websocket:
            logger.info(
                f'Previously registered client {request.peer} registered '
                'again on a new websocket so the old websocket will be '
                'closed',
            )
            await self.unregister(previous, expected=False)

        client = Client(
            name=request.name,
            peer=request.peer,
            websocket=websocket,
        )
        self.client_manager.add_client(client)
        logger.info(f'Registered client: {client!r}')

        await self.send(
            client,
            RelayResponse(success=True, relay_peer=str(self.identity)),
        )

    async def unregister(self, client: Client, expected: bool) -> None:
        """Remove a participant and close its websocket.

        Args:
            client: Participant to remove.
            expected: The participant closed the websocket normally.
        """
        logger.info(
            f'Unregistering client {client.peer} ({client.name}), '
            f'{"closed" if expected else "closed unexpectedly"}',
        )
        self.client_manager.remove_client(client)
        await client.websocket.close(code=1000 if expected else 1001)

    async def forward(
        self,
        source_client: Client,
        request: PeerConnectionRequest,
    ) -> None:
        """Forward a negotiation message to its target.

        If the target is not registered, the request is sent back to the
        source with `request.error` explaining why.
        """
        target = self.client_manager.get_client_by_peer(request.target_peer)
        if target is None:
            logger.warning(
                f'Client {source_client.peer} ({source_client.name}) sent '
                f'{request.description_type} to unknown peer '
                f'{request.target_peer}',
            )
            request.error = (
                'Cannot forward peer connection message to peer '
                f'{request.target_peer} because this peer is not registered '
                'with this relay server.'
            )
            await self.send(source_client, request)
            return

        logger.info(
            f'Forwarding {request.description_type} for '
            f'{request.connection_id} from {source_client.name} to '
            f'{target.name}',
        )
        await self.send(target, request)

    async def _dispatch(
        self,
        websocket: ServerConnection,
        message: RelayMessage,
    ) -> None:
        if isinstance(message, RelayRegistrationRequest):
            await self.register(websocket, message)
            return
        if not isinstance(message, PeerConnectionRequest):
            raise BadRequestError(
                f'Unsupported message type {type(message).__name__}.',
            )

        client = self.client_manager.get_client_by_websocket(websocket)
        if client is None:
            logger.warning(
                f'Unregistered websocket {websocket.remote_address} tried '
                f'to forward a request as {message.source_peer}',
            )
            raise ForbiddenError(
                'Client has not registered with the relay server.',
            )
        # Forwarded requests always carry the sender's registered identity.
        message.source_peer = client.peer
        await self.forward(client, message)

    def _too_large(self, message: str | bytes) -> bool:
        return (
            self._max_message_bytes is not None
            and sys.getsizeof(message) > self._max_message_bytes
        )

    async def handler(self, websocket: ServerConnection) -> None:
        """Serve one participant's websocket until it closes.

        The relay closes the websocket itself when the participant:

        - sends a message which does not decode (code 4000),
        - forwards a request before registering (code 4002), or
        - sends a message over the size limit (code 4003).

        Other request errors are answered with an error
        [`RelayResponse`][p2pchat.relay.messages.RelayResponse].
        """
        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                client = self.client_manager.get_client_by_websocket(websocket)
                if client is not None:
                    expected = isinstance(
                        e,
                        websockets.exceptions.ConnectionClosedOK,
                    )
                    await self.unregister(client, expected=expected)
                return

            if self._too_large(message_str):
                logger.warning(
                    f'Closing websocket {websocket.remote_address} with code '
                    f'{CLOSE_TOO_LARGE} because a message of '
                    f'{sys.getsizeof(message_str)} bytes exceeds the limit '
                    f'of {self._max_message_bytes} bytes',
                )
                await websocket.close(
                    CLOSE_TOO_LARGE,
                    reason='Message length exceeds limit.',
                )
                return

            try:
                if not isinstance(message_str, str):
                    raise RelayMessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_relay_message(message_str)
            except RelayMessageDecodeError as e:
                logger.error(
                    f'Closing websocket {websocket.remote_address} with code '
                    f'{CLOSE_BAD_MESSAGE} because a message failed to '
                    f'decode: {e}',
                )
                await websocket.close(
                    CLOSE_BAD_MESSAGE,
                    reason='Unknown message type.',
                )
                return

            try:
                await self._dispatch(websocket, message)
            except ForbiddenError as e:
                await websocket.close(
                    code=CLOSE_FORBIDDEN,
                    reason=f'{type(e).__name__}: {e}',
                )
                return
            except RelayServerError as e:
                response = RelayResponse(
                    success=False,
                    message=f'{type(e).__name__}: {e}',
                    error=True,
                )
                await websocket.send(encode_relay_message(response))
