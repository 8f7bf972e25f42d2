"""Registry of participants connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Client:
    """Participant registered with the relay server.

    Attributes:
        name: Display name of the participant.
        peer: Identity string of the participant.
        websocket: WebSocket connection to the participant.
        created: Time the registration was created at.
    """

    name: str
    peer: str
    websocket: ServerConnection
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(name={self.name}, peer={self.peer}, '
            f'address={address}, created={created})'
        )


class ClientManager:
    """Index of registered participants by identity and by websocket.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][p2pchat.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._clients_by_peer: dict[str, Client] = {}
        self._clients_by_websocket: dict[ServerConnection, Client] = {}

    def add_client(self, client: Client) -> None:
        """Add a registered participant."""
        self._clients_by_peer[client.peer] = client
        self._clients_by_websocket[client.websocket] = client

    def get_clients(self) -> list[Client]:
        """Get a list of all registered participants."""
        return list(self._clients_by_peer.values())

    def get_client_by_peer(self, peer: str) -> Client | None:
        """Get a participant by its identity string."""
        return self._clients_by_peer.get(peer, None)

    def get_client_by_websocket(
        self,
        websocket: ServerConnection,
    ) -> Client | None:
        """Get a participant by its current websocket connection."""
        return self._clients_by_websocket.get(websocket, None)

    def remove_client(self, client: Client) -> None:
        """Remove a participant if it is still the registered one."""
        if self._clients_by_peer.get(client.peer) is client:
            del self._clients_by_peer[client.peer]
        if self._clients_by_websocket.get(client.websocket) is client:
            del self._clients_by_websocket[client.websocket]
