from __future__ import annotations

from unittest import mock

from websockets.asyncio.server import ServerConnection

from p2pchat.identity import derive_identity
from p2pchat.relay.manager import Client
from p2pchat.relay.manager import ClientManager


def _client(peer_id: int = 1, name: str = 'name') -> Client:
    return Client(
        name=name,
        peer=str(derive_identity(peer_id)),
        websocket=mock.create_autospec(ServerConnection, instance=True),
    )


def test_clients_compare_by_identity() -> None:
    first = _client()
    assert first == first
    assert first != _client()


def test_client_repr() -> None:
    client = _client(3, 'id:3')
    result = repr(client)
    assert result.startswith('Client(name=id:3, ')
    assert client.peer in result
    assert 'UTC' in result


def test_client_manager() -> None:
    manager = ClientManager()

    # Operations on empty manager
    assert manager.get_clients() == []
    assert manager.get_client_by_peer(str(derive_identity(1))) is None
    assert manager.get_client_by_websocket(_client().websocket) is None

    client = _client()
    manager.add_client(client)
    assert manager.get_clients() == [client]
    assert manager.get_client_by_peer(client.peer) is client
    assert manager.get_client_by_websocket(client.websocket) is client

    # Removing twice is a no-op
    manager.remove_client(client)
    assert manager.get_clients() == []
    manager.remove_client(client)

    for peer_id in range(1, 6):
        manager.add_client(_client(peer_id))
    assert len(manager.get_clients()) == 5


def test_client_manager_replaced_registration() -> None:
    manager = ClientManager()
    old = _client()
    new = _client()
    manager.add_client(old)
    manager.add_client(new)

    assert manager.get_client_by_peer(old.peer) is new
    # Removing the replaced registration keeps the current one
    manager.remove_client(old)
    assert manager.get_client_by_peer(old.peer) is new
    assert manager.get_client_by_websocket(new.websocket) is new
    assert manager.get_client_by_websocket(old.websocket) is None
