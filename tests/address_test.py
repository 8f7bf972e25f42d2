from __future__ import annotations

import pytest

from p2pchat.address import AddressError
from p2pchat.address import RelayAddress
from p2pchat.address import Route
from p2pchat.identity import derive_identity
from p2pchat.identity import RELAY_ID

RELAY_IDENTITY = derive_identity(RELAY_ID)


def test_parse_relay_address() -> None:
    address = RelayAddress.parse('/dns4/troll.fudco.com/tcp/9001/ws')
    assert address == RelayAddress('troll.fudco.com', 9001)
    assert address.websocket_url == 'ws://troll.fudco.com:9001'
    assert str(address) == '/dns4/troll.fudco.com/tcp/9001/ws'


def test_parse_relay_address_with_peer() -> None:
    value = f'/dns4/localhost/tcp/443/wss/p2p/{RELAY_IDENTITY}'
    address = RelayAddress.parse(value)
    assert address.secure
    assert address.peer == RELAY_IDENTITY
    assert address.websocket_url == 'wss://localhost:443'
    assert str(address) == value


def test_ip6_websocket_url() -> None:
    address = RelayAddress.parse('/ip6/::1/tcp/9001/ws')
    assert address.websocket_url == 'ws://[::1]:9001'


def test_with_peer() -> None:
    address = RelayAddress('localhost', 9001)
    assert address.with_peer(RELAY_IDENTITY).peer == RELAY_IDENTITY
    assert address.peer is None


@pytest.mark.parametrize(
    'value',
    (
        '',
        'dns4/localhost/tcp/9001/ws',
        '/dns4/localhost/tcp/9001',
        '/unix/localhost/tcp/9001/ws',
        '/dns4//tcp/9001/ws',
        '/dns4/localhost/udp/9001/ws',
        '/dns4/localhost/tcp/9001/http',
        '/dns4/localhost/tcp/port/ws',
        '/dns4/localhost/tcp/0/ws',
        '/dns4/localhost/tcp/70000/ws',
        '/dns4/localhost/tcp/9001/ws/ipfs/abc',
        '/dns4/localhost/tcp/9001/ws/p2p/not-an-identity',
    ),
)
def test_parse_invalid_relay_address(value: str) -> None:
    with pytest.raises(AddressError):
        RelayAddress.parse(value)


def test_address_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        RelayAddress.parse('/bad')


def test_route_string() -> None:
    relay = RelayAddress('troll.fudco.com', 9001, peer=RELAY_IDENTITY)
    target = derive_identity(5)
    route = Route(relay, target)
    assert str(route) == (
        f'/dns4/troll.fudco.com/tcp/9001/ws/p2p/{RELAY_IDENTITY}'
        f'/p2p-circuit/webrtc/p2p/{target}'
    )
    assert Route.parse(str(route)) == route


@pytest.mark.parametrize(
    'value',
    (
        '/dns4/localhost/tcp/9001/ws',
        '/dns4/localhost/tcp/9001/ws/p2p-circuit/webrtc/p2p/',
        '/dns4/localhost/tcp/9001/ws/p2p-circuit/webrtc/p2p/abc/def',
        '/dns4/localhost/tcp/9001/ws/p2p-circuit/webrtc/p2p/0OIl',
        '/bad/p2p-circuit/webrtc/p2p/'
        '12D3KooWPjceQrSwdWXPyLLeABRXmuqt69Rg3sBYbU1Nft9HyQ6X',
    ),
)
def test_parse_invalid_route(value: str) -> None:
    with pytest.raises(AddressError):
        Route.parse(value)
