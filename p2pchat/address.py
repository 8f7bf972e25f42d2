"""Relay addresses and routes to participants.

Addresses use a multiaddr-like textual form. A relay address names the
websocket endpoint of a relay server and, optionally, the relay's identity:

```
/dns4/relay.example.com/tcp/9001/ws/p2p/<relay identity>
```

A route reaches a participant through a relay by appending the circuit and
target identity:

```
<relay address>/p2p-circuit/webrtc/p2p/<target identity>
```
"""
from __future__ import annotations

import dataclasses

from p2pchat.identity import Identity

_HOST_PROTOCOLS = frozenset({'dns', 'dns4', 'dns6', 'ip4', 'ip6'})
_CIRCUIT = '/p2p-circuit/webrtc/p2p/'


class AddressError(ValueError):
    """Exception raised when an address cannot be parsed."""

    pass


@dataclasses.dataclass(frozen=True)
class RelayAddress:
    """Address of a relay server.

    Attributes:
        host: Hostname or IP address of the relay server.
        port: TCP port the relay server listens on.
        secure: Use TLS (`wss://`) to connect to the relay server.
        host_protocol: Address component naming the kind of `host`.
        peer: Optional identity the relay server is expected to announce.
    """

    host: str
    port: int
    secure: bool = False
    host_protocol: str = 'dns4'
    peer: Identity | None = None

    @classmethod
    def parse(cls, address: str) -> RelayAddress:
        """Parse a relay address string.

        Raises:
            AddressError: If the string is not a valid relay address.
        """
        parts = address.split('/')
        if len(parts) not in (6, 8) or parts[0] != '':
            raise AddressError(f'Malformed relay address: {address!r}.')

        _, host_protocol, host, tcp, port_str, ws = parts[:6]
        if host_protocol not in _HOST_PROTOCOLS or not host:
            raise AddressError(
                f'Unsupported host in relay address: {address!r}.',
            )
        if tcp != 'tcp' or ws not in ('ws', 'wss'):
            raise AddressError(
                'Relay address must use tcp and ws or wss transports: '
                f'{address!r}.',
            )
        try:
            port = int(port_str)
        except ValueError as e:
            raise AddressError(f'Invalid port in {address!r}.') from e
        if not 0 < port < 65536:
            raise AddressError(f'Port out of range in {address!r}.')

        peer: Identity | None = None
        if len(parts) == 8:
            if parts[6] != 'p2p':
                raise AddressError(f'Malformed relay address: {address!r}.')
            try:
                peer = Identity.from_string(parts[7])
            except ValueError as e:
                raise AddressError(
                    f'Invalid relay identity in {address!r}.',
                ) from e

        return cls(
            host=host,
            port=port,
            secure=ws == 'wss',
            host_protocol=host_protocol,
            peer=peer,
        )

    @property
    def websocket_url(self) -> str:
        """URL of the relay server's websocket endpoint."""
        scheme = 'wss' if self.secure else 'ws'
        host = f'[{self.host}]' if self.host_protocol == 'ip6' else self.host
        return f'{scheme}://{host}:{self.port}'

    def with_peer(self, peer: Identity) -> RelayAddress:
        """Copy of this address naming the relay's identity."""
        return dataclasses.replace(self, peer=peer)

    def __str__(self) -> str:
        ws = 'wss' if self.secure else 'ws'
        address = f'/{self.host_protocol}/{self.host}/tcp/{self.port}/{ws}'
        if self.peer is not None:
            address = f'{address}/p2p/{self.peer}'
        return address


@dataclasses.dataclass(frozen=True)
class Route:
    """Route to a participant through a relay.

    Attributes:
        relay: Address of the relay the target has a reservation with.
        target: Identity of the participant to reach.
    """

    relay: RelayAddress
    target: Identity

    @classmethod
    def parse(cls, route: str) -> Route:
        """Parse a route string.

        Raises:
            AddressError: If the string is not a valid route.
        """
        relay_str, sep, target_str = route.partition(_CIRCUIT)
        if not sep or not target_str or '/' in target_str:
            raise AddressError(f'Malformed route: {route!r}.')
        try:
            target = Identity.from_string(target_str)
        except ValueError as e:
            raise AddressError(f'Invalid target identity in {route!r}.') from e
        return cls(RelayAddress.parse(relay_str), target)

    def __str__(self) -> str:
        return f'{self.relay}{_CIRCUIT}{self.target}'
