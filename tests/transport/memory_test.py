from __future__ import annotations

import asyncio

import pytest

from p2pchat.address import RelayAddress
from p2pchat.address import Route
from p2pchat.exceptions import StreamError
from p2pchat.exceptions import TransportError
from p2pchat.exceptions import USER_INITIATED_ABORT
from p2pchat.identity import IdentityRegistry
from p2pchat.transport.memory import MemoryNetwork
from p2pchat.transport.memory import MemoryStream
from p2pchat.transport.protocols import ConnectionInfo
from p2pchat.transport.protocols import MessageStream
from p2pchat.transport.protocols import PeerInfo
from p2pchat.transport.protocols import Transport
from testing.utils import wait_until

PROTOCOL = '/test/1.0.0'


async def _echo(remote, stream: MessageStream) -> None:
    while True:
        await stream.write(await stream.read())


@pytest.mark.asyncio()
async def test_transport_implements_protocol(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    transport = memory_network.create_transport(registry.identity(1))
    assert isinstance(transport, Transport)


@pytest.mark.asyncio()
async def test_dial_and_echo(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))
    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _echo)

    stream = await alice.dial(
        Route(memory_network.relay, bob.identity),
        PROTOCOL,
    )
    assert isinstance(stream, MessageStream)
    assert stream.remote_identity == bob.identity
    assert alice.dial_count == 1

    await stream.write(b'hello')
    await stream.write(b'world')
    assert await stream.read() == b'hello'
    assert await stream.read() == b'world'

    assert len(alice.streams) == 1
    assert len(bob.streams) == 1
    assert bob.streams[0].remote_identity == alice.identity
    assert bob.streams[0].direction == 'inbound'

    await alice.close()
    await bob.close()


@pytest.mark.asyncio()
async def test_close_aborts_remote_reader(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    received: asyncio.Future[StreamError] = (
        asyncio.get_running_loop().create_future()
    )

    async def _handler(remote, stream: MessageStream) -> None:
        try:
            await stream.read()
        except StreamError as e:
            received.set_result(e)

    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))
    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _handler)

    stream = await alice.dial(
        Route(memory_network.relay, bob.identity),
        PROTOCOL,
    )
    await stream.close()

    error = await asyncio.wait_for(received, 1)
    assert error.abort_cause == USER_INITIATED_ABORT
    assert error.remote_aborted

    with pytest.raises(StreamError, match='closed locally'):
        await stream.read()
    with pytest.raises(StreamError):
        await stream.write(b'late')

    await alice.close()
    await bob.close()


@pytest.mark.asyncio()
async def test_read_error_repeats(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    stream = MemoryStream(
        'id',
        'outbound',
        registry.identity(1),
        registry.identity(2),
        'addr',
    )
    stream.fail('boom', cause=3)
    for _ in range(2):
        with pytest.raises(StreamError, match='boom') as exc_info:
            await stream.read()
        assert exc_info.value.abort_cause == 3
        assert not exc_info.value.remote_aborted


@pytest.mark.asyncio()
async def test_dial_wrong_relay(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    await alice.start()
    route = Route(RelayAddress('elsewhere', 1), registry.identity(2))
    with pytest.raises(TransportError, match='No reservation'):
        await alice.dial(route, PROTOCOL)
    await alice.close()


@pytest.mark.asyncio()
async def test_dial_unknown_peer(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    await alice.start()
    route = Route(memory_network.relay, registry.identity(2))
    with pytest.raises(TransportError, match='has no reservation'):
        await alice.dial(route, PROTOCOL)
    await alice.close()


@pytest.mark.asyncio()
async def test_dial_unsupported_protocol(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))
    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _echo)
    bob.unhandle(PROTOCOL)

    route = Route(memory_network.relay, bob.identity)
    with pytest.raises(TransportError, match='does not support'):
        await alice.dial(route, PROTOCOL)

    await alice.close()
    await bob.close()


@pytest.mark.asyncio()
async def test_dial_unreachable_hangs(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))
    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _echo)
    memory_network.set_unreachable(bob.identity)

    route = Route(memory_network.relay, bob.identity)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(alice.dial(route, PROTOCOL), 0.05)

    memory_network.set_unreachable(bob.identity, False)
    stream = await alice.dial(route, PROTOCOL)
    await stream.close()

    await alice.close()
    await bob.close()


@pytest.mark.asyncio()
async def test_lifecycle_events(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))

    events: list[tuple[str, object]] = []
    for event_type in (
        'start',
        'stop',
        'transport:listening',
        'transport:close',
        'connection:open',
        'connection:close',
        'peer:discovery',
    ):
        alice.on(
            event_type,
            lambda detail, t=event_type: events.append((t, detail)),
        )

    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _echo)
    stream = await alice.dial(
        Route(memory_network.relay, bob.identity),
        PROTOCOL,
    )
    await stream.close()
    await bob.close()
    await alice.close()

    types = [event_type for event_type, _ in events]
    assert types == [
        'start',
        'transport:listening',
        'peer:discovery',
        'connection:open',
        'connection:close',
        'transport:close',
        'stop',
    ]
    discovery = events[2][1]
    assert isinstance(discovery, PeerInfo)
    assert discovery.id == bob.identity
    opened = events[3][1]
    assert isinstance(opened, ConnectionInfo)
    assert opened.direction == 'outbound'
    assert opened.remote_peer == bob.identity
    assert opened.status == 'open'
    closed = events[4][1]
    assert isinstance(closed, ConnectionInfo)
    assert closed.status == 'closed'


@pytest.mark.asyncio()
async def test_close_cancels_handlers(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
) -> None:
    alice = memory_network.create_transport(registry.identity(1))
    bob = memory_network.create_transport(registry.identity(2))
    await alice.start()
    await bob.start()
    bob.handle(PROTOCOL, _echo)

    stream = await alice.dial(
        Route(memory_network.relay, bob.identity),
        PROTOCOL,
    )
    await bob.close()
    await wait_until(lambda: not bob._tasks)

    with pytest.raises(StreamError) as exc_info:
        await stream.read()
    assert exc_info.value.remote_aborted
    await alice.close()
