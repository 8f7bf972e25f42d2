from __future__ import annotations

import asyncio
import logging

import pytest

from p2pchat.address import Route
from p2pchat.events import EventLogger
from p2pchat.events import format_event
from p2pchat.events import periodic_status_logger
from p2pchat.identity import derive_identity
from p2pchat.identity import IdentityRegistry
from p2pchat.session import ChannelSessionManager
from p2pchat.transport.memory import MemoryNetwork
from p2pchat.transport.protocols import ConnectionInfo
from p2pchat.transport.protocols import PeerInfo
from p2pchat.utils.tasks import cancel_and_wait
from testing.memory import RecordingListener
from testing.utils import wait_until

PEER = derive_identity(2)


@pytest.mark.parametrize(
    'event_type',
    ('start', 'stop', 'transport:close', 'transport:listening'),
)
def test_format_bare_event(event_type: str) -> None:
    assert format_event(event_type, None) == event_type


@pytest.mark.parametrize('event_type', ('connection:open', 'connection:close'))
def test_format_connection_event(event_type: str) -> None:
    info = ConnectionInfo(
        id='abc',
        direction='outbound',
        remote_peer=PEER,
        remote_addr='/dns4/relay.test/tcp/9001/ws',
        status='open',
    )
    assert format_event(event_type, info) == (
        f'{event_type}: id=abc dir=outbound remote={PEER} '
        'addr=/dns4/relay.test/tcp/9001/ws status=open'
    )


def test_format_peer_discovery() -> None:
    info = PeerInfo(PEER, ('/a', '/b'))
    assert format_event('peer:discovery', info) == (
        f'peer:discovery: {PEER} [/a,/b]'
    )


def test_format_unknown_event() -> None:
    assert format_event('self:peer:update', {'protocols': ['/x']}) == (
        'self:peer:update: unknown event {"protocols": ["/x"]}'
    )


def test_format_unknown_event_with_dataclass_detail() -> None:
    # A payload of the wrong type falls back to the generic rendering.
    result = format_event('connection:open', PeerInfo(PEER, ()))
    assert result.startswith('connection:open: unknown event {')
    assert str(PEER) in result


@pytest.mark.asyncio()
async def test_event_logger_writes_lifecycle(
    memory_network: MemoryNetwork,
) -> None:
    lines: list[str] = []
    transport = memory_network.create_transport(derive_identity(1))
    events = EventLogger(transport, lines.append)

    await transport.start()
    await transport.close()
    events.close()

    assert lines == [
        '#### start',
        '#### transport:listening',
        '#### transport:close',
        '#### stop',
    ]


@pytest.mark.asyncio()
async def test_event_logger_peer_discovery(
    memory_network: MemoryNetwork,
) -> None:
    lines: list[str] = []
    first = memory_network.create_transport(derive_identity(1))
    second = memory_network.create_transport(PEER)
    events = EventLogger(first, lines.append, event_types=('peer:discovery',))

    await first.start()
    await second.start()

    route = Route(memory_network.relay, PEER)
    assert lines == [f'#### peer:discovery: {PEER} [{route}]']

    events.close()
    await second.close()
    await first.close()


@pytest.mark.asyncio()
async def test_event_logger_disabled(memory_network: MemoryNetwork) -> None:
    lines: list[str] = []
    transport = memory_network.create_transport(derive_identity(1))
    events = EventLogger(transport, lines.append, enabled=False)

    await transport.start()
    await transport.close()
    events.close()

    assert lines == []


@pytest.mark.asyncio()
async def test_event_logger_close_unsubscribes(
    memory_network: MemoryNetwork,
) -> None:
    lines: list[str] = []
    transport = memory_network.create_transport(derive_identity(1))
    events = EventLogger(transport, lines.append)

    await transport.start()
    events.close()
    await transport.close()

    assert lines == ['#### start', '#### transport:listening']


@pytest.mark.asyncio()
async def test_periodic_status_logger(
    memory_network: MemoryNetwork,
    registry: IdentityRegistry,
    caplog,
) -> None:
    caplog.set_level(logging.INFO)

    transports = [
        memory_network.create_transport(registry.identity(i)) for i in (1, 2)
    ]
    managers = [
        ChannelSessionManager(
            transport,
            registry,
            memory_network.relay,
            RecordingListener(),
        )
        for transport in transports
    ]
    for transport, manager in zip(transports, managers):
        await transport.start()
        await manager.start()

    await managers[0].send(2, 'hello')
    await wait_until(lambda: 1 in managers[1].channels)

    task = periodic_status_logger(managers[0], 0.001)
    assert task.get_name() == 'session-status-logger-1'
    await asyncio.sleep(0.01)
    await cancel_and_wait(task)

    assert any(
        'Open channels: 1 [2]' in record.message
        and record.levelname == 'INFO'
        for record in caplog.records
    )

    for transport, manager in zip(transports, managers):
        await manager.close()
        await transport.close()
