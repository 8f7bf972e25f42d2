"""Command line interface for chat participants.

Usage:
    ```bash
    $ p2pchat identities 1 2
    seed: 1 peerId: 12D3KooWPjceQrSwdWXPyLLeABRXmuqt69Rg3sBYbU1Nft9HyQ6X
    seed: 2 peerId: 12D3KooWH3uVF6wv47WnArKHk5p6cvgCJEb74UTmxztmQDc298L3
    $ p2pchat chat --id 1 --relay /dns4/localhost/tcp/9001/ws
    I am id:1 peerId:12D3KooWPjceQrSwdWXPyLLeABRXmuqt69Rg3sBYbU1Nft9HyQ6X
    2 hello
    connecting to id:2 peerId:12D3KooWH3uVF6wv47WnArKHk5p6cvgCJEb74UTmxz...
    2:: 'hi there'
    /quit
    ```
"""
from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any
from typing import AsyncIterator
from typing import Awaitable
from typing import Callable
from typing import TextIO

import click

from p2pchat.address import AddressError
from p2pchat.address import Route
from p2pchat.config import ChatConfig
from p2pchat.console import ConsoleListener
from p2pchat.events import EventLogger
from p2pchat.events import periodic_status_logger
from p2pchat.exceptions import ChannelError
from p2pchat.identity import Identity
from p2pchat.identity import IdentityRegistry
from p2pchat.identity import MAX_ID
from p2pchat.identity import MIN_ID
from p2pchat.relay.client import RelayClient
from p2pchat.session import ChannelSessionManager
from p2pchat.transport.protocols import Transport
from p2pchat.transport.webrtc import WebRTCTransport
from p2pchat.utils.config import to_toml
from p2pchat.utils.logs import configure_logging
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

USAGE = '<id> <message> | /connect <route> | /close <id> | /quit'


def create_transport(config: ChatConfig, identity: Identity) -> Transport:
    """Create the WebRTC transport of a participant.

    Args:
        config: Chat configuration.
        identity: Identity of the local participant.

    Returns:
        Transport which registers with the relay in `config` when started.
    """
    relay = config.relay_address
    relay_client = RelayClient(
        relay.websocket_url,
        identity,
        name=f'id:{config.local_id or 0}',
        expected_relay=relay.peer,
        verify_certificate=config.verify_certificate,
    )
    return WebRTCTransport(relay_client, ice_servers=config.ice_servers)


def build_config(
    config_path: str | None = None,
    *,
    local_id: int | None = None,
    relay: str | None = None,
    events: bool | None = None,
    status_interval: float | None = None,
    log_level: str | None = None,
) -> ChatConfig:
    """Load the chat configuration and apply CLI overrides.

    Args:
        config_path: Optional TOML configuration file. Defaults are used
            if not provided.
        local_id: Override of `ChatConfig.local_id`.
        relay: Override of `ChatConfig.relay`.
        events: Override of `ChatConfig.show_events`.
        status_interval: Override of `ChatConfig.status_interval`.
        log_level: Override of `ChatConfig.logging.default_level`.

    Raises:
        click.BadParameter: If the overridden configuration is invalid.
    """
    config = (
        ChatConfig()
        if config_path is None
        else ChatConfig.from_toml(config_path)
    )

    if local_id is not None:
        config.local_id = local_id
    if relay is not None:
        config.relay = relay
    if events is not None:
        config.show_events = events
    if status_interval is not None:
        config.status_interval = status_interval
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    # Assignment is not validated so revalidate, e.g., the relay address.
    try:
        return ChatConfig.model_validate(config.model_dump())
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


async def read_lines(stream: TextIO) -> AsyncIterator[str]:
    """Read lines from a blocking text stream without blocking the loop."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, stream.readline)
        if not line:
            return
        yield line


class Outbox:
    """Runs chat commands in the background, in order per participant.

    A dial to an unreachable participant can take up to the dial timeout
    so commands are not awaited by the input loop. Commands for the same
    participant still run in the order they were submitted.

    Args:
        manager: Session manager of the local participant.
    """

    def __init__(self, manager: ChannelSessionManager) -> None:
        self._manager = manager
        self._tails: dict[int, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def manager(self) -> ChannelSessionManager:
        """Session manager commands are run against."""
        return self._manager

    def submit(
        self,
        peer_id: int,
        command: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> asyncio.Task[None]:
        """Run `command(*args)` after earlier commands for `peer_id`."""
        previous = self._tails.get(peer_id)
        task = spawn_guarded_background_task(
            self._run_after,
            previous,
            command,
            *args,
            name=f'chat-command-{peer_id}',
        )
        self._tasks.add(task)
        self._tails[peer_id] = task

        def _done(done: asyncio.Task[None]) -> None:
            self._tasks.discard(done)
            if self._tails.get(peer_id) is done:
                del self._tails[peer_id]

        task.add_done_callback(_done)
        return task

    async def _run_after(
        self,
        previous: asyncio.Task[None] | None,
        command: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        await command(*args)

    async def drain(self) -> None:
        """Wait for every submitted command to finish."""
        while len(self._tails) > 0:
            await asyncio.wait(list(self._tails.values()))

    async def close(self) -> None:
        """Cancel commands which have not finished."""
        for task in list(self._tasks):
            await cancel_and_wait(task)


async def connect_route(
    manager: ChannelSessionManager,
    route: Route,
    output: Callable[[str], None],
) -> None:
    """Open a channel along a route and print failures."""
    try:
        await manager.connect(route)
    except ChannelError as e:
        output(f'error connecting to {route}: {e}')


async def handle_command(
    manager: ChannelSessionManager,
    line: str,
    output: Callable[[str], None],
    outbox: Outbox | None = None,
) -> bool:
    """Execute one line of chat input.

    Args:
        manager: Session manager of the local participant.
        line: Input line. `<id> <message>` sends a message,
            `/connect <route>` opens a channel along a route,
            `/close <id>` closes the channel to a participant, and `/quit`
            exits.
        output: Callable invoked with console lines.
        outbox: Runs sends and connects in the background. If `None`, they
            are awaited.

    Returns:
        `False` if the chat should exit.
    """
    line = line.strip()
    if not line:
        return True
    elif line == '/quit':
        return False
    elif line.startswith('/connect'):
        _, _, target = line.partition(' ')
        try:
            route = Route.parse(target.strip())
        except AddressError as e:
            output(f'usage: /connect <route> ({e})')
            return True
        output(f'connect to {route}')
        if outbox is None:
            await connect_route(manager, route, output)
        else:
            outbox.submit(
                manager.registry.lookup(route.target),
                connect_route,
                manager,
                route,
                output,
            )
        return True
    elif line.startswith('/close'):
        _, _, target = line.partition(' ')
        try:
            peer_id = int(target)
        except ValueError:
            output('usage: /close <id>')
            return True
        if not await manager.close_channel(peer_id):
            output(f'{peer_id}:: no open channel')
        return True

    target, _, message = line.partition(' ')
    try:
        peer_id = int(target)
    except ValueError:
        output(f'unknown command: {line!r} (usage: {USAGE})')
        return True
    if outbox is None:
        await manager.send(peer_id, message)
    else:
        outbox.submit(peer_id, manager.send, peer_id, message)
    return True


async def run_chat(
    config: ChatConfig,
    *,
    transport: Transport | None = None,
    registry: IdentityRegistry | None = None,
    lines: AsyncIterator[str] | None = None,
    output: Callable[[str], None] = click.echo,
) -> None:
    """Run a chat participant until `/quit` or the end of input.

    Args:
        config: Chat configuration.
        transport: Transport to use. Defaults to a WebRTC transport via the
            relay in `config`. The transport is closed on exit.
        registry: Identity registry. Derived if not provided.
        lines: Input lines. Defaults to lines read from stdin.
        output: Callable invoked with console lines.
    """
    registry = IdentityRegistry.create() if registry is None else registry
    local_id = config.local_id or 0
    if transport is None:
        transport = create_transport(config, registry.local_identity(local_id))
    lines = read_lines(sys.stdin) if lines is None else lines

    output(f'I am id:{local_id} peerId:{transport.identity}')

    events = EventLogger(transport, output, enabled=config.show_events)
    manager = ChannelSessionManager(
        transport,
        registry,
        config.relay_address,
        ConsoleListener(output),
        protocol=config.protocol,
        dial_timeout=config.dial_timeout,
    )
    outbox = Outbox(manager)
    status_task: asyncio.Task[None] | None = None

    try:
        await transport.start()
        await manager.start()
        if config.status_interval is not None:
            status_task = periodic_status_logger(
                manager,
                config.status_interval,
            )
        async for line in lines:
            if not await handle_command(manager, line, output, outbox):
                break
        else:
            # End of input so let queued sends finish.
            await outbox.drain()
    finally:
        await outbox.close()
        await cancel_and_wait(status_task)
        await manager.close()
        await transport.close()
        events.close()


@click.group()
def cli() -> None:
    """Peer-to-peer chat among numbered participants."""
    pass


@cli.command()
@click.argument('ids', nargs=-1, type=click.IntRange(MIN_ID, MAX_ID))
def identities(ids: tuple[int, ...]) -> None:
    """Print the identities of participant ids (default: all)."""
    registry = IdentityRegistry.create()
    for peer_id in ids or range(MIN_ID, MAX_ID + 1):
        click.echo(f'seed: {peer_id} peerId: {registry.identity(peer_id)}')


@cli.command(name='show-config')
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--id', 'local_id', type=click.IntRange(0, MAX_ID))
@click.option('--relay', metavar='ADDR', help='Relay server address.')
def show_config(
    config_path: str | None,
    local_id: int | None,
    relay: str | None,
) -> None:
    """Print the effective chat configuration as TOML."""
    config = build_config(config_path, local_id=local_id, relay=relay)
    click.echo(to_toml(config), nl=False)


@cli.command()
@click.option(
    '--id',
    'local_id',
    type=click.IntRange(0, MAX_ID),
    metavar='ID',
    help='Local participant id. 0 uses a random identity.',
)
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--relay', metavar='ADDR', help='Relay server address.')
@click.option(
    '--events/--no-events',
    default=None,
    help='Show transport lifecycle events.',
)
@click.option(
    '--status-interval',
    type=click.FloatRange(min=0, min_open=True),
    metavar='SECONDS',
    help='Seconds between logging open channels.',
)
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def chat(
    local_id: int | None,
    config_path: str | None,
    relay: str | None,
    events: bool | None,
    status_interval: float | None,
    log_level: str | None,
) -> None:
    """Chat with other participants.

    Each input line of the form `<id> <message>` sends the message to
    participant `id`, opening a channel if needed. Sends run in the
    background so input is never blocked by a slow dial.
    `/connect <route>` opens a channel along a route such as
    `/dns4/localhost/tcp/9001/ws/p2p/<relay>/p2p-circuit/webrtc/p2p/<peer>`.
    `/close <id>` closes the channel to a participant and `/quit` exits.
    The remaining CLI options override the configuration file.
    """
    config = build_config(
        config_path,
        local_id=local_id,
        relay=relay,
        events=events,
        status_interval=status_interval,
        log_level=log_level,
    )
    configure_logging(
        config.logging.default_level,
        log_dir=config.logging.log_dir,
        quiet_level=config.logging.quiet_level,
    )

    asyncio.run(run_chat(config))
