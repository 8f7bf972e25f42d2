"""`p2pchat-relay` command for running a relay server."""
from __future__ import annotations

import asyncio
import logging
import pprint
import signal
import ssl

import click
from websockets.asyncio.server import serve as websocket_serve

from p2pchat.identity import derive_identity
from p2pchat.identity import MAX_ID
from p2pchat.identity import MIN_ID
from p2pchat.relay.config import RelayServingConfig
from p2pchat.relay.server import RelayServer
from p2pchat.utils.logs import configure_logging
from p2pchat.utils.tasks import cancel_and_wait
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Start a task which periodically logs the registered participants.

    Args:
        server: Relay server to report on.
        interval: Seconds between log messages.
        limit: Each participant is listed only while fewer than `limit`
            are registered. Otherwise only the count is logged. `None`
            never lists participants.
        level: Logging level of the messages.

    Returns:
        Asyncio task which runs until cancelled.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            clients = sorted(
                server.client_manager.get_clients(),
                key=lambda client: client.name,
            )
            lines = [f'Registered clients: {len(clients)}']
            if limit is not None and 0 < len(clients) < limit:
                lines.extend(repr(client) for client in clients)
            logger.log(level, '\n'.join(lines))

    return spawn_guarded_background_task(
        _log,
        name='relay-server-client-logger',
    )


def _server_ssl_context(config: RelayServingConfig) -> ssl.SSLContext | None:
    if config.certfile is None:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    return context


async def serve(config: RelayServingConfig) -> None:
    """Serve a relay server until the process receives SIGINT or SIGTERM.

    The relay announces the identity of participant slot `config.relay_id`.

    Note:
        Logging is left to the caller, e.g., configured from
        `config.logging` as the `p2pchat-relay` command does.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        derive_identity(config.relay_id),
        max_message_bytes=config.max_message_bytes,
    )

    loop = asyncio.get_running_loop()
    stop: asyncio.Future[None] = loop.create_future()

    def _stop() -> None:
        if not stop.done():
            stop.set_result(None)

    for sig in _STOP_SIGNALS:
        loop.add_signal_handler(sig, _stop)

    client_logger: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:
        default = config.logging.default_level
        client_logger = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=(
                default
                if isinstance(default, int)
                else logging.getLevelName(default)
            ),
        )

    logger.info(
        f'Relay serving configuration:\n{pprint.pformat(config, indent=2)}',
    )

    try:
        async with websocket_serve(
            server.handler,
            config.host,
            config.port,
            logger=None,
            ssl=_server_ssl_context(config),
        ):
            logger.info(
                f'Relay server {server.identity} listening on port '
                f'{config.port} (ctrl-C to stop)',
            )
            await stop
    finally:
        await cancel_and_wait(client_logger)
        for sig in _STOP_SIGNALS:
            loop.remove_signal_handler(sig)

    logger.info('Relay server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option(
    '--relay-id',
    type=click.IntRange(MIN_ID, MAX_ID),
    metavar='ID',
    help='Participant slot whose identity the relay announces.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    relay_id: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay server for negotiating chat channels.

    Options given on the command line take precedence over the
    configuration file, which defaults to
    [`RelayServingConfig()`][p2pchat.relay.config.RelayServingConfig].
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if relay_id is not None:
        config.relay_id = relay_id
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    configure_logging(
        config.logging.default_level,
        log_dir=config.logging.log_dir,
        log_file='relay.log',
        quiet_level=config.logging.websockets_level,
    )

    asyncio.run(serve(config))
