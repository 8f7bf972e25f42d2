"""Line-oriented console rendering of session notices."""
from __future__ import annotations

import logging
from typing import Callable

import click

from p2pchat.exceptions import ChannelError
from p2pchat.session import ChannelStatus

logger = logging.getLogger(__name__)


class ConsoleListener:
    """Session listener which writes one line per notice.

    Lines match the chat's console format:

    * `<id>:: '<text>'` for received messages.
    * `<id>:: error <task>: <detail>` for channel errors.
    * `<id>:: remote disconnected` when the remote participant aborts.
    * `connecting to id:<id> peerId:<identity>` when dialing.
    * `inbound connection from id:<id> peerId:<identity>` when accepting.

    Args:
        output: Callable invoked with each line. Defaults to
            [`click.echo`][click.echo].
    """

    def __init__(self, output: Callable[[str], None] | None = None) -> None:
        self._output = click.echo if output is None else output

    def on_message(self, peer_id: int, message: str) -> None:
        self._output(f"{peer_id}:: '{message}'")

    def on_error(self, peer_id: int, task: str, error: ChannelError) -> None:
        if error.detail:
            self._output(f'{peer_id}:: error {task}: {error.detail}')
        else:
            self._output(f'{peer_id}:: error {task}')

    def on_status(
        self,
        peer_id: int,
        status: ChannelStatus,
        detail: str | None,
    ) -> None:
        if status is ChannelStatus.CONNECTING:
            self._output(f'connecting to id:{peer_id} peerId:{detail}')
        elif status is ChannelStatus.INBOUND:
            self._output(
                f'inbound connection from id:{peer_id} peerId:{detail}',
            )
        elif status is ChannelStatus.REMOTE_DISCONNECTED:
            self._output(f'{peer_id}:: remote disconnected')
        elif status is ChannelStatus.CLOSED:
            self._output(f'{peer_id}:: closed')
        else:
            logger.debug(f'Channel to {peer_id} {status.value}')
