"""Diagnostic rendering of transport lifecycle events."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any
from typing import Callable

from p2pchat.session import ChannelSessionManager
from p2pchat.transport.protocols import ConnectionInfo
from p2pchat.transport.protocols import EVENT_TYPES
from p2pchat.transport.protocols import PeerInfo
from p2pchat.transport.protocols import Transport
from p2pchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

_BARE_EVENTS = frozenset(
    ('start', 'stop', 'transport:close', 'transport:listening'),
)


def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            field.name: getattr(obj, field.name)
            for field in dataclasses.fields(obj)
        }
    return str(obj)


def format_event(event_type: str, detail: Any) -> str:
    """Render a transport event as a single line.

    Example:
        ```python
        >>> format_event('start', None)
        'start'
        >>> format_event('peer:discovery', PeerInfo(identity, ('/dns4/...',)))
        'peer:discovery: 12D3KooW... [/dns4/...]'
        ```

    Args:
        event_type: Type of the event.
        detail: Detail payload of the event.

    Returns:
        Description of the event. Unknown event types render their detail
        as JSON.
    """
    if event_type in ('connection:close', 'connection:open') and isinstance(
        detail,
        ConnectionInfo,
    ):
        return (
            f'{event_type}: id={detail.id} dir={detail.direction} '
            f'remote={detail.remote_peer} addr={detail.remote_addr} '
            f'status={detail.status}'
        )
    elif event_type == 'peer:discovery' and isinstance(detail, PeerInfo):
        return f'{event_type}: {detail.id} [{",".join(detail.addresses)}]'
    elif event_type in _BARE_EVENTS:
        return event_type
    detail_json = json.dumps(detail, default=_json_default)
    return f'{event_type}: unknown event {detail_json}'


class EventLogger:
    """Writes transport lifecycle events to an output.

    Args:
        transport: Transport to subscribe to.
        output: Callable invoked with each `#### <description>` line.
        enabled: Write events. Disabled loggers do not subscribe.
        event_types: Event types to subscribe to.
    """

    def __init__(
        self,
        transport: Transport,
        output: Callable[[str], None],
        *,
        enabled: bool = True,
        event_types: tuple[str, ...] = EVENT_TYPES,
    ) -> None:
        self._transport = transport
        self._output = output
        self._listeners: dict[str, Callable[[Any], None]] = {}

        if enabled:
            for event_type in event_types:
                listener = self._make_listener(event_type)
                self._listeners[event_type] = listener
                transport.on(event_type, listener)

    def _make_listener(self, event_type: str) -> Callable[[Any], None]:
        def _listener(detail: Any) -> None:
            self._output(f'#### {format_event(event_type, detail)}')

        return _listener

    def close(self) -> None:
        """Unsubscribe from the transport."""
        for event_type, listener in self._listeners.items():
            self._transport.remove_listener(event_type, listener)
        self._listeners.clear()


def periodic_status_logger(
    manager: ChannelSessionManager,
    interval: float = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs the open channels of a manager.

    Args:
        manager: Session manager to log the channels of.
        interval: Seconds between logging the open channels.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            peer_ids = sorted(manager.channels)
            ids = ', '.join(str(peer_id) for peer_id in peer_ids)
            logger.log(level, f'Open channels: {len(peer_ids)} [{ids}]')

    return spawn_guarded_background_task(
        _log,
        name=f'session-status-logger-{manager.local_id}',
    )
