"""Chat participant configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from p2pchat.address import RelayAddress
from p2pchat.identity import MAX_ID
from p2pchat.session import DEFAULT_DIAL_TIMEOUT
from p2pchat.session import DEFAULT_PROTOCOL
from p2pchat.utils.config import read_toml

DEFAULT_RELAY = '/dns4/localhost/tcp/9001/ws'


class ChatLoggingConfig(BaseModel):
    """Chat logging configuration.

    Attributes:
        log_dir: Optional directory to also write log files to.
        default_level: Logging level for the root logger. Logs go to stderr
            so the default keeps them out of the way of the chat.
        quiet_level: Logging level for the `aioice`, `aiortc`, and
            `websockets` loggers.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.WARNING
    quiet_level: int | str = logging.WARNING


class ChatConfig(BaseModel):
    """Chat participant configuration.

    Attributes:
        local_id: Numeric id of the local participant in `[1, 255]`. Id
            `0` (or unset) uses a random identity which can dial out but
            cannot be addressed by other participants.
        relay: Address of the relay server, e.g.,
            `/dns4/relay.example.com/tcp/443/wss`. If the address ends with
            `/p2p/<identity>`, the relay must announce that identity.
        protocol: Protocol name channels are opened on.
        dial_timeout: Seconds to wait on an outbound channel to open.
        show_events: Write transport lifecycle events to the console.
        status_interval: Optional seconds between logging open channels.
        ice_servers: Optional STUN/TURN server URLs. If unset, the default
            STUN server of aiortc is used.
        verify_certificate: Verify the relay server's SSL certificate when
            connecting over `wss`.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    local_id: int | None = Field(
        default=None,
        ge=0,
        le=MAX_ID,
    )
    relay: str = DEFAULT_RELAY
    protocol: str = DEFAULT_PROTOCOL
    dial_timeout: float = Field(default=DEFAULT_DIAL_TIMEOUT, gt=0)
    show_events: bool = False
    status_interval: float | None = Field(default=None, gt=0)
    ice_servers: list[str] | None = None
    verify_certificate: bool = True
    logging: ChatLoggingConfig = Field(default_factory=ChatLoggingConfig)

    @field_validator('relay')
    @classmethod
    def validate_relay(cls, value: str) -> str:
        RelayAddress.parse(value)
        return value

    @property
    def relay_address(self) -> RelayAddress:
        """Parsed address of the relay server."""
        return RelayAddress.parse(self.relay)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="chat.toml"
            local_id = 1
            relay = "/dns4/relay.example.com/tcp/443/wss"
            dial_timeout = 5.0
            show_events = true

            [logging]
            default_level = "INFO"
            ```

            ```python
            from p2pchat.config import ChatConfig

            config = ChatConfig.from_toml('chat.toml')
            ```

        Note:
            Omitted values will be set to their defaults (if they are an
            optional value with a default).
        """
        return read_toml(cls, filepath)
