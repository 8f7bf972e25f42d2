"""Settings of the `p2pchat-relay` command."""
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

from p2pchat.identity import MAX_ID
from p2pchat.identity import MIN_ID
from p2pchat.identity import RELAY_ID
from p2pchat.utils.config import read_toml


class RelayLoggingConfig(BaseModel):
    """Where and how much the relay logs.

    Attributes:
        log_dir: Directory for the `relay.log` file. Only the console is
            logged to if unset.
        default_level: Level of the root logger.
        websockets_level: Level of the chatty third-party loggers such as
            `websockets`.
        current_client_interval: Seconds between reports of the registered
            participants. Unset disables the reports.
        current_client_limit: Reports list each participant only while
            fewer than this many are registered. Unset never lists them.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Network, identity, and logging settings of a relay server.

    Attributes:
        host: Interface to bind to. Unset binds all interfaces.
        port: Port to bind to.
        relay_id: Participant slot whose identity the relay announces to
            registering participants.
        certfile: PEM certificate which switches the relay to `wss://`.
        keyfile: PEM private key of `certfile` if not bundled in it.
        logging: Logging settings.
        max_message_bytes: Participants sending larger messages are
            disconnected. Unset means no limit.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 9001
    relay_id: int = Field(default=RELAY_ID, ge=MIN_ID, le=MAX_ID)
    certfile: str | None = None
    keyfile: str | None = None
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    max_message_bytes: int | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Load settings from a TOML file.

        Keys missing from the file keep their defaults.

        Example:
            ```toml title="relay.toml"
            port = 9001
            relay_id = 200

            [logging]
            log_dir = "/var/log/p2pchat"
            default_level = "INFO"
            current_client_interval = 60
            ```

            ```python
            config = RelayServingConfig.from_toml('relay.toml')
            ```
        """
        return read_toml(cls, filepath)
