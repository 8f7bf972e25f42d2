from __future__ import annotations

import logging
import pathlib

import pydantic
import pytest

from p2pchat.address import RelayAddress
from p2pchat.config import ChatConfig
from p2pchat.config import ChatLoggingConfig
from p2pchat.config import DEFAULT_RELAY
from p2pchat.identity import derive_identity
from p2pchat.identity import RELAY_ID
from p2pchat.session import DEFAULT_DIAL_TIMEOUT
from p2pchat.session import DEFAULT_PROTOCOL


def test_logging_config_default() -> None:
    config = ChatLoggingConfig()
    assert config.log_dir is None
    assert config.default_level == logging.WARNING
    assert config.quiet_level == logging.WARNING


def test_chat_config_default() -> None:
    config = ChatConfig()
    assert config.local_id is None
    assert config.relay == DEFAULT_RELAY
    assert config.protocol == DEFAULT_PROTOCOL
    assert config.dial_timeout == DEFAULT_DIAL_TIMEOUT
    assert not config.show_events
    assert config.status_interval is None
    assert config.ice_servers is None
    assert config.verify_certificate
    assert config.relay_address == RelayAddress('localhost', 9001)


def test_relay_address_with_identity() -> None:
    relay = derive_identity(RELAY_ID)
    config = ChatConfig(
        relay=f'/dns4/relay.example.com/tcp/443/wss/p2p/{relay}',
    )
    address = config.relay_address
    assert address.host == 'relay.example.com'
    assert address.port == 443
    assert address.secure
    assert address.peer == relay
    assert address.websocket_url == 'wss://relay.example.com:443'


@pytest.mark.parametrize(
    'relay',
    (
        'localhost:9001',
        '/dns4/localhost/tcp/9001/http',
        '/dns4/localhost/tcp/notaport/ws',
        '/dns4/localhost/tcp/9001/ws/p2p/not-an-identity',
    ),
)
def test_invalid_relay(relay: str) -> None:
    with pytest.raises(pydantic.ValidationError):
        ChatConfig(relay=relay)


@pytest.mark.parametrize('local_id', (-1, 256))
def test_local_id_out_of_range(local_id: int) -> None:
    with pytest.raises(pydantic.ValidationError):
        ChatConfig(local_id=local_id)


def test_local_id_zero_allowed() -> None:
    assert ChatConfig(local_id=0).local_id == 0


@pytest.mark.parametrize(
    'options',
    ({'dial_timeout': 0}, {'status_interval': -1}, {'unknown': True}),
)
def test_invalid_options(options: dict[str, object]) -> None:
    with pytest.raises(pydantic.ValidationError):
        ChatConfig(**options)  # type: ignore[arg-type]


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
local_id = 7
relay = "/ip4/10.0.0.1/tcp/9001/ws"
dial_timeout = 2.5
show_events = true
status_interval = 30
ice_servers = ["stun:stun.example.com:3478"]

[logging]
log_dir = "/path/to/log/dir"
default_level = "INFO"
"""

    filepath = tmp_path / 'chat.toml'
    filepath.write_text(data)

    config = ChatConfig.from_toml(filepath)

    assert config.local_id == 7
    assert config.relay_address.host == '10.0.0.1'
    assert config.relay_address.host_protocol == 'ip4'
    assert config.dial_timeout == 2.5
    assert config.show_events
    assert config.status_interval == 30
    assert config.ice_servers == ['stun:stun.example.com:3478']
    assert config.logging.log_dir == '/path/to/log/dir'
    assert config.logging.default_level == 'INFO'
    assert config.logging.quiet_level == logging.WARNING


def test_read_invalid_config_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'chat.toml'
    filepath.write_text('relay = "not a relay"\n')

    with pytest.raises(pydantic.ValidationError):
        ChatConfig.from_toml(filepath)
