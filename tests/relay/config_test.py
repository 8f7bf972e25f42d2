from __future__ import annotations

import logging
import pathlib

import pydantic
import pytest

from p2pchat.identity import RELAY_ID
from p2pchat.relay.config import RelayLoggingConfig
from p2pchat.relay.config import RelayServingConfig


def test_logging_config_default() -> None:
    config = RelayLoggingConfig()
    assert config.default_level == logging.INFO
    assert config.websockets_level == logging.WARNING


def test_serving_config_default() -> None:
    config = RelayServingConfig()
    assert config.port == 9001
    assert config.relay_id == RELAY_ID
    assert config.max_message_bytes is None


@pytest.mark.parametrize('relay_id', (0, 256))
def test_serving_config_relay_id_range(relay_id: int) -> None:
    with pytest.raises(pydantic.ValidationError):
        RelayServingConfig(relay_id=relay_id)


def test_serving_config_forbids_unknown_keys() -> None:
    with pytest.raises(pydantic.ValidationError):
        RelayServingConfig(auth={'method': 'globus'})  # type: ignore[call-arg]


def test_read_from_config_file_empty(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('')

    config = RelayServingConfig.from_toml(filepath)
    assert config == RelayServingConfig()


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
host = "localhost"
port = 1234
relay_id = 42
certfile = "/path/to/cert.pem"
keyfile = "/path/to/privkey.pem"
max_message_bytes = 4096

[logging]
log_dir = "/path/to/log/dir"
default_level = "DEBUG"
websockets_level = "INFO"
current_client_interval = 3
current_client_limit = 5
"""

    filepath = tmp_path / 'relay.toml'
    filepath.write_text(data)

    config = RelayServingConfig.from_toml(filepath)

    assert config.host == 'localhost'
    assert config.port == 1234
    assert config.relay_id == 42
    assert config.certfile == '/path/to/cert.pem'
    assert config.keyfile == '/path/to/privkey.pem'
    assert config.max_message_bytes == 4096

    assert config.logging.log_dir == '/path/to/log/dir'
    assert config.logging.default_level == 'DEBUG'
    assert config.logging.websockets_level == 'INFO'
    assert config.logging.current_client_interval == 3
    assert config.logging.current_client_limit == 5
