from __future__ import annotations

import logging
import logging.handlers
import pathlib
from typing import Generator

import pytest

from p2pchat.utils.logs import configure_logging
from p2pchat.utils.logs import NOISY_LOGGERS


@pytest.fixture()
def _restore_logging() -> Generator[None, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    noisy_levels = {
        name: logging.getLogger(name).level for name in NOISY_LOGGERS
    }

    yield

    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    for name, noisy_level in noisy_levels.items():
        logging.getLogger(name).setLevel(noisy_level)


@pytest.mark.usefixtures('_restore_logging')
def test_configure_logging_levels() -> None:
    configure_logging(logging.DEBUG, quiet_level=logging.ERROR)

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], logging.StreamHandler)
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.ERROR


@pytest.mark.usefixtures('_restore_logging')
def test_configure_logging_string_levels() -> None:
    configure_logging('INFO', quiet_level='CRITICAL')

    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger('websockets').level == logging.CRITICAL


@pytest.mark.usefixtures('_restore_logging')
def test_configure_logging_file(tmp_path: pathlib.Path) -> None:
    log_dir = tmp_path / 'logs'
    configure_logging(logging.INFO, log_dir=str(log_dir), log_file='x.log')

    logger = logging.getLogger('p2pchat.test')
    logger.info('written to file')
    logger.debug('not written to file')

    handlers = [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler, logging.handlers.TimedRotatingFileHandler)
    ]
    assert len(handlers) == 1
    handlers[0].flush()

    contents = (log_dir / 'x.log').read_text()
    assert 'written to file' in contents
    assert '(p2pchat.test)' in contents
    assert 'not written to file' not in contents
