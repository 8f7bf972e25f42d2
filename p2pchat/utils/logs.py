"""Logging configuration shared by the command line tools."""
from __future__ import annotations

import datetime
import logging
import logging.handlers
import os
import sys

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers which log with much higher frequency than is useful.
NOISY_LOGGERS = ('aioice', 'aiortc', 'websockets')


def configure_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: str | None = None,
    log_file: str = 'p2pchat.log',
    quiet_level: int | str = logging.WARNING,
) -> None:
    """Configure the root logger for a command line tool.

    Logs are written to stderr so they do not interleave with chat output
    on stdout. If `log_dir` is given, logs are also written to a file which
    is rotated every Sunday at midnight.

    Args:
        level: Minimum logging level of the root logger.
        log_dir: Optional directory to write log files to.
        log_file: Name of the log file within `log_dir`.
        quiet_level: Level for the third-party loggers in `NOISY_LOGGERS`.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, log_file),
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        level=level,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
