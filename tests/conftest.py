from __future__ import annotations

import asyncio

import pytest
import uvloop

# Fixtures shared by the test modules are defined in testing/
from testing.memory import memory_network
from testing.memory import registry
from testing.relay_server import relay_server
from testing.tls import tls_files


def pytest_addoption(parser):
    """Add custom command line options for tests."""
    parser.addoption(
        '--use-uvloop',
        action='store_true',
        default=False,
        help='Run asyncio tests on the uvloop event loop',
    )


@pytest.fixture(scope='session')
def event_loop_policy(request) -> asyncio.AbstractEventLoopPolicy:
    """Event loop policy of the asyncio tests, selected by `--use-uvloop`."""
    if request.config.getoption('--use-uvloop'):  # pragma: no cover
        return uvloop.EventLoopPolicy()
    return asyncio.get_event_loop_policy()
