"""Mocking utilities."""
from __future__ import annotations

from typing import Any
from typing import Callable
from unittest.mock import AsyncMock


def async_mock_once(
    func: Callable[..., Any],
    return_value: Any,
) -> AsyncMock:
    """Mock an async function.

    The first await returns `return_value` and later awaits call `func`.
    Useful for injecting one message into a receive loop.
    """
    amock = AsyncMock()

    async def return_once(*args: Any, **kwargs: Any) -> Any:
        if amock.await_count > 1:
            return await func(*args, **kwargs)
        return return_value

    amock.side_effect = return_once

    return amock
