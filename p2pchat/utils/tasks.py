"""Background tasks which cannot fail silently."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


async def _log_failure(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.exception(f'Unhandled error in {coro.__qualname__}')
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Done callback which raises `SystemExit` if the task failed."""
    if task.cancelled() or task.exception() is None:
        return
    logger.error(
        f'Background task {task.get_name()!r} failed: {task.exception()!r}',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine function as a background task.

    Background tasks that are never awaited fail silently, leaving the
    process running without the work of the task. A guarded task logs the
    traceback of any exception and exits the process via
    [`exit_on_error()`][p2pchat.utils.tasks.exit_on_error]. Work which is
    expected to fail must catch its own exceptions.

    Args:
        coro: Coroutine function to run.
        args: Positional arguments for `coro`.
        name: Optional name of the task.
        kwargs: Keyword arguments for `coro`.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(_log_failure(coro, *args, **kwargs), name=name)
    task.add_done_callback(exit_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    No-op if `task` is `None`. The cancellation is suppressed but other
    exceptions of the task propagate.
    """
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
