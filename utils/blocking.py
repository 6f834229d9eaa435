"""Blocking library calls run in worker threads under a wall-clock timeout.

A thread cannot be killed, so the function gets a ``threading.Event`` as its
first argument and must check it at every chunk, hook call or other natural
break. When the timeout fires or the caller is cancelled the event is set;
on timeout the caller then waits for the thread to notice before raising, so
no download keeps running behind the next job.
"""
import asyncio
import threading
import logging
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long a timed-out thread gets to reach its next cancellation check
EXIT_GRACE_SECONDS = 60


class Cancelled(Exception):
    """Raised inside a worker thread once the caller has given up on it."""


def check_cancelled(cancelled: threading.Event) -> None:
    if cancelled.is_set():
        raise Cancelled()


async def run_in_thread(func: Callable[..., T], timeout: float, *args,
                        grace: float = EXIT_GRACE_SECONDS) -> T:
    """Run ``func(cancelled, *args)`` in a thread.

    Raises ``asyncio.TimeoutError`` once the thread has stopped (or the grace
    period ran out) after a timeout.
    """
    cancelled = threading.Event()
    task = asyncio.ensure_future(asyncio.to_thread(func, cancelled, *args))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        cancelled.set()
        raise

    if task in done:
        return task.result()

    cancelled.set()
    done, _ = await asyncio.wait({task}, timeout=grace)
    if not done:
        logger.warning(f"{getattr(func, '__name__', func)} still running {grace}s after timing out")
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
    elif not task.cancelled() and task.exception() is not None:
        logger.debug(f"Timed-out thread exited with: {task.exception()!r}")
    raise asyncio.TimeoutError()
