"""Deadline enforcement for blocking calls to external services."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from inbox_reports.core.exceptions import (
    ExternalCallError,
    ExternalCallTimeoutError,
    InboxReportsError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_seconds: float | None,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run an external call, racing it against a deadline.

    The call runs on a daemon thread; if the deadline passes first the
    thread is abandoned and ExternalCallTimeoutError is raised.

    Args:
        fn: The blocking call.
        timeout_seconds: Deadline in seconds. None or <= 0 disables it.
        operation: Short name used in error messages (e.g. "summarize").

    Raises:
        ExternalCallTimeoutError: If the deadline passes first.
        ExternalCallError: If the call raised a non-Inbox Reports exception.
    """
    future: Future[T] = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)

    if timeout_seconds is not None and timeout_seconds <= 0:
        timeout_seconds = None

    worker = threading.Thread(target=_run, name=f"external-{operation}", daemon=True)
    worker.start()

    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as e:
        if future.done():
            raise ExternalCallTimeoutError(f"{operation} timed out: {e}") from e
        logger.warning("%s exceeded %.1fs deadline", operation, timeout_seconds)
        raise ExternalCallTimeoutError(
            f"Timed out after {timeout_seconds:g}s waiting for {operation}"
        ) from e
    except InboxReportsError:
        raise
    except Exception as e:
        raise ExternalCallError(f"{operation} failed: {e}") from e
