"""Background task scheduler: queue a task, return its ID, run it on a worker pool."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from inbox_reports.core.exceptions import (
    AuthenticationError,
    ExternalCallTimeoutError,
    InboxReportsError,
    InvalidInputError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from inbox_reports.core.models import TaskStatus, TaskStatusReport, TaskType
from inbox_reports.pipeline.tasks import ProgressReporter, TaskBody, TaskContext
from inbox_reports.storage.task_store import TaskRecordStore

logger = logging.getLogger(__name__)


def describe_failure(exc: BaseException) -> str:
    """Human-readable failure cause recorded on a failed task."""
    if isinstance(exc, ExternalCallTimeoutError):
        return str(exc)
    if isinstance(exc, AuthenticationError):
        return f"Authentication failed: {exc}"
    if isinstance(exc, InboxReportsError):
        return str(exc) or type(exc).__name__
    return f"{type(exc).__name__}: {exc}"


class TaskScheduler:
    """Runs task bodies on a bounded thread pool, reporting through the task store.

    queue() never waits for the task; callers poll get_status(). A failing
    body never takes the process down: the error ends up on the task record.
    """

    def __init__(
        self,
        store: TaskRecordStore,
        bodies: Mapping[TaskType, TaskBody],
        *,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            raise InvalidInputError("max_workers must be positive")
        self._store = store
        self._bodies = dict(bodies)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="inbox-task"
        )
        self._futures: dict[str, Future[None]] = {}
        self._lock = threading.Lock()

    @property
    def store(self) -> TaskRecordStore:
        return self._store

    def __enter__(self) -> TaskScheduler:
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown()

    def queue(self, task_type: TaskType | str, params: dict[str, Any] | None = None) -> str:
        """Register a task and start it in the background.

        Args:
            task_type: One of TaskType.
            params: Task parameters; 'client_id' enables per-client status lookup.

        Returns:
            The new task ID.

        Raises:
            InvalidInputError: If the task type is unknown or has no body.
        """
        try:
            task_type = TaskType(task_type)
        except ValueError as e:
            raise InvalidInputError(f"Unknown task type: {task_type}") from e
        if task_type not in self._bodies:
            raise InvalidInputError(f"No task body registered for {task_type}")

        params = dict(params or {})
        client_id = params.get("client_id")
        task_id = self._store.create(task_type, client_id=client_id, params=params)

        try:
            future = self._executor.submit(self._run, task_id, task_type, params, client_id)
        except RuntimeError as e:
            logger.error("Could not start task %s: %s", task_id, e)
            self._store.transition(task_id, TaskStatus.FAILED, f"Could not start task: {e}")
            return task_id

        with self._lock:
            self._futures[task_id] = future
        future.add_done_callback(lambda _, tid=task_id: self._forget(tid))
        return task_id

    def get_status(
        self, task_id: str | None = None, client_id: str | None = None
    ) -> TaskStatusReport:
        """Latest committed state of a task, or of a client's latest task.

        Unknown IDs return a report with found=False rather than raising.

        Raises:
            InvalidInputError: If neither task_id nor client_id is given.
        """
        if task_id:
            return self._store.report(task_id)
        if client_id:
            return self._store.report_latest_for_client(client_id)
        raise InvalidInputError("Either task_id or client_id must be provided")

    def wait(self, task_id: str, timeout: float | None = None) -> TaskStatusReport:
        """Block until a task finishes (or timeout passes), then report its status."""
        with self._lock:
            future = self._futures.get(task_id)
        if future is not None:
            wait([future], timeout=timeout)
        return self._store.report(task_id)

    @property
    def active_count(self) -> int:
        """Tasks queued or running on the pool."""
        with self._lock:
            return len(self._futures)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting tasks; optionally wait for running ones."""
        self._executor.shutdown(wait=wait)

    def _forget(self, task_id: str) -> None:
        with self._lock:
            self._futures.pop(task_id, None)

    def _run(
        self,
        task_id: str,
        task_type: TaskType,
        params: dict[str, Any],
        client_id: str | None,
    ) -> None:
        body = self._bodies[task_type]
        try:
            self._store.transition(task_id, TaskStatus.PROCESSING)
            logger.info("Processing task: %s (%s)", task_type, task_id)
            context = TaskContext(
                task_id=task_id,
                params=params,
                progress=ProgressReporter(self._store, task_id),
                client_id=client_id,
            )
            result = body.run(context)
            self._store.update(task_id, result=result or {})
            self._store.transition(task_id, TaskStatus.COMPLETED)
        except Exception as e:
            message = describe_failure(e)
            logger.error("Task failed: %s (%s): %s", task_type, task_id, message)
            try:
                self._store.transition(task_id, TaskStatus.FAILED, message)
            except (InvalidTransitionError, TaskNotFoundError) as transition_error:
                logger.error("Could not record failure of task %s: %s", task_id, transition_error)
