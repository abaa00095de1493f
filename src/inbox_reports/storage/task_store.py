"""In-memory registry of background task records."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from inbox_reports.core.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from inbox_reports.core.models import TaskRecord, TaskStatus, TaskStatusReport, TaskType

logger = logging.getLogger(__name__)

# Status state machine: queued → processing → completed | failed.
# queued → failed covers tasks that could not be started at all.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.PROCESSING, TaskStatus.FAILED}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskRecordStore:
    """Single source of truth for task lifecycle and progress.

    All reads and writes go through one lock, and readers get copies, so a
    record is never observed half-updated. The store reports staleness but
    never changes a task's status on its own.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = 1800.0,
        stale_after_seconds: float = 600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._records: dict[str, TaskRecord] = {}
        self._lock = threading.RLock()
        self._ttl_seconds = ttl_seconds
        self._stale_after_seconds = stale_after_seconds
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def create(
        self,
        task_type: TaskType | str,
        client_id: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Register a new queued task and return its ID."""
        try:
            task_type = TaskType(task_type)
        except ValueError as e:
            raise InvalidInputError(f"Unknown task type: {task_type}") from e
        now = self._clock()
        task_id = uuid.uuid4().hex
        record = TaskRecord(
            task_id=task_id,
            task_type=task_type,
            status=TaskStatus.QUEUED,
            start_time=now,
            last_update_time=now,
            client_id=client_id,
            params=dict(params or {}),
        )
        with self._lock:
            self.evict_expired()
            self._records[task_id] = record
        logger.info("Task queued: %s (%s)", task_type, task_id)
        return task_id

    def get(self, task_id: str) -> TaskRecord | None:
        """Snapshot of a task record, or None if unknown or evicted."""
        with self._lock:
            record = self._records.get(task_id)
            return self._snapshot(record) if record else None

    def get_latest_for_client(self, client_id: str) -> TaskRecord | None:
        """Most recently started task for a client."""
        latest: TaskRecord | None = None
        with self._lock:
            for record in self._records.values():
                if record.client_id != client_id:
                    continue
                if latest is None or record.start_time >= latest.start_time:
                    latest = record
            return self._snapshot(latest) if latest else None

    def list_records(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        """Snapshots of all records, optionally filtered by status."""
        with self._lock:
            return [
                self._snapshot(record)
                for record in self._records.values()
                if status is None or record.status == status
            ]

    def update(
        self,
        task_id: str,
        *,
        processed_units: int | None = None,
        total_units: int | None = None,
        progress_percent: float | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Apply a progress update atomically.

        Out-of-order updates (processed_units going backwards while
        processing) and updates to finished tasks are dropped and logged.

        Returns True if the update was applied.

        Raises:
            TaskNotFoundError: If the task ID is unknown.
            InvalidInputError: If a count is negative.
        """
        if processed_units is not None and processed_units < 0:
            raise InvalidInputError("processed_units must be non-negative")
        if total_units is not None and total_units < 0:
            raise InvalidInputError("total_units must be non-negative")

        with self._lock:
            record = self._require(task_id)

            if record.status.is_terminal:
                logger.warning(
                    "Ignoring progress update for %s task %s", record.status, task_id
                )
                return False

            if (
                record.status == TaskStatus.PROCESSING
                and processed_units is not None
                and processed_units < record.processed_units
            ):
                logger.warning(
                    "Rejected out-of-order update for task %s: processed %d < %d",
                    task_id,
                    processed_units,
                    record.processed_units,
                )
                return False

            new_processed = (
                processed_units if processed_units is not None else record.processed_units
            )
            new_total = total_units if total_units is not None else record.total_units

            if progress_percent is not None:
                progress = progress_percent
            elif new_total > 0:
                progress = new_processed / new_total * 100
            else:
                progress = record.progress_percent
            progress = min(max(progress, 0.0), 100.0)
            if record.status == TaskStatus.PROCESSING:
                progress = max(progress, record.progress_percent)

            record.processed_units = new_processed
            record.total_units = new_total
            record.progress_percent = progress
            if result is not None:
                record.result = dict(result)
            record.last_update_time = self._clock()
            return True

    def transition(
        self, task_id: str, new_status: TaskStatus | str, error_message: str | None = None
    ) -> TaskRecord:
        """Move a task to a new status, enforcing the state machine.

        Returns:
            Snapshot of the updated record.

        Raises:
            TaskNotFoundError: If the task ID is unknown.
            InvalidTransitionError: If the move is not allowed.
        """
        new_status = TaskStatus(new_status)
        with self._lock:
            record = self._require(task_id)
            if new_status not in ALLOWED_TRANSITIONS[record.status]:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {record.status} to {new_status}"
                )

            record.status = new_status
            if new_status == TaskStatus.COMPLETED:
                record.progress_percent = 100.0
                if record.total_units == 0:
                    record.total_units = record.processed_units
            elif new_status == TaskStatus.FAILED:
                record.error_message = error_message or "Task failed"
            record.last_update_time = self._clock()
            snapshot = self._snapshot(record)

        if new_status.is_terminal:
            logger.info("Task %s: %s (%s)", new_status, record.task_type, task_id)
        return snapshot

    def age_seconds(self, task_id: str) -> float:
        """Seconds since the task's last update."""
        with self._lock:
            record = self._require(task_id)
            return (self._clock() - record.last_update_time).total_seconds()

    def is_stale(self, task_id: str) -> bool:
        """True if an unfinished task has gone quiet for longer than the staleness window."""
        with self._lock:
            record = self._require(task_id)
            if record.status.is_terminal:
                return False
            return self.age_seconds(task_id) > self._stale_after_seconds

    def report(self, task_id: str) -> TaskStatusReport:
        """Status for pollers; unknown IDs yield a not-found report."""
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                return TaskStatusReport.not_found()
            return TaskStatusReport.from_record(record, is_stale=self.is_stale(task_id))

    def report_latest_for_client(self, client_id: str) -> TaskStatusReport:
        with self._lock:
            record = self.get_latest_for_client(client_id)
            if record is None:
                return TaskStatusReport.not_found()
            return TaskStatusReport.from_record(record, is_stale=self.is_stale(record.task_id))

    def evict_expired(self) -> int:
        """Drop finished records not updated within the TTL.

        Returns the number of records removed.
        """
        if self._ttl_seconds is None:
            return 0
        now = self._clock()
        with self._lock:
            expired = [
                task_id
                for task_id, record in self._records.items()
                if record.status.is_terminal
                and (now - record.last_update_time).total_seconds() > self._ttl_seconds
            ]
            for task_id in expired:
                del self._records[task_id]
        if expired:
            logger.debug("Evicted %d expired task records", len(expired))
        return len(expired)

    def _require(self, task_id: str) -> TaskRecord:
        record = self._records.get(task_id)
        if record is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return record

    @staticmethod
    def _snapshot(record: TaskRecord) -> TaskRecord:
        return replace(record, result=dict(record.result), params=dict(record.params))
