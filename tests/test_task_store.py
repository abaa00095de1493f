"""Tests for TaskRecordStore - the in-memory task lifecycle registry."""

from __future__ import annotations

import threading

import pytest
from conftest import FakeClock

from inbox_reports.core.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from inbox_reports.core.models import TaskStatus, TaskType
from inbox_reports.storage.task_store import TaskRecordStore


def _processing(store: TaskRecordStore, client_id: str | None = None) -> str:
    task_id = store.create(TaskType.SUMMARIZE_EMAILS, client_id=client_id)
    store.transition(task_id, TaskStatus.PROCESSING)
    return task_id


class TestCreate:
    """create() registers a queued record."""

    def test_new_task_is_queued(self, task_store: TaskRecordStore) -> None:
        task_id = task_store.create(TaskType.INGEST_EMAILS, client_id="c1", params={"a": 1})
        record = task_store.get(task_id)
        assert record is not None
        assert record.status == TaskStatus.QUEUED
        assert record.progress_percent == 0.0
        assert record.client_id == "c1"
        assert record.params == {"a": 1}

    def test_ids_are_unique(self, task_store: TaskRecordStore) -> None:
        ids = {task_store.create(TaskType.INGEST_EMAILS) for _ in range(50)}
        assert len(ids) == 50

    def test_accepts_string_type(self, task_store: TaskRecordStore) -> None:
        task_id = task_store.create("generate-embeddings")
        assert task_store.get(task_id).task_type == TaskType.GENERATE_EMBEDDINGS

    def test_unknown_type_rejected(self, task_store: TaskRecordStore) -> None:
        with pytest.raises(InvalidInputError):
            task_store.create("defragment-inbox")


class TestGet:
    """get() returns snapshots, never live records."""

    def test_unknown_returns_none(self, task_store: TaskRecordStore) -> None:
        assert task_store.get("nope") is None

    def test_snapshot_is_detached(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        snapshot = task_store.get(task_id)
        snapshot.progress_percent = 99.0
        snapshot.result["x"] = 1
        fresh = task_store.get(task_id)
        assert fresh.progress_percent == 0.0
        assert fresh.result == {}

    def test_latest_for_client(self, task_store: TaskRecordStore, clock: FakeClock) -> None:
        task_store.create(TaskType.INGEST_EMAILS, client_id="c1")
        clock.advance(5)
        newer = task_store.create(TaskType.SUMMARIZE_EMAILS, client_id="c1")
        task_store.create(TaskType.INGEST_EMAILS, client_id="c2")
        assert task_store.get_latest_for_client("c1").task_id == newer

    def test_latest_for_client_tie_goes_to_later_insert(
        self, task_store: TaskRecordStore
    ) -> None:
        task_store.create(TaskType.INGEST_EMAILS, client_id="c1")
        second = task_store.create(TaskType.INGEST_EMAILS, client_id="c1")
        assert task_store.get_latest_for_client("c1").task_id == second

    def test_latest_for_unknown_client(self, task_store: TaskRecordStore) -> None:
        assert task_store.get_latest_for_client("ghost") is None

    def test_list_records_by_status(self, task_store: TaskRecordStore) -> None:
        queued = task_store.create(TaskType.INGEST_EMAILS)
        running = _processing(task_store)
        assert [r.task_id for r in task_store.list_records(TaskStatus.QUEUED)] == [queued]
        assert [r.task_id for r in task_store.list_records(TaskStatus.PROCESSING)] == [running]
        assert len(task_store.list_records()) == 2


class TestUpdate:
    """update() applies progress atomically and monotonically."""

    def test_progress_from_units(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, total_units=200)
        assert task_store.update(task_id, processed_units=50) is True
        record = task_store.get(task_id)
        assert record.processed_units == 50
        assert record.progress_percent == 25.0

    def test_explicit_percent_clamped(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, progress_percent=250.0)
        assert task_store.get(task_id).progress_percent == 100.0

    def test_out_of_order_update_rejected(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, total_units=100, processed_units=60)
        assert task_store.update(task_id, processed_units=40) is False
        record = task_store.get(task_id)
        assert record.processed_units == 60
        assert record.progress_percent == 60.0

    def test_percent_never_decreases_while_processing(
        self, task_store: TaskRecordStore
    ) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, total_units=10, processed_units=5)
        # A larger total would lower the ratio; progress holds instead
        task_store.update(task_id, total_units=100)
        assert task_store.get(task_id).progress_percent == 50.0

    def test_updates_touch_last_update_time(
        self, task_store: TaskRecordStore, clock: FakeClock
    ) -> None:
        task_id = _processing(task_store)
        clock.advance(30)
        task_store.update(task_id, processed_units=1)
        assert task_store.age_seconds(task_id) == 0.0

    def test_terminal_task_ignores_updates(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.transition(task_id, TaskStatus.COMPLETED)
        assert task_store.update(task_id, processed_units=3) is False
        assert task_store.get(task_id).progress_percent == 100.0

    def test_negative_counts_rejected(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        with pytest.raises(InvalidInputError):
            task_store.update(task_id, processed_units=-1)
        with pytest.raises(InvalidInputError):
            task_store.update(task_id, total_units=-1)

    def test_unknown_task_raises(self, task_store: TaskRecordStore) -> None:
        with pytest.raises(TaskNotFoundError):
            task_store.update("nope", processed_units=1)

    def test_concurrent_updates_stay_monotonic(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, total_units=1000)
        seen: list[float] = []
        seen_lock = threading.Lock()

        def _writer(offset: int) -> None:
            for n in range(offset, 1000, 4):
                task_store.update(task_id, processed_units=n + 1)
                with seen_lock:
                    seen.append(task_store.get(task_id).progress_percent)

        threads = [threading.Thread(target=_writer, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = task_store.get(task_id)
        assert record.processed_units == 1000
        assert record.progress_percent == 100.0
        assert all(0.0 <= p <= 100.0 for p in seen)


class TestTransition:
    """transition() enforces queued → processing → completed | failed."""

    def test_happy_path(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, processed_units=7)
        record = task_store.transition(task_id, TaskStatus.COMPLETED)
        assert record.status == TaskStatus.COMPLETED
        assert record.progress_percent == 100.0
        assert record.total_units == 7

    def test_failed_records_message(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        record = task_store.transition(task_id, TaskStatus.FAILED, "disk full")
        assert record.error_message == "disk full"

    def test_failed_without_message_gets_default(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        assert task_store.transition(task_id, "failed").error_message == "Task failed"

    def test_queued_can_fail_directly(self, task_store: TaskRecordStore) -> None:
        task_id = task_store.create(TaskType.INGEST_EMAILS)
        assert task_store.transition(task_id, TaskStatus.FAILED, "no worker").status == "failed"

    def test_queued_cannot_complete(self, task_store: TaskRecordStore) -> None:
        task_id = task_store.create(TaskType.INGEST_EMAILS)
        with pytest.raises(InvalidTransitionError):
            task_store.transition(task_id, TaskStatus.COMPLETED)

    @pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.FAILED])
    @pytest.mark.parametrize(
        "target",
        [TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED],
    )
    def test_terminal_states_are_final(
        self, task_store: TaskRecordStore, terminal: TaskStatus, target: TaskStatus
    ) -> None:
        task_id = _processing(task_store)
        task_store.transition(task_id, terminal)
        with pytest.raises(InvalidTransitionError):
            task_store.transition(task_id, target)
        assert task_store.get(task_id).status == terminal

    def test_processing_cannot_go_back_to_queued(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        with pytest.raises(InvalidTransitionError):
            task_store.transition(task_id, TaskStatus.QUEUED)

    def test_unknown_task_raises(self, task_store: TaskRecordStore) -> None:
        with pytest.raises(TaskNotFoundError):
            task_store.transition("nope", TaskStatus.PROCESSING)


class TestStalenessAndEviction:
    """Staleness is reported only; eviction only removes finished records."""

    def test_age_and_staleness(self, task_store: TaskRecordStore, clock: FakeClock) -> None:
        task_id = _processing(task_store)
        clock.advance(601)
        assert task_store.age_seconds(task_id) == 601.0
        assert task_store.is_stale(task_id) is True
        assert task_store.get(task_id).status == TaskStatus.PROCESSING

    def test_finished_tasks_are_never_stale(
        self, task_store: TaskRecordStore, clock: FakeClock
    ) -> None:
        task_id = _processing(task_store)
        task_store.transition(task_id, TaskStatus.COMPLETED)
        clock.advance(1000)
        assert task_store.is_stale(task_id) is False

    def test_report_flags_stale(self, task_store: TaskRecordStore, clock: FakeClock) -> None:
        task_id = _processing(task_store)
        clock.advance(700)
        report = task_store.report(task_id)
        assert report.is_stale is True
        assert report.is_processing is True

    def test_evicts_expired_terminal_records(
        self, task_store: TaskRecordStore, clock: FakeClock
    ) -> None:
        done = _processing(task_store)
        task_store.transition(done, TaskStatus.COMPLETED)
        running = _processing(task_store)
        clock.advance(1801)
        assert task_store.evict_expired() == 1
        assert task_store.get(done) is None
        assert task_store.get(running) is not None

    def test_recent_terminal_records_kept(
        self, task_store: TaskRecordStore, clock: FakeClock
    ) -> None:
        done = _processing(task_store)
        task_store.transition(done, TaskStatus.FAILED, "x")
        clock.advance(60)
        assert task_store.evict_expired() == 0
        assert task_store.report(done).is_failed is True

    def test_create_evicts(self, task_store: TaskRecordStore, clock: FakeClock) -> None:
        done = _processing(task_store)
        task_store.transition(done, TaskStatus.COMPLETED)
        clock.advance(3600)
        task_store.create(TaskType.INGEST_EMAILS)
        assert task_store.get(done) is None
        assert len(task_store) == 1

    def test_no_ttl_keeps_everything(self, clock: FakeClock) -> None:
        store = TaskRecordStore(ttl_seconds=None, clock=clock)
        task_id = store.create(TaskType.INGEST_EMAILS)
        store.transition(task_id, TaskStatus.FAILED)
        clock.advance(10**6)
        assert store.evict_expired() == 0


class TestReport:
    """report() is what pollers see."""

    def test_unknown_id_is_not_found(self, task_store: TaskRecordStore) -> None:
        report = task_store.report("missing")
        assert report.found is False
        assert report.is_complete is False
        assert report.is_processing is False
        assert report.is_failed is False

    def test_report_dict_shape(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store, client_id="c9")
        task_store.update(task_id, total_units=4, processed_units=1)
        data = task_store.report(task_id).to_dict()
        assert data["found"] is True
        assert data["taskId"] == task_id
        assert data["status"] == "processing"
        assert data["progress"] == 25.0
        assert data["isProcessing"] is True
        assert data["isComplete"] is False
        assert data["error"] is None

    def test_report_dict_carries_result(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store)
        task_store.update(task_id, result={"inserted": 3, "skipped": 1})
        task_store.transition(task_id, TaskStatus.COMPLETED)
        data = task_store.report(task_id).to_dict()
        assert data["isComplete"] is True
        assert data["result"] == {"inserted": 3, "skipped": 1}
        assert task_store.report("missing").to_dict()["result"] == {}

    def test_report_latest_for_client(self, task_store: TaskRecordStore) -> None:
        task_id = _processing(task_store, client_id="c3")
        assert task_store.report_latest_for_client("c3").task_id == task_id
        assert task_store.report_latest_for_client("c4").found is False
