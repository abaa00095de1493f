"""Facade wiring stores, collaborators and the scheduler together."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from typing import Any

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.collaborators import EmailRepository, EmailSource, LanguageModel
from inbox_reports.core.exceptions import InvalidInputError
from inbox_reports.core.models import (
    DateRange,
    EmailFilter,
    Report,
    SimilarEmail,
    TaskStatusReport,
    TaskType,
)
from inbox_reports.pipeline.report import ReportBuilder
from inbox_reports.pipeline.scheduler import TaskScheduler
from inbox_reports.pipeline.tasks import build_task_bodies
from inbox_reports.pipeline.timeouts import call_with_timeout
from inbox_reports.storage.email_store import SqliteEmailStore
from inbox_reports.storage.task_store import TaskRecordStore

logger = logging.getLogger(__name__)


class InboxReportsEngine:
    """Queue background email tasks, poll them, and build reports.

    Collaborators not passed in are created on first use from settings:
    SQLite for persistence, Gmail as the email source, OpenAI as the model.
    """

    def __init__(
        self,
        settings: InboxReportsSettings | None = None,
        *,
        source: EmailSource | None = None,
        repository: EmailRepository | None = None,
        llm: LanguageModel | None = None,
        task_store: TaskRecordStore | None = None,
    ) -> None:
        self._settings = settings or InboxReportsSettings()
        self._source = source
        self._repository = repository
        self._llm = llm
        self._owned_store: SqliteEmailStore | None = None
        self._task_store = task_store or TaskRecordStore(
            ttl_seconds=self._settings.task_ttl_seconds,
            stale_after_seconds=self._settings.task_stale_after_seconds,
        )
        self._scheduler: TaskScheduler | None = None

    def __enter__(self) -> InboxReportsEngine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def settings(self) -> InboxReportsSettings:
        return self._settings

    @property
    def repository(self) -> EmailRepository:
        if self._repository is None:
            self._settings.ensure_directories()
            self._owned_store = SqliteEmailStore(self._settings.database_path)
            self._owned_store.connect()
            self._repository = self._owned_store
        return self._repository

    @property
    def source(self) -> EmailSource:
        if self._source is None:
            from inbox_reports.sources.gmail_source import GmailEmailSource

            self._source = GmailEmailSource.from_settings(self._settings)
        return self._source

    @property
    def llm(self) -> LanguageModel:
        if self._llm is None:
            from inbox_reports.llm.openai_model import OpenAILanguageModel

            self._llm = OpenAILanguageModel.from_settings(self._settings)
        return self._llm

    @property
    def scheduler(self) -> TaskScheduler:
        if self._scheduler is None:
            bodies = build_task_bodies(
                _Deferred(lambda: self.source),
                self.repository,
                _Deferred(lambda: self.llm),
                self._settings,
            )
            self._scheduler = TaskScheduler(
                self._task_store, bodies, max_workers=self._settings.max_workers
            )
        return self._scheduler

    def queue_ingest(
        self,
        start_date: str,
        end_date: str,
        *,
        client_id: str | None = None,
        domains: Sequence[str] = (),
        emails: Sequence[str] = (),
        max_results: int = 1000,
    ) -> str:
        """Queue ingestion of a client's emails for a date range."""
        return self.scheduler.queue(
            TaskType.INGEST_EMAILS,
            {
                "client_id": client_id,
                "start_date": start_date,
                "end_date": end_date,
                "domains": list(domains),
                "emails": list(emails),
                "max_results": max_results,
            },
        )

    def queue_summaries(self, limit: int | None = None, client_id: str | None = None) -> str:
        params: dict[str, Any] = {"client_id": client_id}
        if limit is not None:
            params["limit"] = limit
        return self.scheduler.queue(TaskType.SUMMARIZE_EMAILS, params)

    def queue_embeddings(self, limit: int | None = None, client_id: str | None = None) -> str:
        params: dict[str, Any] = {"client_id": client_id}
        if limit is not None:
            params["limit"] = limit
        return self.scheduler.queue(TaskType.GENERATE_EMBEDDINGS, params)

    def get_status(
        self, task_id: str | None = None, client_id: str | None = None
    ) -> TaskStatusReport:
        """Snapshot of a task, or of a client's latest task, read from the task store.

        Raises:
            InvalidInputError: If neither task_id nor client_id is given.
        """
        if task_id:
            return self._task_store.report(task_id)
        if client_id:
            return self._task_store.report_latest_for_client(client_id)
        raise InvalidInputError("Either task_id or client_id must be provided")

    def wait(
        self,
        task_id: str,
        *,
        poll_seconds: float = 0.5,
        on_progress: Callable[[TaskStatusReport], None] | None = None,
    ) -> TaskStatusReport:
        """Poll a task until it finishes, reporting each snapshot to on_progress."""
        while True:
            status = self.scheduler.wait(task_id, timeout=poll_seconds)
            if on_progress is not None:
                on_progress(status)
            if not status.found or status.is_complete or status.is_failed:
                return status

    def build_report(self, date_range: DateRange, filters: EmailFilter | None = None) -> Report:
        """Generate a report over the stored emails in a date window."""
        corpus = self.repository.load_corpus(date_range, filters)
        logger.info("Building report over %d stored emails", len(corpus))
        return ReportBuilder(self.llm, self._settings).generate(corpus)

    def search_similar(
        self,
        query: str,
        date_range: DateRange | None = None,
        filters: EmailFilter | None = None,
        limit: int = 10,
    ) -> list[SimilarEmail]:
        """Stored emails closest in meaning to a free-text query."""
        if not query.strip():
            raise InvalidInputError("query must not be empty")
        vector = call_with_timeout(
            self.llm.embed,
            query,
            timeout_seconds=self._settings.llm_timeout_seconds,
            operation="embed query",
        )
        matches = call_with_timeout(
            self.repository.find_similar,
            vector,
            date_range,
            filters,
            limit,
            timeout_seconds=self._settings.persistence_timeout_seconds,
            operation="similarity search",
        )
        logger.info("Found %d emails similar to the query", len(matches))
        return matches

    def close(self) -> None:
        """Stop the worker pool and release owned resources."""
        if self._scheduler is not None:
            if self._scheduler.active_count:
                logger.info(
                    "Waiting for %d background tasks to finish", self._scheduler.active_count
                )
            self._scheduler.shutdown(wait=True)
            self._scheduler = None
        if self._owned_store is not None:
            self._owned_store.close()
            self._owned_store = None
            self._repository = None


class _Deferred:
    """Resolve a collaborator on first attribute access.

    Tasks that never touch Gmail or OpenAI do not need their credentials.
    """

    def __init__(self, factory: Callable[[], Any]) -> None:
        self._factory = factory
        self._target: Any = None
        self._lock = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        with self._lock:
            if self._target is None:
                self._target = self._factory()
        return getattr(self._target, name)
