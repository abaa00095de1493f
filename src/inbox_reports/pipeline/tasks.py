"""Task bodies: ingestion, summarization and embedding.

Each body is a resumable loop over a batch of emails. Items already handled
(stored, summarized, embedded) are skipped, so a task can be re-queued after a
failure, or run alongside an overlapping task, without duplicating work.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.budget import plan_or_fallback
from inbox_reports.core.collaborators import EmailRepository, EmailSource, LanguageModel
from inbox_reports.core.exceptions import InvalidInputError
from inbox_reports.core.models import DateRange, EmailFilter, EmailRef, SummaryResult, TaskType
from inbox_reports.core.tiers import truncate_body
from inbox_reports.pipeline.timeouts import call_with_timeout
from inbox_reports.storage.task_store import TaskRecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMPTY_BODY_SUMMARY = "No content to summarize"


class ProgressReporter:
    """Pushes a task's progress into the task store."""

    def __init__(self, store: TaskRecordStore, task_id: str) -> None:
        self._store = store
        self._task_id = task_id

    def set_total(self, total_units: int) -> None:
        self._store.update(self._task_id, total_units=total_units)

    def advance(self, processed_units: int) -> bool:
        return self._store.update(self._task_id, processed_units=processed_units)


@dataclass
class TaskContext:
    """What a task body gets to see about the task it is running."""

    task_id: str
    params: dict[str, Any]
    progress: ProgressReporter
    client_id: str | None = None


class TaskBody(Protocol):
    def run(self, context: TaskContext) -> dict[str, Any]: ...


def _batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _parse_datetime(value: Any, name: str, *, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidInputError(f"{name} is not an ISO date: {value!r}") from e
        if end_of_day and len(value) == 10:
            # A bare end date covers the whole day
            parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    else:
        raise InvalidInputError(f"{name} is required")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _oldest_first_key(email: EmailRef) -> tuple[float, str]:
    date = email.date if email.date.tzinfo else email.date.replace(tzinfo=UTC)
    return date.timestamp(), email.id


class _ExternalCalls:
    """Shared timeout wiring for task bodies."""

    def __init__(self, settings: InboxReportsSettings) -> None:
        self._settings = settings

    def _persist(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        return call_with_timeout(
            fn,
            *args,
            timeout_seconds=self._settings.persistence_timeout_seconds,
            operation=operation,
        )

    def _ask_llm(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        return call_with_timeout(
            fn, *args, timeout_seconds=self._settings.llm_timeout_seconds, operation=operation
        )


class IngestEmailsTask(_ExternalCalls):
    """Fetch a client's emails for a date range and store the new ones.

    Params:
        start_date, end_date: ISO dates (required).
        domains, emails: client domains and addresses to filter on.
        max_results: cap on emails fetched (default 1000).
        model_name: report model used to size the resulting corpus.
    """

    def __init__(
        self,
        source: EmailSource,
        repository: EmailRepository,
        settings: InboxReportsSettings,
    ) -> None:
        super().__init__(settings)
        self._source = source
        self._repository = repository

    def run(self, context: TaskContext) -> dict[str, Any]:
        params = context.params
        date_range = DateRange(
            start=_parse_datetime(params.get("start_date"), "start_date"),
            end=_parse_datetime(params.get("end_date"), "end_date", end_of_day=True),
        )
        if date_range.start > date_range.end:
            raise InvalidInputError("start_date must not be after end_date")
        filters = EmailFilter(
            domains=tuple(params.get("domains") or ()),
            addresses=tuple(params.get("emails") or ()),
        )
        max_results = int(params.get("max_results", 1000))
        if max_results <= 0:
            raise InvalidInputError("max_results must be positive")

        emails = call_with_timeout(
            self._source.fetch_emails,
            date_range,
            filters,
            max_results,
            timeout_seconds=self._settings.email_source_timeout_seconds,
            operation="fetch emails",
        )
        ordered = sorted(emails, key=_oldest_first_key)
        context.progress.set_total(len(ordered))
        logger.info("Fetched %d emails for task %s", len(ordered), context.task_id)

        run_id = self._persist(
            self._repository.start_run, context.task_id, context.client_id, operation="start run"
        )
        inserted = 0
        skipped = 0
        processed = 0
        try:
            for batch in _batched(ordered, self._settings.ingest_batch_size):
                batch_inserted = 0
                for email in batch:
                    is_new = not self._persist(
                        self._repository.exists_by_id, email.id, operation="check email"
                    ) and self._persist(self._repository.upsert, email, operation="store email")
                    # A concurrent run may have stored it between the check and the write
                    if is_new:
                        inserted += 1
                        batch_inserted += 1
                    else:
                        skipped += 1
                    processed += 1
                context.progress.advance(processed)
                logger.info("Ingest batch: %d emails (%d new)", len(batch), batch_inserted)
        finally:
            self._repository.complete_run(
                run_id,
                emails_seen=processed,
                emails_inserted=inserted,
                emails_skipped=skipped,
            )

        plan = plan_or_fallback(
            len(ordered),
            self._settings.output_reservation_tokens,
            params.get("model_name") or self._settings.report_model,
            self._settings.budget_policy(),
        )
        return {
            "fetched": len(ordered),
            "inserted": inserted,
            "skipped": skipped,
            "plan": plan.to_dict(),
        }


class SummarizeEmailsTask(_ExternalCalls):
    """Summarize stored emails that don't have a summary yet.

    Params:
        limit: maximum emails to summarize (default settings.summary_batch_limit).
    """

    def __init__(
        self,
        repository: EmailRepository,
        llm: LanguageModel,
        settings: InboxReportsSettings,
    ) -> None:
        super().__init__(settings)
        self._repository = repository
        self._llm = llm

    def run(self, context: TaskContext) -> dict[str, Any]:
        limit = int(context.params.get("limit", self._settings.summary_batch_limit))
        pending = self._persist(
            self._repository.pending_summaries, limit, operation="load pending summaries"
        )
        context.progress.set_total(len(pending))
        logger.info("Found %d emails needing summaries", len(pending))

        written = 0
        skipped = 0
        for index, email in enumerate(pending, start=1):
            if email.body.strip():
                result = self._ask_llm(
                    self._llm.summarize,
                    self.summary_input(email, self._settings.summary_body_chars),
                    operation="summarize",
                )
            else:
                result = SummaryResult(summary=EMPTY_BODY_SUMMARY)

            if self._persist(
                self._repository.save_summary,
                email.id,
                result.summary,
                result.labels,
                operation="save summary",
            ):
                written += 1
            else:
                skipped += 1
            context.progress.advance(index)

        logger.info("Summarized %d emails (%d already done elsewhere)", written, skipped)
        return {"found": len(pending), "summarized": written, "skipped": skipped}

    @staticmethod
    def summary_input(email: EmailRef, max_body_chars: int) -> str:
        """Header block plus truncated body, the text handed to the summarizer."""
        body, _ = truncate_body(email.body, max_body_chars)
        return (
            f"From: {email.sender}\n"
            f"To: {email.to}\n"
            f"Date: {email.date.isoformat()}\n"
            f"Subject: {email.subject}\n\n"
            f"{body}"
        )


class GenerateEmbeddingsTask(_ExternalCalls):
    """Embed stored emails not yet processed for vector search.

    Params:
        limit: maximum emails to embed (default settings.embedding_batch_limit).
        batch_size: progress is reported after each batch
            (default settings.embedding_progress_batch_size).
    """

    def __init__(
        self,
        repository: EmailRepository,
        llm: LanguageModel,
        settings: InboxReportsSettings,
    ) -> None:
        super().__init__(settings)
        self._repository = repository
        self._llm = llm

    def run(self, context: TaskContext) -> dict[str, Any]:
        limit = int(context.params.get("limit", self._settings.embedding_batch_limit))
        batch_size = int(
            context.params.get("batch_size", self._settings.embedding_progress_batch_size)
        )
        if batch_size <= 0:
            raise InvalidInputError("batch_size must be positive")

        pending = self._persist(
            self._repository.pending_embeddings, limit, operation="load pending embeddings"
        )
        context.progress.set_total(len(pending))
        logger.info("Found %d emails to embed", len(pending))

        written = 0
        processed = 0
        total_batches = (len(pending) + batch_size - 1) // batch_size
        for batch_number, batch in enumerate(_batched(pending, batch_size), start=1):
            logger.debug("Embedding batch %d of %d", batch_number, total_batches)
            for email in batch:
                vector = self._ask_llm(
                    self._llm.embed,
                    self.embedding_input(email, self._settings.embedding_input_chars),
                    operation="embed",
                )
                if self._persist(
                    self._repository.save_embedding, email.id, vector, operation="save embedding"
                ):
                    written += 1
                processed += 1
            context.progress.advance(processed)

        logger.info("Embedded %d emails", written)
        return {"found": len(pending), "embedded": written, "skipped": processed - written}

    @staticmethod
    def embedding_input(email: EmailRef, max_chars: int) -> str:
        content = "\n".join(
            [
                f"Subject: {email.subject}",
                f"Summary: {email.summary}",
                f"Body: {email.body}",
            ]
        )
        return content[:max_chars]


def build_task_bodies(
    source: EmailSource,
    repository: EmailRepository,
    llm: LanguageModel,
    settings: InboxReportsSettings,
) -> dict[TaskType, TaskBody]:
    """Wire every task type to its body."""
    return {
        TaskType.INGEST_EMAILS: IngestEmailsTask(source, repository, settings),
        TaskType.SUMMARIZE_EMAILS: SummarizeEmailsTask(repository, llm, settings),
        TaskType.GENERATE_EMBEDDINGS: GenerateEmbeddingsTask(repository, llm, settings),
    }
