"""Interfaces of the external systems the engine talks to."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from inbox_reports.core.models import (
    DateRange,
    EmailFilter,
    EmailRef,
    SimilarEmail,
    SummaryResult,
)


class EmailSource(Protocol):
    """Where emails come from (Gmail, Graph, a fixture...)."""

    def fetch_emails(
        self, date_range: DateRange, filters: EmailFilter, max_results: int
    ) -> list[EmailRef]: ...


class LanguageModel(Protocol):
    """Summaries, reports and embeddings."""

    def summarize(self, text: str) -> SummaryResult: ...

    def generate_report(self, material: dict[str, Any]) -> dict[str, Any]: ...

    def embed(self, text: str) -> list[float]: ...


class EmailRepository(Protocol):
    """Persistence for ingested emails and their derived data."""

    def exists_by_id(self, email_id: str) -> bool: ...

    def upsert(self, email: EmailRef) -> bool: ...

    def pending_summaries(self, limit: int) -> list[EmailRef]: ...

    def save_summary(self, email_id: str, summary: str, labels: Sequence[str]) -> bool: ...

    def pending_embeddings(self, limit: int) -> list[EmailRef]: ...

    def save_embedding(self, email_id: str, embedding: Sequence[float]) -> bool: ...

    def load_corpus(
        self, date_range: DateRange | None = None, filters: EmailFilter | None = None
    ) -> list[EmailRef]: ...

    def find_similar(
        self,
        query_vector: Sequence[float],
        date_range: DateRange | None = None,
        filters: EmailFilter | None = None,
        limit: int = 10,
    ) -> list[SimilarEmail]: ...

    def start_run(self, task_id: str, client_id: str | None = None) -> int: ...

    def complete_run(
        self,
        run_id: int,
        emails_seen: int = 0,
        emails_inserted: int = 0,
        emails_skipped: int = 0,
    ) -> None: ...
