"""Tests for InboxReportsEngine with injected collaborators."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from conftest import FakeEmailSource, FakeLanguageModel, make_email

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.exceptions import ExternalCallError, InvalidInputError
from inbox_reports.core.models import (
    DateRange,
    EmailFilter,
    EmailRef,
    TaskStatusReport,
    TaskType,
)
from inbox_reports.pipeline.engine import InboxReportsEngine
from inbox_reports.storage.email_store import SqliteEmailStore
from inbox_reports.storage.task_store import TaskRecordStore


@pytest.fixture
def llm() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def engine(
    settings: InboxReportsSettings,
    email_store: SqliteEmailStore,
    sample_emails: list[EmailRef],
    llm: FakeLanguageModel,
) -> Iterator[InboxReportsEngine]:
    with InboxReportsEngine(
        settings,
        source=FakeEmailSource(sample_emails),
        repository=email_store,
        llm=llm,
    ) as engine:
        yield engine


class TestQueueing:
    """queue_* helpers run the matching task type."""

    def test_ingest_round_trip(
        self, engine: InboxReportsEngine, email_store: SqliteEmailStore
    ) -> None:
        task_id = engine.queue_ingest(
            "2024-03-01", "2024-03-31", client_id="acme", domains=["acme.com"]
        )
        status = engine.wait(task_id, poll_seconds=0.05)
        assert status.is_complete is True
        assert status.task_type == str(TaskType.INGEST_EMAILS)
        assert status.result["inserted"] == 6
        assert email_store.count_by_status()["total"] == 6

    def test_summaries_then_embeddings(
        self,
        engine: InboxReportsEngine,
        email_store: SqliteEmailStore,
        llm: FakeLanguageModel,
    ) -> None:
        engine.wait(engine.queue_ingest("2024-03-01", "2024-03-31"), poll_seconds=0.05)
        summaries = engine.wait(engine.queue_summaries(limit=5), poll_seconds=0.05)
        embeddings = engine.wait(engine.queue_embeddings(), poll_seconds=0.05)
        assert summaries.result["summarized"] == 5
        assert embeddings.result["embedded"] == 12
        assert len(llm.summarized) == 5
        assert email_store.count_by_status() == {"total": 12, "summarized": 5, "embedded": 12}

    def test_status_by_client(self, engine: InboxReportsEngine) -> None:
        task_id = engine.queue_ingest("2024-03-01", "2024-03-31", client_id="globex")
        engine.wait(task_id, poll_seconds=0.05)
        assert engine.get_status(client_id="globex").task_id == task_id

    def test_wait_reports_progress(self, engine: InboxReportsEngine) -> None:
        seen: list[TaskStatusReport] = []
        task_id = engine.queue_ingest("2024-03-01", "2024-03-31")
        final = engine.wait(task_id, poll_seconds=0.05, on_progress=seen.append)
        assert seen[-1] == final
        assert final.progress_percent == 100.0

    def test_wait_on_unknown_task(self, engine: InboxReportsEngine) -> None:
        assert engine.wait("missing", poll_seconds=0.01).found is False

    def test_invalid_dates_fail_the_task(self, engine: InboxReportsEngine) -> None:
        status = engine.wait(
            engine.queue_ingest("2024-03-31", "2024-03-01"), poll_seconds=0.05
        )
        assert status.is_failed is True
        assert status.error_message


class TestBuildReport:
    """build_report() reads stored emails and asks the model for a report."""

    def test_report_over_stored_emails(
        self,
        engine: InboxReportsEngine,
        llm: FakeLanguageModel,
        march_range: DateRange,
    ) -> None:
        engine.wait(engine.queue_ingest("2024-03-01", "2024-03-31"), poll_seconds=0.05)
        report = engine.build_report(march_range, EmailFilter(domains=("globex.com",)))
        assert report.email_count == 6
        assert report.report == "All quiet."
        assert len(llm.materials[0]["detailed_emails"]) == 6

    def test_report_with_no_emails(
        self, engine: InboxReportsEngine, march_range: DateRange
    ) -> None:
        report = engine.build_report(march_range)
        assert report.email_count == 0
        assert report.plan.coverage_percent == 100.0


class TestSearchSimilar:
    """search_similar() embeds the query and ranks stored emails."""

    def test_ranks_embedded_emails(
        self,
        engine: InboxReportsEngine,
        email_store: SqliteEmailStore,
        llm: FakeLanguageModel,
        march_range: DateRange,
    ) -> None:
        email_store.upsert(make_email(1, sender="bob@acme.com"))
        email_store.upsert(make_email(2, sender="carol@globex.com"))
        email_store.upsert(make_email(3, sender="bob@acme.com"))
        email_store.save_embedding("msg0001", [0.0, 1.0, 0.0])
        email_store.save_embedding("msg0002", [5.0, 0.0, 0.0])
        matches = engine.search_similar("renewal terms", march_range)
        assert llm.embedded == ["renewal terms"]
        assert [m.email.id for m in matches] == ["msg0002", "msg0001"]
        assert matches[0].to_dict()["similarity"] == pytest.approx(1.0)

    def test_client_filter_and_limit(
        self, engine: InboxReportsEngine, email_store: SqliteEmailStore
    ) -> None:
        for i in range(1, 5):
            email_store.upsert(make_email(i, sender="bob@acme.com"))
            email_store.save_embedding(f"msg{i:04d}", [float(i), 1.0, 0.0])
        email_store.upsert(make_email(5, sender="carol@globex.com"))
        email_store.save_embedding("msg0005", [1.0, 0.0, 0.0])
        matches = engine.search_similar(
            "status", filters=EmailFilter(domains=("acme.com",)), limit=2
        )
        assert [m.email.id for m in matches] == ["msg0004", "msg0003"]

    def test_blank_query_rejected(self, engine: InboxReportsEngine) -> None:
        with pytest.raises(InvalidInputError):
            engine.search_similar("   ")

    def test_model_failure_surfaces(
        self, settings: InboxReportsSettings, email_store: SqliteEmailStore
    ) -> None:
        with InboxReportsEngine(
            settings,
            source=FakeEmailSource(),
            repository=email_store,
            llm=FakeLanguageModel(error=ConnectionError("openai down")),
        ) as engine:
            with pytest.raises(ExternalCallError, match="embed query"):
                engine.search_similar("anything")


class TestOwnedResources:
    """Collaborators the engine creates itself."""

    def test_creates_and_closes_its_own_store(self, settings: InboxReportsSettings) -> None:
        engine = InboxReportsEngine(
            settings, source=FakeEmailSource(), llm=FakeLanguageModel()
        )
        repository = engine.repository
        assert isinstance(repository, SqliteEmailStore)
        assert settings.database_path.exists()
        engine.close()
        with pytest.raises(RuntimeError):
            repository.conn

    def test_model_not_built_until_needed(
        self, settings: InboxReportsSettings, email_store: SqliteEmailStore
    ) -> None:
        # No API key configured: ingestion must still work without touching OpenAI
        with InboxReportsEngine(
            settings, source=FakeEmailSource(), repository=email_store
        ) as engine:
            status = engine.wait(
                engine.queue_ingest("2024-03-01", "2024-03-31"), poll_seconds=0.05
            )
        assert status.is_complete is True

    def test_missing_api_key_fails_summaries(
        self, settings: InboxReportsSettings, email_store: SqliteEmailStore
    ) -> None:
        email_store.upsert(make_email(1))
        with InboxReportsEngine(
            settings, source=FakeEmailSource(), repository=email_store
        ) as engine:
            status = engine.wait(engine.queue_summaries(), poll_seconds=0.05)
        assert status.is_failed is True
        assert "OPENAI_API_KEY" in status.error_message

    def test_status_polling_leaves_database_closed(self, settings: InboxReportsSettings) -> None:
        tasks = TaskRecordStore()
        queued_id = tasks.create(TaskType.INGEST_EMAILS, client_id="acme")
        with InboxReportsEngine(
            settings, source=FakeEmailSource(), llm=FakeLanguageModel(), task_store=tasks
        ) as engine:
            assert engine.get_status(task_id=queued_id).status == "queued"
            assert engine.get_status(client_id="acme").task_id == queued_id
            assert engine.get_status(task_id="missing").found is False
            with pytest.raises(InvalidInputError):
                engine.get_status()
        assert not settings.database_path.exists()
