"""Shared fixtures and fake collaborators for Inbox Reports tests."""

from __future__ import annotations

import base64
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.models import DateRange, EmailFilter, EmailRef, SummaryResult
from inbox_reports.storage.email_store import SqliteEmailStore
from inbox_reports.storage.task_store import TaskRecordStore

BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def make_email(
    index: int,
    *,
    sender: str = "alice@acme.com",
    to: str = "me@example.com",
    body: str | None = None,
    summary: str = "",
    date: datetime | None = None,
) -> EmailRef:
    """Email number `index`, one hour newer than number index - 1."""
    return EmailRef(
        id=f"msg{index:04d}",
        thread_id=f"thread{index:04d}",
        subject=f"Subject {index}",
        sender=sender,
        to=to,
        date=date or BASE_DATE + timedelta(hours=index),
        body=f"Body of email {index}." if body is None else body,
        summary=summary,
    )


def encode_body(text: str) -> str:
    """Base64url-encode text the way the Gmail API does (no padding)."""
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


class FakeEmailSource:
    """In-memory EmailSource that records every call."""

    def __init__(
        self,
        emails: list[EmailRef] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.emails = list(emails or [])
        self.delay = delay
        self.error = error
        self.calls: list[tuple[DateRange, EmailFilter, int]] = []

    def fetch_emails(
        self, date_range: DateRange, filters: EmailFilter, max_results: int
    ) -> list[EmailRef]:
        self.calls.append((date_range, filters, max_results))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        matching = [
            email
            for email in self.emails
            if date_range.start <= email.date <= date_range.end and filters.matches(email)
        ]
        return matching[:max_results]


class FakeLanguageModel:
    """In-memory LanguageModel with switchable delays and failures."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        report: dict[str, Any] | None = None,
        dimension: int = 3,
    ) -> None:
        self.delay = delay
        self.error = error
        self.report = report if report is not None else {
            "report": "All quiet.",
            "highlights": ["Nothing urgent"],
        }
        self.dimension = dimension
        self.summarized: list[str] = []
        self.embedded: list[str] = []
        self.materials: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def _maybe_fail(self) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def summarize(self, text: str) -> SummaryResult:
        self._maybe_fail()
        with self._lock:
            self.summarized.append(text)
        return SummaryResult(summary=f"Summary of {len(text)} chars", labels=("update",))

    def generate_report(self, material: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail()
        with self._lock:
            self.materials.append(material)
        return self.report

    def embed(self, text: str) -> list[float]:
        self._maybe_fail()
        with self._lock:
            self.embedded.append(text)
        return [float(len(text))] + [0.0] * (self.dimension - 1)


class FakeClock:
    """Settable clock for task store tests."""

    def __init__(self, start: datetime = BASE_DATE) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def settings(tmp_path: Path) -> InboxReportsSettings:
    """Settings isolated from the environment, with short deadlines."""
    return InboxReportsSettings(
        _env_file=None,
        database_path=tmp_path / "data" / "inbox_reports.db",
        credentials_path=tmp_path / "credentials" / "client_secret.json",
        token_path=tmp_path / "credentials" / "token.json",
        llm_timeout_seconds=2.0,
        email_source_timeout_seconds=2.0,
        persistence_timeout_seconds=2.0,
        ingest_batch_size=10,
        max_workers=2,
    )


@pytest.fixture
def email_store(tmp_db_path: Path) -> Iterator[SqliteEmailStore]:
    """Connected SQLite email store in a temp directory."""
    with SqliteEmailStore(tmp_db_path) as store:
        yield store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def task_store(clock: FakeClock) -> TaskRecordStore:
    """Task store driven by a fake clock."""
    return TaskRecordStore(ttl_seconds=1800.0, stale_after_seconds=600.0, clock=clock)


@pytest.fixture
def sample_emails() -> list[EmailRef]:
    """Twelve emails an hour apart, alternating between two client domains."""
    return [
        make_email(i, sender="bob@acme.com" if i % 2 else "carol@globex.com")
        for i in range(12)
    ]


@pytest.fixture
def march_range() -> DateRange:
    return DateRange(
        start=datetime(2024, 3, 1, tzinfo=UTC),
        end=datetime(2024, 3, 31, 23, 59, 59, tzinfo=UTC),
    )
