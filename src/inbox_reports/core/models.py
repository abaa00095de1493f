"""Dataclasses for the Inbox Reports domain model."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class TaskType(StrEnum):
    """Closed set of background task kinds."""

    INGEST_EMAILS = "ingest-emails"
    SUMMARIZE_EMAILS = "summarize-emails"
    GENERATE_EMBEDDINGS = "generate-embeddings"


class TaskStatus(StrEnum):
    """Task lifecycle: queued → processing → completed | failed."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(frozen=True)
class ModelCapacity:
    """Context window and character density of a named language model."""

    name: str
    display_name: str
    context_window_tokens: int
    chars_per_token: float = 4.0
    embedding_dimension: int | None = None
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0


@dataclass(frozen=True)
class BudgetPlan:
    """Result of one budget calculation for a corpus of a given size."""

    model_name: str
    context_window_tokens: int
    output_reservation_tokens: int
    available_tokens: int
    usable_tokens: int
    metadata_tokens: int
    email_budget_tokens: int
    detailed_budget_tokens: float
    summary_budget_tokens: float
    detailed_email_count: int
    summary_email_count: int
    max_body_chars: int
    total_emails: int
    total_emails_covered: int
    coverage_percent: float
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EmailRef:
    """Lightweight projection of one email used for budgeting and tiering."""

    id: str
    subject: str
    sender: str
    to: str
    date: datetime
    body: str = ""
    summary: str = ""
    labels: tuple[str, ...] = field(default_factory=tuple)
    cc: str = ""
    thread_id: str = ""


@dataclass(frozen=True)
class DetailedEmail:
    """Tier 1: email with a (possibly truncated) body."""

    id: str
    subject: str
    sender: str
    to: str
    date: datetime
    body: str
    summary: str = ""
    labels: tuple[str, ...] = field(default_factory=tuple)
    truncated: bool = False


@dataclass(frozen=True)
class SummaryOnlyEmail:
    """Tier 2: email metadata and summary, no body."""

    id: str
    subject: str
    sender: str
    to: str
    date: datetime
    summary: str = ""
    labels: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TierSelection:
    """Output of a tiering pass over a corpus."""

    plan: BudgetPlan
    detailed: tuple[DetailedEmail, ...] = field(default_factory=tuple)
    summary_only: tuple[SummaryOnlyEmail, ...] = field(default_factory=tuple)
    dropped_count: int = 0


@dataclass(frozen=True)
class DateRange:
    """Inclusive date window for fetching emails."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class EmailFilter:
    """Restrict a corpus to a client's domains and addresses."""

    domains: tuple[str, ...] = field(default_factory=tuple)
    addresses: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.domains and not self.addresses

    def matches(self, email: EmailRef) -> bool:
        """True when any participant belongs to a client domain or address."""
        if self.is_empty:
            return True
        participants = _participants(email)
        addresses = {a.lower() for a in self.addresses}
        for participant in participants:
            if participant in addresses:
                return True
            _, _, domain = participant.rpartition("@")
            for client_domain in self.domains:
                client_domain = client_domain.lower()
                if domain == client_domain or domain.endswith("." + client_domain):
                    return True
        return False


def _participants(email: EmailRef) -> list[str]:
    found: list[str] = []
    for field_value in (email.sender, email.to, email.cc):
        for chunk in field_value.replace(";", ",").split(","):
            chunk = chunk.strip()
            if "<" in chunk and ">" in chunk:
                chunk = chunk[chunk.index("<") + 1 : chunk.index(">")]
            if "@" in chunk:
                found.append(chunk.strip().lower())
    return found


@dataclass(frozen=True)
class SummaryResult:
    """Output of summarizing one email."""

    summary: str
    labels: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SimilarEmail:
    """A stored email ranked against a search query."""

    email: EmailRef
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.email.id,
            "subject": self.email.subject,
            "from": self.email.sender,
            "to": self.email.to,
            "date": self.email.date.isoformat(),
            "summary": self.email.summary,
            "similarity": self.similarity,
        }


@dataclass(frozen=True)
class Report:
    """A generated communication report."""

    report: str
    highlights: tuple[str, ...]
    plan: BudgetPlan
    email_count: int


@dataclass
class TaskRecord:
    """Mutable state of one background task, owned by the task store."""

    task_id: str
    task_type: TaskType
    status: TaskStatus
    start_time: datetime
    last_update_time: datetime
    client_id: str | None = None
    progress_percent: float = 0.0
    total_units: int = 0
    processed_units: int = 0
    error_message: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskStatusReport:
    """Status object handed to pollers. Always well-formed, even when not found."""

    found: bool
    task_id: str | None = None
    task_type: str | None = None
    status: str | None = None
    progress_percent: float = 0.0
    total_units: int = 0
    processed_units: int = 0
    start_time: datetime | None = None
    last_update_time: datetime | None = None
    error_message: str | None = None
    is_stale: bool = False
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def is_processing(self) -> bool:
        return self.status == TaskStatus.PROCESSING

    @property
    def is_failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @classmethod
    def not_found(cls) -> TaskStatusReport:
        return cls(found=False)

    @classmethod
    def from_record(cls, record: TaskRecord, *, is_stale: bool = False) -> TaskStatusReport:
        return cls(
            found=True,
            task_id=record.task_id,
            task_type=str(record.task_type),
            status=str(record.status),
            progress_percent=record.progress_percent,
            total_units=record.total_units,
            processed_units=record.processed_units,
            start_time=record.start_time,
            last_update_time=record.last_update_time,
            error_message=record.error_message,
            is_stale=is_stale,
            result=dict(record.result),
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for JSON responses."""
        return {
            "found": self.found,
            "taskId": self.task_id,
            "taskType": self.task_type,
            "status": self.status,
            "progress": self.progress_percent,
            "totalUnits": self.total_units,
            "processedUnits": self.processed_units,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "lastUpdateTime": (
                self.last_update_time.isoformat() if self.last_update_time else None
            ),
            "error": self.error_message,
            "isComplete": self.is_complete,
            "isProcessing": self.is_processing,
            "isFailed": self.is_failed,
            "isStale": self.is_stale,
            "result": dict(self.result),
        }
