"""Split a corpus into detailed and summary-only tiers according to a BudgetPlan."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from inbox_reports.core.models import (
    BudgetPlan,
    DetailedEmail,
    EmailRef,
    SummaryOnlyEmail,
    TierSelection,
)

TRUNCATION_MARKER = "... [truncated]"


def truncate_body(body: str, max_chars: int) -> tuple[str, bool]:
    """Cut body to max_chars, appending the truncation marker when cut.

    Returns:
        (text, was_truncated)
    """
    if not body or len(body) <= max_chars:
        return body or "", False
    return body[:max_chars] + TRUNCATION_MARKER, True


def _sort_timestamp(date: datetime) -> float:
    # Naive datetimes are treated as UTC so mixed sources still compare
    if date.tzinfo is None:
        date = date.replace(tzinfo=UTC)
    return date.timestamp()


def order_by_recency(corpus: Iterable[EmailRef]) -> list[EmailRef]:
    """Newest first; equal dates ordered by id ascending."""
    by_id = sorted(corpus, key=lambda email: email.id)
    return sorted(by_id, key=lambda email: _sort_timestamp(email.date), reverse=True)


def select_tiers(corpus: Iterable[EmailRef], plan: BudgetPlan) -> TierSelection:
    """Materialize the two content tiers for a corpus.

    The most recent ``plan.detailed_email_count`` emails keep a truncated body,
    the next ``plan.summary_email_count`` keep metadata and summary only, and
    the rest are dropped. Input emails are never modified.
    """
    ordered = order_by_recency(corpus)
    detailed_end = plan.detailed_email_count
    summary_end = detailed_end + plan.summary_email_count

    detailed: list[DetailedEmail] = []
    for email in ordered[:detailed_end]:
        body, truncated = truncate_body(email.body, plan.max_body_chars)
        detailed.append(
            DetailedEmail(
                id=email.id,
                subject=email.subject,
                sender=email.sender,
                to=email.to,
                date=email.date,
                body=body,
                summary=email.summary,
                labels=email.labels,
                truncated=truncated,
            )
        )

    summary_only = [
        SummaryOnlyEmail(
            id=email.id,
            subject=email.subject,
            sender=email.sender,
            to=email.to,
            date=email.date,
            summary=email.summary,
            labels=email.labels,
        )
        for email in ordered[detailed_end:summary_end]
    ]

    return TierSelection(
        plan=plan,
        detailed=tuple(detailed),
        summary_only=tuple(summary_only),
        dropped_count=max(len(ordered) - summary_end, 0),
    )
