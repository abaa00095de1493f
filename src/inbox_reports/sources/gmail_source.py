"""EmailSource backed by a Gmail mailbox."""

from __future__ import annotations

import logging
from datetime import timedelta

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.exceptions import ParseError
from inbox_reports.core.models import DateRange, EmailFilter, EmailRef
from inbox_reports.core.tiers import order_by_recency
from inbox_reports.sources.auth import authenticate, build_gmail_service
from inbox_reports.sources.gmail_client import GmailClient
from inbox_reports.sources.parser import GmailParser

logger = logging.getLogger(__name__)


def build_query(date_range: DateRange, filters: EmailFilter) -> str:
    """Gmail search query for a date window and a client's domains/addresses.

    Gmail's before: is exclusive and day-granular, so the end day is included
    by searching up to the following day. Results are re-filtered exactly
    after fetching.
    """
    end_exclusive = date_range.end.date() + timedelta(days=1)
    terms = [
        f"after:{date_range.start.date():%Y/%m/%d}",
        f"before:{end_exclusive:%Y/%m/%d}",
    ]
    participants = [*filters.domains, *filters.addresses]
    if participants:
        # {a b c} is Gmail's OR group
        clauses = [f"{field}:{p}" for p in participants for field in ("from", "to", "cc")]
        terms.append("{" + " ".join(clauses) + "}")
    return " ".join(terms)


class GmailEmailSource:
    """Fetch, parse and filter a client's Gmail messages for a date range."""

    def __init__(
        self,
        client: GmailClient,
        parser: GmailParser | None = None,
        *,
        page_size: int = 100,
    ) -> None:
        self._client = client
        self._parser = parser or GmailParser()
        self._page_size = page_size

    @classmethod
    def from_settings(cls, settings: InboxReportsSettings) -> GmailEmailSource:
        """Authenticate with the configured credentials and build a source."""
        creds = authenticate(settings.credentials_path, settings.token_path)
        client = GmailClient(
            build_gmail_service(creds),
            max_retries=settings.max_retries,
            initial_backoff_seconds=settings.initial_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            inter_page_delay_seconds=settings.inter_page_delay_seconds,
            num_retries=settings.num_retries,
            batch_size=settings.batch_size,
        )
        return cls(client, page_size=settings.max_results_per_page)

    def fetch_emails(
        self, date_range: DateRange, filters: EmailFilter, max_results: int
    ) -> list[EmailRef]:
        """Emails in the window matching the filter, newest first, capped at max_results."""
        query = build_query(date_range, filters)
        message_ids = list(
            self._client.iter_message_ids(
                query, max_results=max_results, page_size=self._page_size
            )
        )
        logger.info("Gmail query %r matched %d messages", query, len(message_ids))

        emails: list[EmailRef] = []
        for raw in self._client.fetch_messages(message_ids):
            try:
                email = self._parser.parse(raw)
            except ParseError as e:
                logger.warning("Skipping unparseable message: %s", e)
                continue
            if not date_range.start <= email.date <= date_range.end:
                continue
            if filters.matches(email):
                emails.append(email)

        return order_by_recency(emails)[:max_results]
