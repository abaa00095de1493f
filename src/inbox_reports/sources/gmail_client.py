"""Gmail API client: query-based message discovery and batch fetching."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Iterator
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from inbox_reports.core.exceptions import AuthenticationError, ExternalCallError, RateLimitError

logger = logging.getLogger(__name__)

# Gmail caps messages.list pages at 500 and batch requests at 100 calls
MAX_PAGE_SIZE = 500
MAX_BATCH_SIZE = 100


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, HttpError):
        return exc.status_code
    return None


def _is_rate_limit_error(exc: BaseException) -> bool:
    if _status_code(exc) == 429:
        return True
    text = str(exc)
    return "429" in text or "rateLimitExceeded" in text


def _is_auth_error(exc: BaseException) -> bool:
    return _status_code(exc) in (401, 403) and not _is_rate_limit_error(exc)


class GmailClient:
    """Wraps the Gmail service with paging, batching and 429 backoff."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 3,
        batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._inter_page_delay = inter_page_delay_seconds
        self._num_retries = num_retries
        self._batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))

    def _backoff(self, attempt: int, context: str) -> None:
        """Sleep with full jitter before retry number attempt + 1."""
        ceiling = min(self._initial_backoff * (2**attempt), self._max_backoff)
        delay = random.uniform(0, ceiling)
        logger.warning(
            "Rate limited during %s (attempt %d/%d), sleeping %.2fs",
            context,
            attempt + 1,
            self._max_retries,
            delay,
        )
        time.sleep(delay)

    def _execute(self, request: Any, context: str) -> Any:
        """Execute one request, retrying 429s with exponential backoff.

        Raises:
            RateLimitError: When retries are exhausted.
            AuthenticationError: On 401/403 responses.
            ExternalCallError: On any other API failure.
        """
        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if _is_rate_limit_error(e):
                    if attempt >= self._max_retries:
                        raise RateLimitError(
                            f"Gmail rate limit during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    self._backoff(attempt, context)
                elif _is_auth_error(e):
                    raise AuthenticationError(
                        f"Gmail rejected credentials during {context}: {e}"
                    ) from e
                else:
                    raise ExternalCallError(f"Gmail {context} failed: {e}") from e
        raise RateLimitError(f"Gmail rate limit during {context}")

    def iter_message_ids(
        self,
        query: str,
        *,
        max_results: int,
        page_size: int = 100,
    ) -> Iterator[str]:
        """Yield message IDs matching a Gmail search query, newest first.

        Stops after max_results IDs or when the result set is exhausted.
        """
        page_size = max(1, min(page_size, MAX_PAGE_SIZE, max_results))
        page_token: str | None = None
        yielded = 0

        while yielded < max_results:
            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "q": query,
                "maxResults": min(page_size, max_results - yielded),
            }
            if page_token:
                kwargs["pageToken"] = page_token

            response = self._execute(
                self._service.users().messages().list(**kwargs), "list messages"
            )
            messages = response.get("messages", [])
            logger.debug("Listed %d message IDs for query %r", len(messages), query)
            for message in messages:
                yield message["id"]
                yielded += 1
                if yielded >= max_results:
                    return

            page_token = response.get("nextPageToken")
            if not messages or not page_token:
                return
            if self._inter_page_delay > 0:
                time.sleep(self._inter_page_delay)

    def fetch_messages(self, message_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch full messages in batch requests, retrying rate-limited batches.

        Messages that fail individually for other reasons are logged and
        left out of the result.
        """
        fetched: list[dict[str, Any]] = []
        for start in range(0, len(message_ids), self._batch_size):
            fetched.extend(self._fetch_batch(message_ids[start : start + self._batch_size]))
        return fetched

    def _fetch_batch(self, message_ids: list[str]) -> list[dict[str, Any]]:
        pending = list(message_ids)
        results: dict[str, dict[str, Any]] = {}

        for attempt in range(self._max_retries + 1):
            throttled: list[str] = []

            def _callback(
                request_id: str,
                response: dict[str, Any] | None,
                exception: Exception | None,
            ) -> None:
                if exception is None:
                    if response:
                        results[response["id"]] = response
                elif _is_rate_limit_error(exception):
                    throttled.append(request_id)
                else:
                    logger.warning("Could not fetch message %s: %s", request_id, exception)

            batch: BatchHttpRequest = self._service.new_batch_http_request(callback=_callback)
            for message_id in pending:
                batch.add(
                    self._service.users()
                    .messages()
                    .get(userId=self._user_id, id=message_id, format="full"),
                    request_id=message_id,
                )

            try:
                batch.execute()
            except Exception as e:
                if not _is_rate_limit_error(e):
                    raise ExternalCallError(f"Gmail batch fetch failed: {e}") from e
                throttled = [m for m in pending if m not in results]

            if not throttled:
                break
            if attempt >= self._max_retries:
                raise RateLimitError(
                    f"Gmail rate limit during batch fetch after {self._max_retries} retries"
                )
            pending = throttled
            self._backoff(attempt, "batch fetch")

        logger.debug("Batch fetched %d of %d messages", len(results), len(message_ids))
        return [results[m] for m in message_ids if m in results]
