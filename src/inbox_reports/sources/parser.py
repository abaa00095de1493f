"""Gmail message parsing: MIME tree walking, base64url decoding, header extraction."""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from inbox_reports.core.converter import BodyTextConverter
from inbox_reports.core.exceptions import ConversionError, ParseError
from inbox_reports.core.models import EmailRef

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_WANTED_HEADERS = ("subject", "from", "to", "cc", "date")


class GmailParser:
    """Turns raw Gmail API messages (format=full) into EmailRef objects."""

    def __init__(self, converter: BodyTextConverter | None = None) -> None:
        self._converter = converter or BodyTextConverter()

    def parse(self, raw_message: dict[str, Any]) -> EmailRef:
        """Parse one Gmail API message.

        Raises:
            ParseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {})
            headers = self._headers(payload)
            plain_text, html = self._bodies(payload)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

        try:
            body = self._converter.to_text(message_id, plain_text, html)
        except ConversionError:
            body = raw_message.get("snippet", "")

        return EmailRef(
            id=message_id,
            thread_id=raw_message.get("threadId", ""),
            subject=headers.get("subject") or "(no subject)",
            sender=headers.get("from", ""),
            to=headers.get("to", ""),
            cc=headers.get("cc", ""),
            date=self._parse_date(headers.get("date", ""), raw_message.get("internalDate")),
            body=body,
        )

    @staticmethod
    def _headers(payload: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for header in payload.get("headers", []):
            name = header.get("name", "").lower()
            if name in _WANTED_HEADERS and name not in headers:
                headers[name] = header.get("value", "")
        return headers

    def _bodies(self, payload: dict[str, Any]) -> tuple[str | None, str | None]:
        plain_text, html = self._walk_parts(payload)
        if plain_text is None and html is None:
            data = payload.get("body", {}).get("data")
            if data:
                decoded = self._decode_body(data)
                if "html" in payload.get("mimeType", ""):
                    html = decoded
                else:
                    plain_text = decoded
        return plain_text, html

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        """First text/plain and text/html parts found depth-first, skipping attachments."""
        mime_type = part.get("mimeType", "")
        data = part.get("body", {}).get("data")

        if mime_type == "text/plain":
            return (self._decode_body(data) if data else None), None
        if mime_type == "text/html":
            return None, (self._decode_body(data) if data else None)

        plain_text: str | None = None
        html: str | None = None
        if mime_type.startswith("multipart/"):
            for sub_part in part.get("parts", []):
                if sub_part.get("filename"):
                    continue
                sub_plain, sub_html = self._walk_parts(sub_part)
                plain_text = plain_text or sub_plain
                html = html or sub_html
        return plain_text, html

    @staticmethod
    def _decode_body(data: str) -> str:
        # Gmail uses unpadded base64url (RFC 4648 §5)
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _parse_date(date_str: str, internal_date: str | None = None) -> datetime:
        """Date header as an aware datetime; internalDate (epoch ms) as a fallback."""
        if date_str:
            try:
                parsed = parsedate_to_datetime(date_str)
            except (TypeError, ValueError):
                logger.warning("Failed to parse date: %s", date_str)
            else:
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        if internal_date:
            try:
                return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            except (TypeError, ValueError, OverflowError):
                logger.warning("Failed to parse internalDate: %s", internal_date)
        return EPOCH
