"""HTML to plain text conversion using trafilatura with fallbacks."""

from __future__ import annotations

import logging
import re

import trafilatura

from inbox_reports.core.exceptions import ConversionError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


class BodyTextConverter:
    """Produce the plain-text body stored for each email."""

    def to_text(self, message_id: str, plain_text: str | None, html: str | None) -> str:
        """Convert an email body to plain text.

        Strategy:
        1. If HTML is available, extract it via trafilatura (favor_recall=True for email layouts).
        2. If trafilatura returns nothing, use the text/plain part.
        3. As a last resort, strip tags from the HTML.

        Raises:
            ConversionError: If the message has no usable content at all.
        """
        result: str | None = None

        if html:
            try:
                result = trafilatura.extract(
                    html,
                    output_format="txt",
                    favor_recall=True,
                    include_links=False,
                    include_tables=True,
                )
            except Exception as e:
                logger.warning("Trafilatura extraction failed for %s: %s", message_id, e)
                result = None

        if not result and plain_text:
            result = plain_text

        if not result and html:
            result = self.strip_tags(html)

        if result is None:
            raise ConversionError(f"No convertible content for message {message_id}")

        return result.strip()

    @staticmethod
    def strip_tags(html: str) -> str:
        """Remove HTML tags and collapse whitespace."""
        return _WS_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()
