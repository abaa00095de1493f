"""LanguageModel backed by the OpenAI API."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import openai
from openai import OpenAI

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.capacity import lookup
from inbox_reports.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExternalCallError,
    ExternalCallTimeoutError,
    RateLimitError,
)
from inbox_reports.core.models import SummaryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_MAX_TOKENS = 150
SUMMARY_TEMPERATURE = 0.3

SUMMARY_PROMPT = """Summarize this email concisely.
Focus on the main point, any action items or requests, and key information.
The summary should be 1-2 sentences. Be factual and objective.

Return JSON: {"summary": "...", "labels": ["short topic label", ...]}"""

REPORT_PROMPT = """You write communication reports about a client relationship.
You receive JSON with "detailed_emails" (full bodies, most recent first),
"summary_emails" (older emails, summaries only) and "stats".
Only state what the emails support.

Return JSON: {"report": "markdown report", "highlights": ["key point", ...]}"""


class OpenAILanguageModel:
    """Summaries, reports and embeddings through the OpenAI SDK.

    SDK errors are translated into the Inbox Reports exception hierarchy so
    task failures read the same whichever model backs them.
    """

    def __init__(
        self,
        client: OpenAI,
        *,
        summary_model: str,
        report_model: str,
        embedding_model: str,
        report_max_tokens: int = 4000,
    ) -> None:
        self._client = client
        self._summary_model = summary_model
        self._report_model = report_model
        self._embedding_model = embedding_model
        self._report_max_tokens = report_max_tokens

    @classmethod
    def from_settings(cls, settings: InboxReportsSettings) -> OpenAILanguageModel:
        if not settings.openai_api_key:
            raise ConfigurationError("INBOX_REPORTS_OPENAI_API_KEY is not set")
        client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.llm_timeout_seconds,
            max_retries=settings.num_retries,
        )
        return cls(
            client,
            summary_model=settings.summary_model,
            report_model=settings.report_model,
            embedding_model=settings.embedding_model,
            report_max_tokens=settings.output_reservation_tokens,
        )

    def summarize(self, text: str) -> SummaryResult:
        content = self._chat(
            self._summary_model,
            SUMMARY_PROMPT,
            text,
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=SUMMARY_TEMPERATURE,
        )
        payload = _parse_json(content, "summary")
        summary = payload.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise ExternalCallError("Summary response had no summary")
        labels = payload.get("labels") or []
        return SummaryResult(
            summary=summary.strip(),
            labels=tuple(str(label) for label in labels if str(label).strip()),
        )

    def generate_report(self, material: dict[str, Any]) -> dict[str, Any]:
        content = self._chat(
            self._report_model,
            REPORT_PROMPT,
            json.dumps(material),
            max_tokens=self._report_max_tokens,
        )
        return _parse_json(content, "report")

    def embed(self, text: str) -> list[float]:
        kwargs: dict[str, Any] = {"model": self._embedding_model, "input": text}
        dimension = lookup(self._embedding_model).embedding_dimension
        if dimension:
            kwargs["dimensions"] = dimension
        response = self._call(lambda: self._client.embeddings.create(**kwargs), "embedding")
        if not response.data:
            raise ExternalCallError("Embedding response was empty")
        return list(response.data[0].embedding)

    def _chat(
        self,
        model: str,
        system_prompt: str,
        user_content: str,
        *,
        max_tokens: int,
        temperature: float | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = self._call(lambda: self._client.chat.completions.create(**kwargs), model)
        if not response.choices or not response.choices[0].message.content:
            raise ExternalCallError(f"Empty response from {model}")
        if response.usage:
            logger.debug("%s used %d tokens", model, response.usage.total_tokens)
        return response.choices[0].message.content

    @staticmethod
    def _call(fn: Callable[[], T], context: str) -> T:
        try:
            return fn()
        except openai.AuthenticationError as e:
            raise AuthenticationError(f"OpenAI rejected the API key ({context}): {e}") from e
        except openai.RateLimitError as e:
            raise RateLimitError(f"OpenAI rate limit ({context}): {e}") from e
        except openai.APITimeoutError as e:
            raise ExternalCallTimeoutError(f"OpenAI request timed out ({context})") from e
        except openai.OpenAIError as e:
            raise ExternalCallError(f"OpenAI request failed ({context}): {e}") from e


def _parse_json(content: str, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ExternalCallError(f"Invalid JSON in {what} response: {e}") from e
    if not isinstance(payload, dict):
        raise ExternalCallError(f"Expected a JSON object in {what} response")
    return payload
