"""Context window sizes and character/token ratios for known language models."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from inbox_reports.core.models import ModelCapacity

if TYPE_CHECKING:
    from inbox_reports.config.settings import InboxReportsSettings

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = ModelCapacity(
    name="default",
    display_name="Unknown model (conservative default)",
    context_window_tokens=16_000,
    chars_per_token=4.0,
)

MODEL_CAPACITIES: dict[str, ModelCapacity] = {
    capacity.name: capacity
    for capacity in (
        ModelCapacity("gpt-4o-2024-08-06", "GPT-4o (Aug 2024)", 128_000, 4.0, None, 0.005, 0.015),
        ModelCapacity("gpt-4o", "GPT-4o", 128_000, 4.0, None, 0.005, 0.015),
        ModelCapacity("gpt-4-turbo", "GPT-4 Turbo", 128_000, 4.0, None, 0.01, 0.03),
        ModelCapacity("gpt-4", "GPT-4", 8_192, 4.0, None, 0.03, 0.06),
        ModelCapacity("gpt-3.5-turbo", "GPT-3.5 Turbo", 16_385, 4.0, None, 0.0005, 0.0015),
        ModelCapacity(
            "text-embedding-3-small", "Text Embedding 3 Small", 8_191, 4.0, 1536, 0.0001, 0.0
        ),
        ModelCapacity(
            "text-embedding-3-large", "Text Embedding 3 Large", 8_191, 4.0, 3072, 0.00013, 0.0
        ),
    )
}

MODEL_ROLES = ("summary", "report", "embedding")


def lookup(model_name: str | None) -> ModelCapacity:
    """Return the capacity for a model name, or DEFAULT_CAPACITY if unknown.

    Never raises: callers must always be able to compute some budget.
    """
    key = (model_name or "").strip().lower()
    capacity = MODEL_CAPACITIES.get(key)
    if capacity is None:
        logger.debug("Unknown model %r, using default capacity", model_name)
        return DEFAULT_CAPACITY
    return capacity


def capacity_for_role(role: str, settings: InboxReportsSettings) -> ModelCapacity:
    """Resolve the configured model for a role ('summary', 'report', 'embedding')."""
    if role not in MODEL_ROLES:
        raise ValueError(f"Unknown model role: {role}")
    return lookup(settings.model_for_role(role))
