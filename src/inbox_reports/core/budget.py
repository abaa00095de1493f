"""Token budgeting: how many emails get full detail, how many get metadata only.

The calculation works from the report model's context window:

1. available = context window - tokens reserved for the model's output
2. usable    = available minus a safety margin (5%)
3. metadata  = 10% of usable, for headers and instructions
4. the rest is split 60/40 between detailed and summary-only emails
5. each share is divided by a per-email token estimate to get counts
6. counts are clamped to the corpus size; body length is whatever the
   detailed share allows per detailed email, bounded to [300, 10000] chars
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from inbox_reports.core.capacity import lookup
from inbox_reports.core.exceptions import ConfigurationError, InvalidInputError
from inbox_reports.core.models import BudgetPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetPolicy:
    """Budgeting knobs, validated on construction."""

    safety_margin: float = 0.05
    metadata_fraction: float = 0.10
    detailed_share: float = 0.60
    detailed_email_tokens: int = 800
    summary_email_tokens: int = 150
    min_body_chars: int = 300
    max_body_chars: int = 10_000
    min_available_tokens: int = 500

    # Flat policy used when the calculation itself breaks down
    fallback_detailed_count: int = 15
    fallback_summary_count: int = 50
    fallback_body_chars: int = 600

    def __post_init__(self) -> None:
        for name in ("safety_margin", "metadata_fraction"):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1), got {value}")
        if not 0.0 <= self.detailed_share <= 1.0:
            raise ConfigurationError(
                f"detailed_share must be within [0, 1], got {self.detailed_share}"
            )
        for name in (
            "detailed_email_tokens",
            "summary_email_tokens",
            "min_body_chars",
            "min_available_tokens",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.max_body_chars < self.min_body_chars:
            raise ConfigurationError("max_body_chars must be >= min_body_chars")
        if self.fallback_detailed_count < 0 or self.fallback_summary_count < 0:
            raise ConfigurationError("fallback counts must be non-negative")
        if self.fallback_body_chars < self.min_body_chars:
            raise ConfigurationError("fallback_body_chars must be >= min_body_chars")

    @property
    def summary_share(self) -> float:
        return 1.0 - self.detailed_share


def _validate_inputs(total_emails: int, output_reservation_tokens: int) -> None:
    if total_emails < 0:
        raise InvalidInputError(f"total_emails must be non-negative, got {total_emails}")
    if output_reservation_tokens < 0:
        raise InvalidInputError(
            f"output_reservation_tokens must be non-negative, got {output_reservation_tokens}"
        )


def _coverage(covered: int, total: int) -> float:
    if total == 0:
        return 100.0
    return min(covered / total * 100, 100.0)


def compute_budget(
    total_emails: int,
    output_reservation_tokens: int,
    model_name: str | None,
    policy: BudgetPolicy | None = None,
) -> BudgetPlan:
    """Compute detailed/summary counts and the per-email body cap.

    Args:
        total_emails: Number of emails in the corpus.
        output_reservation_tokens: Tokens kept free for the model's answer.
        model_name: Report model; unknown names use the default capacity.
        policy: Budgeting knobs (defaults to BudgetPolicy()).

    Returns:
        BudgetPlan for this corpus size.

    Raises:
        InvalidInputError: If either count is negative.
    """
    _validate_inputs(total_emails, output_reservation_tokens)
    policy = policy or BudgetPolicy()
    capacity = lookup(model_name)

    available = capacity.context_window_tokens - output_reservation_tokens
    if available <= 0:
        logger.warning(
            "Output reservation %d exceeds %s context window %d, clamping to %d tokens",
            output_reservation_tokens,
            capacity.name,
            capacity.context_window_tokens,
            policy.min_available_tokens,
        )
        available = policy.min_available_tokens

    usable = available - math.floor(available * policy.safety_margin)
    metadata = math.floor(usable * policy.metadata_fraction)
    email_budget = usable - metadata

    detailed_budget = email_budget * policy.detailed_share
    summary_budget = email_budget * policy.summary_share

    optimal_detailed = math.floor(detailed_budget / policy.detailed_email_tokens)
    optimal_summary = math.floor(summary_budget / policy.summary_email_tokens)

    detailed_count = min(optimal_detailed, total_emails)
    summary_count = min(optimal_summary, total_emails - detailed_count)

    per_email_chars = math.floor(
        detailed_budget * capacity.chars_per_token / max(detailed_count, 1)
    )
    max_body_chars = max(min(per_email_chars, policy.max_body_chars), policy.min_body_chars)

    covered = detailed_count + summary_count
    return BudgetPlan(
        model_name=capacity.name,
        context_window_tokens=capacity.context_window_tokens,
        output_reservation_tokens=output_reservation_tokens,
        available_tokens=available,
        usable_tokens=usable,
        metadata_tokens=metadata,
        email_budget_tokens=email_budget,
        detailed_budget_tokens=detailed_budget,
        summary_budget_tokens=summary_budget,
        detailed_email_count=detailed_count,
        summary_email_count=summary_count,
        max_body_chars=max_body_chars,
        total_emails=total_emails,
        total_emails_covered=covered,
        coverage_percent=_coverage(covered, total_emails),
    )


def static_fallback_plan(
    total_emails: int,
    output_reservation_tokens: int = 0,
    model_name: str | None = None,
    policy: BudgetPolicy | None = None,
) -> BudgetPlan:
    """Flat 15/50/600 plan, clamped to the corpus size."""
    policy = policy or BudgetPolicy()
    total = max(total_emails, 0)
    detailed_count = min(policy.fallback_detailed_count, total)
    summary_count = min(policy.fallback_summary_count, total - detailed_count)
    covered = detailed_count + summary_count
    capacity = lookup(model_name)
    return BudgetPlan(
        model_name=capacity.name,
        context_window_tokens=capacity.context_window_tokens,
        output_reservation_tokens=output_reservation_tokens,
        available_tokens=0,
        usable_tokens=0,
        metadata_tokens=0,
        email_budget_tokens=0,
        detailed_budget_tokens=0.0,
        summary_budget_tokens=0.0,
        detailed_email_count=detailed_count,
        summary_email_count=summary_count,
        max_body_chars=policy.fallback_body_chars,
        total_emails=total,
        total_emails_covered=covered,
        coverage_percent=_coverage(covered, total),
        is_fallback=True,
    )


def plan_or_fallback(
    total_emails: int,
    output_reservation_tokens: int,
    model_name: str | None,
    policy: BudgetPolicy | None = None,
) -> BudgetPlan:
    """compute_budget(), degrading to static_fallback_plan() on arithmetic failure.

    Contract violations (negative inputs) still raise InvalidInputError.
    """
    _validate_inputs(total_emails, output_reservation_tokens)
    try:
        return compute_budget(total_emails, output_reservation_tokens, model_name, policy)
    except ArithmeticError as e:
        logger.warning("Budget calculation failed, using static fallback plan: %s", e)
        return static_fallback_plan(total_emails, output_reservation_tokens, model_name, policy)
