"""Fit a corpus into the report model's context window and ask for a report."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from inbox_reports.config.settings import InboxReportsSettings
from inbox_reports.core.budget import BudgetPolicy, plan_or_fallback
from inbox_reports.core.collaborators import LanguageModel
from inbox_reports.core.exceptions import ExternalCallError
from inbox_reports.core.models import EmailRef, Report, TierSelection
from inbox_reports.core.tiers import select_tiers
from inbox_reports.pipeline.timeouts import call_with_timeout

logger = logging.getLogger(__name__)


class ReportBuilder:
    """Budget, tier and hand a corpus to the language model."""

    def __init__(
        self,
        llm: LanguageModel,
        settings: InboxReportsSettings,
        policy: BudgetPolicy | None = None,
    ) -> None:
        self._llm = llm
        self._settings = settings
        self._policy = policy or settings.budget_policy()

    def prepare(self, corpus: Sequence[EmailRef]) -> TierSelection:
        """Plan the budget for this corpus and split it into tiers."""
        plan = plan_or_fallback(
            len(corpus),
            self._settings.output_reservation_tokens,
            self._settings.report_model,
            self._policy,
        )
        selection = select_tiers(corpus, plan)
        logger.info(
            "Report material: %d detailed, %d summary-only, %d dropped (%.1f%% coverage)",
            len(selection.detailed),
            len(selection.summary_only),
            selection.dropped_count,
            plan.coverage_percent,
        )
        return selection

    def generate(self, corpus: Sequence[EmailRef]) -> Report:
        """Generate a report over the corpus.

        Raises:
            ExternalCallError: If the model fails, times out, or returns no report.
        """
        selection = self.prepare(corpus)
        response = call_with_timeout(
            self._llm.generate_report,
            self.material(selection),
            timeout_seconds=self._settings.llm_timeout_seconds,
            operation="generate report",
        )
        report_text = response.get("report") if isinstance(response, dict) else None
        if not report_text:
            raise ExternalCallError("Language model returned no report")
        return Report(
            report=report_text,
            highlights=tuple(response.get("highlights") or ()),
            plan=selection.plan,
            email_count=len(corpus),
        )

    @staticmethod
    def material(selection: TierSelection) -> dict[str, Any]:
        """JSON-ready view of a tier selection for the language model."""
        plan = selection.plan
        return {
            "detailed_emails": [
                {
                    "id": email.id,
                    "subject": email.subject,
                    "from": email.sender,
                    "to": email.to,
                    "date": email.date.isoformat(),
                    "body": email.body,
                    "summary": email.summary,
                    "labels": list(email.labels),
                }
                for email in selection.detailed
            ],
            "summary_emails": [
                {
                    "id": email.id,
                    "subject": email.subject,
                    "from": email.sender,
                    "to": email.to,
                    "date": email.date.isoformat(),
                    "summary": email.summary,
                    "labels": list(email.labels),
                }
                for email in selection.summary_only
            ],
            "stats": {
                "total_emails": plan.total_emails,
                "covered_emails": plan.total_emails_covered,
                "coverage_percent": round(plan.coverage_percent, 1),
                "dropped_emails": selection.dropped_count,
            },
        }
