"""Inbox Reports - adaptive content budgeting and background email processing."""

from inbox_reports.core.budget import BudgetPolicy, compute_budget, plan_or_fallback
from inbox_reports.core.models import (
    BudgetPlan,
    EmailRef,
    TaskStatus,
    TaskStatusReport,
    TaskType,
    TierSelection,
)
from inbox_reports.core.tiers import select_tiers
from inbox_reports.pipeline.engine import InboxReportsEngine
from inbox_reports.pipeline.scheduler import TaskScheduler
from inbox_reports.storage.task_store import TaskRecordStore

__all__ = [
    "BudgetPlan",
    "BudgetPolicy",
    "EmailRef",
    "InboxReportsEngine",
    "TaskRecordStore",
    "TaskScheduler",
    "TaskStatus",
    "TaskStatusReport",
    "TaskType",
    "TierSelection",
    "compute_budget",
    "plan_or_fallback",
    "select_tiers",
]
