"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from inbox_reports.core.budget import BudgetPolicy


class InboxReportsSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="INBOX_REPORTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Gmail OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Gmail API settings
    max_results_per_page: int = 100
    batch_size: int = 50

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    inter_page_delay_seconds: float = 0.2
    num_retries: int = 3

    # Database
    database_path: Path = Path("data/inbox_reports.db")

    # Language models
    openai_api_key: str | None = None
    summary_model: str = "gpt-3.5-turbo"
    report_model: str = "gpt-4o-2024-08-06"
    embedding_model: str = "text-embedding-3-small"
    output_reservation_tokens: int = 4000

    # External call deadlines
    llm_timeout_seconds: float = 60.0
    email_source_timeout_seconds: float = 120.0
    persistence_timeout_seconds: float = 30.0

    # Background tasks
    max_workers: int = 4
    task_ttl_seconds: float = 1800.0
    task_stale_after_seconds: float = 600.0
    ingest_batch_size: int = 50
    embedding_progress_batch_size: int = 10
    summary_batch_limit: int = 20
    embedding_batch_limit: int = 50
    summary_body_chars: int = 4000
    embedding_input_chars: int = 6000

    # Budget policy
    budget_safety_margin: float = 0.05
    budget_metadata_fraction: float = 0.10
    budget_detailed_share: float = 0.60
    budget_detailed_email_tokens: int = 800
    budget_summary_email_tokens: int = 150
    budget_min_body_chars: int = 300
    budget_max_body_chars: int = 10_000

    # Logging
    log_level: str = "INFO"

    def model_for_role(self, role: str) -> str:
        """Configured model name for 'summary', 'report' or 'embedding'."""
        return {
            "summary": self.summary_model,
            "report": self.report_model,
            "embedding": self.embedding_model,
        }[role]

    def budget_policy(self) -> BudgetPolicy:
        """Build the validated budgeting policy from these settings."""
        return BudgetPolicy(
            safety_margin=self.budget_safety_margin,
            metadata_fraction=self.budget_metadata_fraction,
            detailed_share=self.budget_detailed_share,
            detailed_email_tokens=self.budget_detailed_email_tokens,
            summary_email_tokens=self.budget_summary_email_tokens,
            min_body_chars=self.budget_min_body_chars,
            max_body_chars=self.budget_max_body_chars,
        )

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
