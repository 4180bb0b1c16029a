"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CLINBOX_"


class ClinboxSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Local state
    database_path: Path = Path("data/clinbox.db")
    tasks_path: Path = Path("data/tasks.json")

    # Triage window
    max_emails: int = 20
    prefetch_depth: int = 3
    presentation_wait_seconds: float = 5.0

    # AI (any OpenAI-compatible endpoint)
    ai_api_key: str = ""
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_model_analysis: str = "google/gemini-2.0-flash-001"
    ai_model_reply: str = "anthropic/claude-sonnet-4"
    ai_language: str = "English"
    analysis_timeout_seconds: float = 30.0
    analysis_retry_backoff_seconds: float = 1.0
    analysis_body_chars: int = 1500
    reply_body_chars: int = 2000

    # Gmail API timeouts, rate limiting & retry
    remote_timeout_seconds: float = 30.0
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    inter_page_delay_seconds: float = 0.2
    num_retries: int = 3

    # Follow-up actions
    archive_after_task: bool = True
    archive_after_reply: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = Path("data/clinbox.log")

    def ensure_directories(self) -> None:
        """Create data and credentials directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.tasks_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        if self.log_file is not None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def missing_settings(self) -> list[str]:
        """Names of settings that must be provided before an interactive run."""
        missing: list[str] = []
        if not self.credentials_path.exists():
            missing.append("credentials_path")
        if not self.ai_api_key:
            missing.append("ai_api_key")
        return missing

    def is_valid(self) -> bool:
        return not self.missing_settings()
