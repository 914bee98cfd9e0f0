"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "portal-agent"
    app_env: str = "dev"
    log_level: str = "INFO"

    # One-time-code relay
    relay_host: str = "0.0.0.0"
    relay_port: int = Field(default=3000, ge=1, le=65535)
    otp_ttl_s: float = Field(default=600.0, gt=0)
    otp_cleanup_interval_s: float = Field(default=60.0, gt=0)

    # Session persistence
    session_dir: Path = PROJECT_ROOT / ".sessions"
    session_max_age_s: float = Field(default=24 * 3600.0, gt=0)
    keep_alive_interval_s: float = Field(default=300.0, gt=0)

    # Learned patterns
    pattern_backend: str = "json"
    patterns_path: Path = PROJECT_ROOT / "data" / "patterns.json"
    database_url: str = ""

    # Browser
    headless: bool = True
    viewport_width: int = Field(default=1920, ge=320)
    viewport_height: int = Field(default=1080, ge=240)
    screenshot_dir: Path = PROJECT_ROOT / "screenshots"

    # Authentication ceilings
    login_probe_timeout_ms: int = Field(default=5000, ge=0)
    field_probe_timeout_ms: int = Field(default=2000, ge=0)
    settle_delay_ms: int = Field(default=3000, ge=0)
    otp_poll_interval_s: float = Field(default=5.0, gt=0)
    otp_timeout_s: float = Field(default=300.0, gt=0)
    otp_min_age_ms: int = Field(default=0, ge=0)
    manual_second_factor_timeout_s: float = Field(default=300.0, gt=0)
    auth_completion_timeout_ms: int = Field(default=30000, ge=0)

    # Strategy execution
    step_timeout_ms: int = Field(default=10000, ge=0)
    step_max_retries: int = Field(default=1, ge=0)
    download_timeout_ms: int = Field(default=60000, ge=0)

    # Vision oracle
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    openai_api_key: str = ""

    # Output dispatch
    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_base_url: str = "https://api.mailgun.net/v3"
    mail_from: str = ""
    dispatch_timeout_s: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="PORTAL_AGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_mail_from(self) -> str:
        if self.mail_from:
            return self.mail_from
        return f"Portal Agent <noreply@{self.mailgun_domain}>" if self.mailgun_domain else ""


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
