"""Runtime settings for the task loop."""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskSettings(BaseSettings):
    """Settings loaded from TASKLOOP_* environment variables."""

    # Model
    model: str = "claude-sonnet-4-20250514"
    model_provider: Optional[str] = "anthropic"
    model_context_window: int = Field(default=200_000, gt=0)
    model_max_tokens: Optional[int] = Field(default=8192, gt=0)
    model_supports_images: bool = True
    model_input_price: float = Field(default=3.0, ge=0.0)
    model_output_price: float = Field(default=15.0, ge=0.0)

    # Request loop
    consecutive_mistake_limit: int = Field(default=3, ge=0)
    default_mode: str = "code"

    # Context window
    auto_condense_context: bool = True
    auto_condense_context_percent: int = Field(default=100, ge=5, le=100)
    profile_thresholds: Dict[str, int] = Field(default_factory=dict)
    custom_condensing_prompt: Optional[str] = None

    # Approval and retry
    auto_approval_enabled: bool = False
    always_approve_resubmit: bool = False
    allowed_max_requests: Optional[int] = Field(default=None, ge=0)
    allowed_max_cost: Optional[float] = Field(default=None, ge=0.0)
    request_delay_seconds: int = Field(default=5, ge=0)
    rate_limit_seconds: float = Field(default=0.0, ge=0.0)

    # Suspension points
    ask_poll_interval: float = Field(default=0.1, gt=0.0)
    pause_poll_interval: float = Field(default=1.0, gt=0.0)
    subtask_wait_timeout: Optional[float] = Field(default=None, gt=0.0)
    mode_switch_delay: float = Field(default=0.5, ge=0.0)

    # Persistence
    storage_dir: Optional[str] = None

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "taskloop"
    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOP_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        protected_namespaces=(),
    )

    def langfuse_enabled(self) -> bool:
        return bool(self.langfuse_public_key and self.langfuse_secret_key)


@lru_cache(maxsize=1)
def get_settings() -> TaskSettings:
    return TaskSettings()
