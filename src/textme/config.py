from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TextMeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="textme_",
        extra="ignore",
        env_file=".env",
        enable_decoding=False,
    )

    allowed_senders: list[str] = Field(default_factory=list)

    # Sendblue transport
    sendblue_api_key: str = ""
    sendblue_api_secret: str = ""
    sendblue_phone_number: str = ""
    sendblue_base_url: str = "https://api.sendblue.com/api"
    sendblue_timeout_seconds: float = 30.0
    sendblue_fetch_limit: int = 50

    # Voice-note transcription (disabled when the key is empty)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"

    db_path: Path = Path.home() / ".config" / "textme" / "textme.db"
    pid_file: Path = Path.home() / ".config" / "textme" / "textme.pid"
    log_file: str = ""  # empty = stderr only

    poll_interval_seconds: float = 5.0
    initial_lookback_seconds: float = 60.0
    sweep_interval_seconds: float = 3600.0
    processed_retention_days: int = 7
    conversation_window: int = 20

    # Claude worker
    claude_command: str = "claude"
    claude_model: str = ""  # empty = claude default
    claude_permission_mode: str = "bypassPermissions"
    claude_allowed_tools: list[str] = Field(default_factory=list)
    claude_system_prompt: str = (
        "You are being driven over SMS by a single operator. "
        "Keep replies short and plain text; avoid heavy markdown."
    )
    worker_timeout_seconds: float = 600.0
    worker_max_retries: int = 2
    worker_retry_base_delay_seconds: float = 2.0
    activity_interval_seconds: float = 1.0

    # Approval gating (requires a non-bypass permission mode)
    approval_mode: bool = False
    approval_ttl_minutes: int = 5

    max_response_chars: int = 15000
    scratch_root: str = "/tmp"
    shutdown_grace_seconds: float = 30.0
    send_startup_notice: bool = True

    admin_host: str = "127.0.0.1"
    admin_port: int = 8788
    admin_api_token: str = ""  # empty = auth disabled

    @field_validator("allowed_senders", "claude_allowed_tools", mode="before")
    @classmethod
    def _parse_csv_or_json_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return value

    @field_validator("db_path", "pid_file", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @property
    def operator_number(self) -> str:
        """First whitelisted number; receives startup and crash notices."""
        return self.allowed_senders[0] if self.allowed_senders else ""
