"""Configuration for the chat store and its HTTP surface.

Values come from the environment (prefix ``CHATLOOM_``) or an optional
``.env`` file.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevelEnum(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATLOOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Storage =====
    data_dir: Path = Field(default=Path("data"), description="Root data directory")
    legacy_chats_dir: Optional[Path] = Field(
        default=None, description="Old flat chat directory imported on startup"
    )

    # ===== Conversation =====
    history_max_messages: int = Field(default=20, description="Messages sent as prompt history")
    preview_length: int = Field(default=50, description="Content preview length in tree views")
    system_prompt: str = Field(
        default="You are a helpful assistant. Be concise, clear, and correct.",
        description="System prompt prepended to every model context",
    )

    # ===== AI provider =====
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model name")

    # ===== Logging =====
    log_level: LogLevelEnum = Field(default=LogLevelEnum.INFO, description="Logging level")

    @property
    def chats_dir(self) -> Path:
        return self.data_dir / "chats"

    @field_validator("history_max_messages", "preview_length")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be a positive integer")
        return v
