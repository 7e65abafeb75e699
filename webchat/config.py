"""Runtime settings for the web chat service.

Precedence, highest first: constructor arguments, ``WEBCHAT_*`` environment
variables, the JSON file named by ``WEBCHAT_CONFIG`` (default
``web_config.json`` in the working directory), then the field defaults.
"""

import os
import sys
from pathlib import Path
from typing import Any, List, Literal, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


DEFAULT_CONFIG_PATH = Path("web_config.json")
CONFIG_PATH_ENV = "WEBCHAT_CONFIG"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


def _default_worker_command() -> List[str]:
    return [sys.executable, "-m", "agent_worker"]


def config_file_path() -> Path:
    raw = os.getenv(CONFIG_PATH_ENV, "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_PATH


class WebChatSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WEBCHAT_",
        env_ignore_empty=True,
        extra="ignore",
    )

    web_chat_dir: Path = Field(
        default_factory=lambda: Path.home() / ".openclaw" / "web-chat"
    )
    worker_command: List[str] = Field(default_factory=_default_worker_command, min_length=1)
    model: str = Field(default="gpt-4.1", min_length=1)
    replay_buffer_size: int = Field(default=10000, ge=1, le=1_000_000)
    grace_period_sec: float = Field(default=300.0, ge=0, le=86400)
    terminate_timeout_sec: float = Field(default=5.0, ge=0, le=120)
    subscriber_queue_size: int = Field(default=0, ge=0, le=1_000_000)
    keepalive_interval_sec: float = Field(default=15.0, ge=0.5, le=300)
    agent_workspace_prefix: str = ""
    log_level: LogLevel = "INFO"

    @field_validator("web_chat_dir")
    @classmethod
    def _expand_web_chat_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("worker_command")
    @classmethod
    def _require_command_parts(cls, value: List[str]) -> List[str]:
        if not all(part.strip() for part in value):
            raise ValueError("worker_command entries must be non-empty")
        return value

    @field_validator("agent_workspace_prefix")
    @classmethod
    def _normalise_prefix(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        json_settings = JsonConfigSettingsSource(settings_cls, json_file=config_file_path())
        return init_settings, env_settings, json_settings


def load_settings() -> WebChatSettings:
    """Build settings from the environment and the JSON config file.

    Invalid values raise ``pydantic.ValidationError`` so a bad deployment
    fails at startup instead of running with surprising limits.
    """
    return WebChatSettings()
