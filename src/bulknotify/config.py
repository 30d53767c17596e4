"""Configuration management for bulknotify."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple, Type

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .exceptions import ConfigurationError


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = Field("sqlite:///bulknotify.db", description="SQLAlchemy database URL")
    echo: bool = Field(False, description="Enable SQL query logging")


class DispatchConfig(BaseModel):
    """Bulk dispatch throttling and reconciliation settings."""

    queue_name: str = Field("bulk_notifications", description="Queue carrying bulk tasks")
    batch_size: int = Field(100, ge=1, description="Recipients per batch")
    batch_interval_ms: int = Field(1000, ge=0, description="Pause between batches in milliseconds")
    stale_after_minutes: int = Field(30, ge=1, description="Age after which reconcile treats a task as stuck")


class QueueConfig(BaseModel):
    """Dispatch queue backend settings."""

    backend: Literal["database", "memory", "redis"] = Field("database", description="Queue backend")
    redis_url: str = Field("redis://localhost:6379/0", description="Redis URL for the redis backend")
    poll_interval: float = Field(1.0, gt=0, description="Seconds between polls when the queue is empty")


class EmailConfig(BaseModel):
    """Email channel configuration."""

    provider: Literal["mock", "sendgrid"] = Field("mock", description="Email provider")
    from_email: str = Field("noreply@example.com", description="Sender address")


class SendGridConfig(BaseModel):
    """SendGrid configuration."""

    api_key: Optional[str] = Field(None, description="SendGrid API key")


class SmsConfig(BaseModel):
    """SMS channel configuration."""

    provider: Literal["mock", "twilio"] = Field("mock", description="SMS provider")


class TwilioConfig(BaseModel):
    """Twilio configuration."""

    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None


class PushConfig(BaseModel):
    """Push channel configuration."""

    provider: Literal["mock", "fcm"] = Field("mock", description="Push provider")


class FcmConfig(BaseModel):
    """Firebase Cloud Messaging configuration."""

    project_id: Optional[str] = None
    access_token: Optional[str] = Field(None, description="OAuth2 bearer token for the FCM v1 API")


class TemplateConfig(BaseModel):
    """Named template configuration."""

    templates_dir: str = Field("templates", description="Directory containing notification templates")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Logging level")
    format: str = Field(
        "%(asctime)s %(levelname)s %(name)s [%(task_id)s] %(message)s",
        description="Log format string"
    )
    file_path: Optional[str] = Field(None, description="Path to log file")
    max_file_size: int = Field(10 * 1024 * 1024, description="Maximum log file size in bytes")
    backup_count: int = Field(5, description="Number of backup log files to keep")
    console_output: bool = Field(True, description="Enable console logging")


class Settings(BaseSettings):
    """Main application settings."""

    app_name: str = Field("bulknotify", description="Application name")
    debug: bool = Field(False, description="Enable debug mode")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    sendgrid: SendGridConfig = Field(default_factory=SendGridConfig)
    sms: SmsConfig = Field(default_factory=SmsConfig)
    twilio: TwilioConfig = Field(default_factory=TwilioConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    fcm: FcmConfig = Field(default_factory=FcmConfig)
    templates: TemplateConfig = Field(default_factory=TemplateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="BULKNOTIFY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from the config file.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def _load_config_file(config_file: Path) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file."""
    if not config_file.exists():
        return {}

    with open(config_file, 'r') as f:
        if config_file.suffix.lower() in ['.yaml', '.yml']:
            return yaml.safe_load(f) or {}
        elif config_file.suffix.lower() == '.json':
            return json.load(f)
        else:
            raise ConfigurationError(f"Unsupported config file format: {config_file.suffix}")


@lru_cache()
def load_settings(
    config_dir: Optional[Path] = None,
    env_file: Optional[str] = None,
    config_file: Optional[str] = None
) -> Settings:
    """
    Load application settings from multiple sources.

    Sources are loaded in order of precedence (later sources override earlier):
    1. Default values
    2. Configuration file (YAML/JSON)
    3. Environment file (.env)
    4. Environment variables

    Args:
        config_dir: Directory containing config files (default: current directory)
        env_file: Path to environment file (default: .env in config_dir)
        config_file: Path to configuration file (default: config.yaml in config_dir)

    Returns:
        Loaded settings instance
    """
    if config_dir is None:
        config_dir = Path.cwd()

    env_path = Path(env_file) if env_file else config_dir / ".env"
    config_path = Path(config_file) if config_file else config_dir / "config.yaml"

    # Variables already present in the process environment are not overridden.
    if env_path.exists():
        load_dotenv(env_path, override=False)

    file_config = _load_config_file(config_path)

    try:
        return Settings(**file_config)
    except ValidationError as e:
        raise ConfigurationError(f"Failed to load configuration: {e}", cause=e) from e


__all__ = [
    "DatabaseConfig",
    "DispatchConfig",
    "QueueConfig",
    "EmailConfig",
    "SendGridConfig",
    "SmsConfig",
    "TwilioConfig",
    "PushConfig",
    "FcmConfig",
    "TemplateConfig",
    "LoggingConfig",
    "Settings",
    "load_settings",
]
