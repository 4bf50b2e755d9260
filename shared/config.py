"""Shared configuration utilities."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from shared.encryption import EncryptionService

logger = logging.getLogger(__name__)

SOURCE_NAMES = ("calendar", "shortcut", "github", "todoist", "figma")


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_database_url() -> str:
    """Get the record store database URL from environment."""
    return get_env("DATABASE_URL", "sqlite:///data/mission-control.db")


def get_config_path() -> str:
    """Get the path of the JSON configuration file."""
    return get_env("MISSION_CONTROL_CONFIG", "config.json")


def get_schedule_timezone() -> str:
    """Get the timezone the sync schedules are evaluated in."""
    return get_env("SCHEDULE_TIMEZONE", "Europe/London")


def get_alert_config() -> dict:
    """Get failure alert configuration from environment."""
    return {
        "enabled": get_env("ENABLE_ALERTS", "false").lower() == "true",
        "webhook_url": get_env("ALERT_WEBHOOK_URL"),
        "failure_threshold": int(get_env("ALERT_FAILURE_THRESHOLD", "3")),
    }


def _reveal_secret(value: str, info: ValidationInfo) -> str:
    """Decrypt ``enc:`` values using the encryption service passed as context."""
    if not value:
        return ""
    encryption_service = (info.context or {}).get("encryption_service")
    if encryption_service is None:
        return value
    return encryption_service.reveal(value)


class _Settings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class CalendarSettings(_Settings):
    personal_ical_url: str = Field("", alias="personalIcalUrl")
    work_ical_url: str = Field("", alias="workIcalUrl")

    @field_validator("personal_ical_url", "work_ical_url")
    @classmethod
    def reveal_secret(cls, value: str, info: ValidationInfo) -> str:
        return _reveal_secret(value, info)

    @property
    def feeds(self) -> Dict[str, str]:
        """Configured feed URLs keyed by calendar type."""
        feeds = {}
        if self.personal_ical_url.strip():
            feeds["personal"] = self.personal_ical_url.strip()
        if self.work_ical_url.strip():
            feeds["work"] = self.work_ical_url.strip()
        return feeds

    @property
    def enabled(self) -> bool:
        return bool(self.feeds)


class ShortcutSettings(_Settings):
    api_token: str = Field("", alias="apiToken")

    @field_validator("api_token")
    @classmethod
    def reveal_secret(cls, value: str, info: ValidationInfo) -> str:
        return _reveal_secret(value, info)

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)


class GitHubSettings(_Settings):
    personal_access_token: str = Field("", alias="personalAccessToken")
    private_repo: str = Field("", alias="privateRepo")
    repos: List[str] = Field(default_factory=list)

    @field_validator("personal_access_token")
    @classmethod
    def reveal_secret(cls, value: str, info: ValidationInfo) -> str:
        return _reveal_secret(value, info)

    @property
    def repositories(self) -> List[str]:
        """Repositories to watch; the legacy single ``privateRepo`` is folded in."""
        repos = [repo.strip() for repo in self.repos if repo.strip()]
        if self.private_repo.strip() and self.private_repo.strip() not in repos:
            repos.append(self.private_repo.strip())
        return repos

    @property
    def enabled(self) -> bool:
        return bool(self.personal_access_token)


class TodoistSettings(_Settings):
    api_token: str = Field("", alias="apiToken")

    @field_validator("api_token")
    @classmethod
    def reveal_secret(cls, value: str, info: ValidationInfo) -> str:
        return _reveal_secret(value, info)

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)


class FigmaSettings(_Settings):
    api_token: str = Field("", alias="apiToken")
    file_keys: List[str] = Field(default_factory=list, alias="fileKeys")

    @field_validator("api_token")
    @classmethod
    def reveal_secret(cls, value: str, info: ValidationInfo) -> str:
        return _reveal_secret(value, info)

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)


class AppConfig(_Settings):
    """Static configuration of which sources are enabled and their credentials.

    Instances are immutable; reconfiguring the application means loading a new
    AppConfig and building a new coordinator from it.
    """

    is_configured: bool = Field(False, alias="isConfigured")
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)
    shortcut: ShortcutSettings = Field(default_factory=ShortcutSettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    todoist: TodoistSettings = Field(default_factory=TodoistSettings)
    figma: FigmaSettings = Field(default_factory=FigmaSettings)

    def source_settings(self, source: str) -> _Settings:
        if source not in SOURCE_NAMES:
            raise ValueError(f"Unknown source: {source}")
        return getattr(self, source)

    def enabled_sources(self) -> List[str]:
        """Sources with credentials present, in a stable order."""
        if not self.is_configured:
            return []
        return [name for name in SOURCE_NAMES if self.source_settings(name).enabled]

    @classmethod
    def from_dict(
        cls,
        data: dict,
        encryption_service: Optional[EncryptionService] = None
    ) -> "AppConfig":
        return cls.model_validate(data, context={"encryption_service": encryption_service})


def load_config(
    path: Optional[str] = None,
    encryption_service: Optional[EncryptionService] = None
) -> AppConfig:
    """
    Load the application configuration from a JSON file.

    A missing file yields an unconfigured application. Secrets stored with the
    ``enc:`` prefix are decrypted with the given encryption service.

    Args:
        path: Path to config.json; defaults to MISSION_CONTROL_CONFIG
        encryption_service: Service used to decrypt sealed secrets

    Returns:
        Parsed AppConfig
    """
    config_path = Path(path or get_config_path())
    if not config_path.exists():
        logger.warning(f"No configuration found at {config_path}, sources disabled until setup")
        return AppConfig()

    with config_path.open(encoding="utf-8") as fh:
        data = json.load(fh)

    if encryption_service is None and get_env("CONFIG_ENCRYPTION_KEY"):
        encryption_service = EncryptionService()

    config = AppConfig.from_dict(data, encryption_service=encryption_service)
    logger.info(f"Loaded configuration from {config_path}: enabled sources {config.enabled_sources()}")
    return config
