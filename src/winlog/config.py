from __future__ import annotations

import os
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "winlog" / "winlog.db"


def _default_owner() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "local"


class Settings(BaseSettings):
    db_path: Path = Field(DEFAULT_DB_PATH)
    owner_id: str = Field(default_factory=_default_owner)
    timezone: str | None = Field(None)

    entry_window: int = Field(500, ge=1)
    heatmap_days: int = Field(140, ge=1)

    log_level: str = Field("INFO")

    model_config = SettingsConfigDict(env_prefix="WINLOG_", env_file=".env", extra="ignore")

    @property
    def tzinfo(self) -> tzinfo | None:
        """Configured zone, or None for the system's local zone."""
        return ZoneInfo(self.timezone) if self.timezone else None


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
