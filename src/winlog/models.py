"""Records shared by the store and the aggregation engine."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

TAG_PATTERN = re.compile(r"#\w+")

# Code points, not bytes.
MAX_TEXT_LENGTH = 280


def extract_tags(text: str) -> list[str]:
    """Return the ``#word`` tags in ``text``, deduplicated, first-seen order."""
    return list(dict.fromkeys(TAG_PATTERN.findall(text)))


class Entry(BaseModel):
    """A single achievement.

    ``created_at`` is None only for an optimistic entry that the store has
    not confirmed yet.
    """

    id: str
    owner_id: str
    text: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    is_daily_top: bool = False
    is_weekly_top: bool = False
    is_monthly_top: bool = False

    @property
    def is_pending(self) -> bool:
        return self.created_at is None

    @property
    def is_any_top(self) -> bool:
        return self.is_daily_top or self.is_weekly_top or self.is_monthly_top


class ImportedEntry(BaseModel):
    """Entry from a JSONL export, written to the log as-is.

    ID is computed from content hash when not provided, so importing the
    same file twice is a no-op.
    """

    text: str
    created_at: str
    id: str | None = None
    tags: list[str] | None = None
    is_daily_top: bool = False
    is_weekly_top: bool = False
    is_monthly_top: bool = False

    def compute_id(self, owner_id: str) -> str:
        if self.id:
            return self.id
        content = "|".join([owner_id, self.created_at, self.text])
        return hashlib.sha256(content.encode()).hexdigest()[:32]


class Aggregate(BaseModel):
    """Per-owner summary derived from the entry log.

    Maps keep insertion order; the heatmap breaks tag ties by it.
    """

    owner_id: str
    daily_counts: dict[str, int] = Field(default_factory=dict)
    daily_tag_counts: dict[str, dict[str, int]] = Field(default_factory=dict)
    streak: int = 0
    last_update: datetime | None = None


class Snapshot(BaseModel):
    """Current aggregate plus the most recent entries, newest first."""

    aggregate: Aggregate
    entries: list[Entry] = Field(default_factory=list)


class UserSettings(BaseModel):
    """Per-owner preferences."""

    lang: Literal["sk", "en"] = "sk"
    accent_color: str = Field("#F97316", pattern=r"^#[0-9A-Fa-f]{6}$")
    haptic_enabled: bool = True
    daily_goal: int = Field(3, ge=1)
    show_streak: bool = True
    show_heatmap: bool = True
