"""SQLite entry log and aggregate store for winlog."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from winlog.dates import Granularity, format_timestamp, parse_timestamp
from winlog.errors import PersistenceError
from winlog.models import Aggregate, Entry, ImportedEntry, Snapshot, UserSettings
from winlog.top import flag_for

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    text TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    is_daily_top INTEGER DEFAULT 0,
    is_weekly_top INTEGER DEFAULT 0,
    is_monthly_top INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS aggregates (
    owner_id TEXT PRIMARY KEY,
    daily_counts TEXT NOT NULL DEFAULT '{}',
    daily_tag_counts TEXT NOT NULL DEFAULT '{}',
    streak INTEGER DEFAULT 0,
    last_update TEXT
);

CREATE TABLE IF NOT EXISTS user_settings (
    owner_id TEXT PRIMARY KEY,
    data TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_owner_created ON entries(owner_id, created_at);
"""

logger = logging.getLogger(__name__)

AGGREGATE_FIELDS = ("daily_counts", "daily_tag_counts", "streak", "last_update")

SnapshotCallback = Callable[[Snapshot], None]


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Re-raise sqlite errors as PersistenceError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Failed to %s: %s", action, e)
        raise PersistenceError(f"Failed to {action}: {e}") from e


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        owner_id=row["owner_id"],
        text=row["text"],
        tags=json.loads(row["tags"] or "[]"),
        created_at=parse_timestamp(row["created_at"]),
        is_daily_top=bool(row["is_daily_top"]),
        is_weekly_top=bool(row["is_weekly_top"]),
        is_monthly_top=bool(row["is_monthly_top"]),
    )


def _encode_aggregate_field(name: str, value: Any) -> Any:
    if name in ("daily_counts", "daily_tag_counts"):
        return json.dumps(value)
    if name == "last_update":
        return format_timestamp(value) if value is not None else None
    return int(value)


class EntryStore:
    """SQLite-backed entry log with one aggregate document per owner.

    Subscribers registered with :meth:`subscribe` receive a fresh snapshot
    after every committed change for their owner, on the calling thread.

    Not thread-safe. Each thread should have its own EntryStore instance.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._conn = conn
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subscribers: dict[str, list[tuple[SnapshotCallback, int | None]]] = {}
        self._init_schema()

    def __enter__(self) -> "EntryStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._subscribers.clear()
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with _storage_errors("initialize schema"):
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    @classmethod
    def open(cls, path: Path, *, clock: Callable[[], datetime] | None = None) -> EntryStore:
        """Open or create a database at the given path."""
        with _storage_errors(f"open {path}"):
            conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return cls(conn, clock=clock)

    @classmethod
    def open_in_memory(cls, *, clock: Callable[[], datetime] | None = None) -> EntryStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn, clock=clock)

    # Subscriptions

    def subscribe(
        self,
        owner_id: str,
        callback: SnapshotCallback,
        *,
        limit: int | None = None,
    ) -> Callable[[], None]:
        """Register ``callback`` for changes to ``owner_id``'s data.

        Args:
            owner_id: Owner whose entries and aggregate are watched.
            callback: Receives a Snapshot after each committed change.
            limit: Number of most recent entries included in snapshots.

        Returns:
            A function that removes the subscription.
        """
        subscription = (callback, limit)
        self._subscribers.setdefault(owner_id, []).append(subscription)

        def unsubscribe() -> None:
            subscribers = self._subscribers.get(owner_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

        return unsubscribe

    def _notify(self, owner_id: str) -> None:
        for callback, limit in list(self._subscribers.get(owner_id, [])):
            try:
                snapshot = self.snapshot(owner_id, limit=limit)
            except PersistenceError as e:
                logger.warning("Skipping snapshot delivery for %s: %s", owner_id, e)
                return
            callback(snapshot)

    def snapshot(self, owner_id: str, *, limit: int | None = None) -> Snapshot:
        """Current aggregate and most recent entries for an owner."""
        return Snapshot(
            aggregate=self.get_aggregate(owner_id),
            entries=self.get_entries(owner_id, limit=limit),
        )

    # Entries

    def create_entry(
        self,
        owner_id: str,
        text: str,
        tags: list[str],
        *,
        created_at: datetime | None = None,
    ) -> Entry:
        """Append an entry to the log. Returns the stored entry.

        The timestamp is assigned here unless ``created_at`` is given.
        """
        entry = Entry(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            text=text,
            tags=tags,
            created_at=created_at or self._clock(),
        )
        with _storage_errors("create entry"):
            self._conn.execute(
                """
                INSERT INTO entries (id, owner_id, text, tags, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.owner_id,
                    entry.text,
                    json.dumps(entry.tags),
                    format_timestamp(entry.created_at),
                ),
            )
            self._conn.commit()
        # Round-trip through the stored format
        entry = entry.model_copy(update={"created_at": parse_timestamp(format_timestamp(entry.created_at))})
        self._notify(owner_id)
        return entry

    def insert_imported_entry(self, owner_id: str, entry: ImportedEntry, tags: list[str]) -> bool:
        """Insert an entry from an export without touching the aggregate.

        Returns True if the entry was inserted, False if it already existed.
        Uses INSERT OR IGNORE for idempotent inserts.
        """
        created_at = parse_timestamp(entry.created_at)
        with _storage_errors("import entry"):
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO entries
                (id, owner_id, text, tags, created_at, is_daily_top, is_weekly_top, is_monthly_top)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.compute_id(owner_id),
                    owner_id,
                    entry.text,
                    json.dumps(tags),
                    format_timestamp(created_at),
                    int(entry.is_daily_top),
                    int(entry.is_weekly_top),
                    int(entry.is_monthly_top),
                ),
            )
            self._conn.commit()
        if cursor.rowcount > 0:
            self._notify(owner_id)
            return True
        return False

    def _owner_of(self, entry_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT owner_id FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return row["owner_id"] if row else None

    def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry by ID.

        Returns:
            True if the entry was deleted, False if it didn't exist.
        """
        with _storage_errors("delete entry"):
            owner_id = self._owner_of(entry_id)
            cursor = self._conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            self._conn.commit()
        if cursor.rowcount == 0:
            return False
        self._notify(owner_id)
        return True

    def update_entry_text(self, entry_id: str, text: str) -> bool:
        """Replace an entry's text. Tags and timestamp are unchanged.

        Returns:
            True if the entry was updated, False if it didn't exist.
        """
        with _storage_errors("update entry"):
            owner_id = self._owner_of(entry_id)
            cursor = self._conn.execute(
                "UPDATE entries SET text = ? WHERE id = ?", (text, entry_id)
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            return False
        self._notify(owner_id)
        return True

    def set_top_flag(self, entry_id: str, granularity: Granularity | str, value: bool) -> bool:
        """Set or clear an entry's top marker for a period granularity.

        Returns:
            True if the entry exists, False otherwise.
        """
        column = flag_for(granularity)
        with _storage_errors("update top marker"):
            owner_id = self._owner_of(entry_id)
            cursor = self._conn.execute(
                f"UPDATE entries SET {column} = ? WHERE id = ?", (int(value), entry_id)
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            return False
        self._notify(owner_id)
        return True

    def get_entry(self, entry_id: str) -> Entry | None:
        with _storage_errors("read entry"):
            row = self._conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def get_entries(self, owner_id: str, *, limit: int | None = None) -> list[Entry]:
        """Query an owner's entries, newest first.

        Args:
            owner_id: Owner to query.
            limit: Maximum number of entries to return.

        Returns:
            List of entries ordered by timestamp descending.
        """
        query = "SELECT * FROM entries WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC"
        params: list[str | int] = [owner_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with _storage_errors("read entries"):
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_entry_by_prefix(self, owner_id: str, prefix: str) -> Entry | None:
        """Find an entry by ID prefix.

        Args:
            owner_id: Owner whose entries are searched.
            prefix: The ID prefix to match.

        Returns:
            Entry if exactly one match, None if no match.

        Raises:
            ValueError: If prefix matches multiple entries.
        """
        # Escape LIKE metacharacters to prevent pattern injection
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with _storage_errors("read entries"):
            rows = self._conn.execute(
                "SELECT * FROM entries WHERE owner_id = ? AND id LIKE ? ESCAPE '\\'",
                (owner_id, escaped + "%"),
            ).fetchall()
        if len(rows) == 0:
            return None
        if len(rows) > 1:
            ids = [row["id"][:7] for row in rows]
            raise ValueError(f"Ambiguous prefix '{prefix}' matches: {', '.join(ids)}")
        return _row_to_entry(rows[0])

    def get_owner_stats(self, owner_id: str) -> dict[str, Any]:
        """Entry count and first/last entry timestamps for an owner."""
        with _storage_errors("read entry stats"):
            row = self._conn.execute(
                """
                SELECT
                    COUNT(*) as entry_count,
                    MIN(created_at) as first_entry_at,
                    MAX(created_at) as last_entry_at
                FROM entries
                WHERE owner_id = ?
                """,
                (owner_id,),
            ).fetchone()
        return dict(row)

    # Aggregate

    def get_aggregate(self, owner_id: str) -> Aggregate:
        """Load an owner's aggregate; an empty one if none is stored."""
        with _storage_errors("read aggregate"):
            row = self._conn.execute(
                "SELECT * FROM aggregates WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if row is None:
            return Aggregate(owner_id=owner_id)
        return Aggregate(
            owner_id=owner_id,
            daily_counts=json.loads(row["daily_counts"] or "{}"),
            daily_tag_counts=json.loads(row["daily_tag_counts"] or "{}"),
            streak=row["streak"] or 0,
            last_update=parse_timestamp(row["last_update"]) if row["last_update"] else None,
        )

    def merge_aggregate(self, owner_id: str, **fields: Any) -> Aggregate:
        """Write some aggregate fields, leaving the others as stored.

        ``last_update`` is stamped with the store's clock unless given.

        Raises:
            ValueError: If a field name is not an aggregate field.
        """
        unknown = set(fields) - set(AGGREGATE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown aggregate fields: {', '.join(sorted(unknown))}")
        fields.setdefault("last_update", self._clock())

        columns = [name for name in AGGREGATE_FIELDS if name in fields]
        assignments = ", ".join(f"{name} = ?" for name in columns)
        values = [_encode_aggregate_field(name, fields[name]) for name in columns]

        with _storage_errors("merge aggregate"):
            with self._conn:  # Automatic transaction handling (commits on success)
                self._conn.execute(
                    "INSERT OR IGNORE INTO aggregates (owner_id) VALUES (?)", (owner_id,)
                )
                self._conn.execute(
                    f"UPDATE aggregates SET {assignments} WHERE owner_id = ?",
                    [*values, owner_id],
                )
        self._notify(owner_id)
        return self.get_aggregate(owner_id)

    # Settings

    def get_settings(self, owner_id: str) -> UserSettings:
        """Load an owner's preferences; defaults if none are stored."""
        with _storage_errors("read settings"):
            row = self._conn.execute(
                "SELECT data FROM user_settings WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if row is None:
            return UserSettings()
        return UserSettings.model_validate(json.loads(row["data"] or "{}"))

    def save_settings(self, owner_id: str, **fields: Any) -> UserSettings:
        """Merge preference fields into the stored settings."""
        current = self.get_settings(owner_id).model_dump()
        settings = UserSettings.model_validate({**current, **fields})
        with _storage_errors("save settings"):
            self._conn.execute(
                """
                INSERT INTO user_settings (owner_id, data, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                """,
                (owner_id, settings.model_dump_json(), format_timestamp(self._clock())),
            )
            self._conn.commit()
        return settings

    def delete_owner_data(self, owner_id: str) -> int:
        """Remove an owner's entries, aggregate and settings.

        Returns:
            Number of entries deleted.
        """
        with _storage_errors("delete owner data"):
            with self._conn:
                cursor = self._conn.execute("DELETE FROM entries WHERE owner_id = ?", (owner_id,))
                self._conn.execute("DELETE FROM aggregates WHERE owner_id = ?", (owner_id,))
                self._conn.execute("DELETE FROM user_settings WHERE owner_id = ?", (owner_id,))
        self._notify(owner_id)
        return cursor.rowcount
