"""SQLite persistence layer."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator

from reactstats.errors import StorageError
from reactstats.models import (
    ChannelFilter,
    EmojiKey,
    ReactionEvent,
    RecordResult,
    ScheduledJob,
    TopMessage,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 4

# Upgrade steps, applied in order; key N upgrades a database from N-1 to N.
_MIGRATIONS: dict[int, tuple[str, ...]] = {
    1: (
        """
        CREATE TABLE messages (
            id INTEGER PRIMARY KEY,
            author INTEGER NOT NULL,
            url VARCHAR(300) NOT NULL,
            timestamp TEXT NOT NULL,
            total_reactions INTEGER NOT NULL DEFAULT 0
        )
        """,
        """
        CREATE TABLE reactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id INTEGER NOT NULL,
            reaction_count INTEGER NOT NULL DEFAULT 1,
            emoji VARCHAR(50) NOT NULL,
            FOREIGN KEY(message_id) REFERENCES messages(id) ON DELETE CASCADE
        )
        """,
        "CREATE INDEX reactions_message_id ON reactions(message_id)",
    ),
    2: (
        "ALTER TABLE messages ADD COLUMN guild_id INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE messages ADD COLUMN channel_id INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE reactions ADD COLUMN reaction_id INTEGER NULL",
        """
        CREATE TABLE opted_out_users (
            user_id INTEGER PRIMARY KEY,
            opted_out_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX messages_guild_author ON messages(guild_id, author)",
        "CREATE INDEX messages_guild_timestamp_total ON messages(guild_id, timestamp, total_reactions)",
        "CREATE INDEX messages_guild_channel ON messages(guild_id, channel_id)",
    ),
    3: (
        """
        CREATE TABLE scheduled_jobs (
            id TEXT PRIMARY KEY,
            cron_expression TEXT NOT NULL,
            interval_hours REAL NOT NULL,
            channel_id INTEGER NOT NULL,
            guild_id INTEGER NOT NULL,
            count INTEGER NOT NULL,
            next_run TEXT NOT NULL,
            created_at TEXT NOT NULL,
            is_forum INTEGER NOT NULL DEFAULT 0,
            thread_title_template TEXT
        )
        """,
        "CREATE INDEX scheduled_jobs_guild_channel ON scheduled_jobs(guild_id, channel_id)",
        "CREATE INDEX scheduled_jobs_next_run ON scheduled_jobs(next_run)",
    ),
    4: (
        """
        CREATE TABLE schedule_channels (
            schedule_id TEXT NOT NULL,
            channel_id INTEGER NOT NULL,
            is_excluded INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY(schedule_id, channel_id),
            FOREIGN KEY(schedule_id) REFERENCES scheduled_jobs(id) ON DELETE CASCADE
        )
        """,
    ),
}

_UPSERT_MESSAGE = """
    INSERT INTO messages(id, guild_id, channel_id, author, url, timestamp, total_reactions)
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        guild_id=excluded.guild_id,
        channel_id=excluded.channel_id,
        author=excluded.author,
        url=excluded.url,
        timestamp=excluded.timestamp,
        total_reactions=excluded.total_reactions
"""
_INSERT_REACTION = """
    INSERT INTO reactions(message_id, emoji, reaction_count, reaction_id)
    VALUES (?, ?, ?, ?)
"""
_DELETE_REACTIONS_FOR_MESSAGE = "DELETE FROM reactions WHERE message_id = ?"
_DELETE_MESSAGE = "DELETE FROM messages WHERE id = ?"
_IS_OPTED_OUT = "SELECT 1 FROM opted_out_users WHERE user_id = ?"

_TOP_MESSAGES = """
    SELECT m.id, m.url, m.author, m.total_reactions, m.timestamp
    FROM messages m
    WHERE {where}
    ORDER BY m.total_reactions DESC, m.timestamp ASC, m.id ASC
    LIMIT ?
"""
_REACTION_BREAKDOWN = """
    SELECT message_id, emoji, reaction_count, reaction_id
    FROM reactions
    WHERE message_id IN ({placeholders})
    ORDER BY message_id, reaction_count DESC, id ASC
"""

_JOB_COLUMNS = (
    "id, cron_expression, interval_hours, channel_id, guild_id, count, "
    "next_run, created_at, is_forum, thread_title_template"
)


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._initialized = False
        self._init_lock = threading.Lock()

    def _open(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly in _connect.
        conn = sqlite3.connect(self._path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        if not self._initialized:
            self.initialize()
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _write(self, action: str, *context: object) -> Iterator[sqlite3.Connection]:
        """Run one logical mutation in a transaction, logging and wrapping storage errors."""

        try:
            with self._connect(write=True) as conn:
                yield conn
        except sqlite3.Error as exc:
            LOGGER.exception("Failed to " + action, *context)
            raise StorageError(f"Failed to {action % context}") from exc

    def initialize(self) -> None:
        """Create or migrate schema. Runs once per instance."""

        with self._init_lock:
            if self._initialized:
                return
            conn = self._open()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
                row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
                current = row["version"] if row else 0
                if current > SCHEMA_VERSION:
                    raise RuntimeError(
                        f"Unsupported schema version {current} (expected at most {SCHEMA_VERSION})"
                    )
                for version in range(current + 1, SCHEMA_VERSION + 1):
                    LOGGER.info("Upgrading database %s to version %d", self._path, version)
                    for statement in _MIGRATIONS[version]:
                        conn.execute(statement)
                if row is None:
                    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                elif current != SCHEMA_VERSION:
                    conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
            self._initialized = True

    def schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        return int(row["version"])

    # -- reactions ---------------------------------------------------------

    def record_reaction_state(self, event: ReactionEvent) -> RecordResult:
        """Replace the stored reaction set of a message with ``event``'s full set."""

        counts: dict[EmojiKey, int] = {}
        for reaction in event.reactions:
            if reaction.count > 0:
                counts[reaction.key] = counts.get(reaction.key, 0) + reaction.count

        with self._write(
            "update reactions for message %s (guild %s, channel %s, author %s)",
            event.message_id,
            event.guild_id,
            event.channel_id,
            event.author_id,
        ) as conn:
            if conn.execute(_IS_OPTED_OUT, (event.author_id,)).fetchone() is not None:
                LOGGER.info("Skipping message %s due to user opt-out", event.message_id)
                return RecordResult.SKIPPED_OPTED_OUT

            conn.execute(_DELETE_REACTIONS_FOR_MESSAGE, (event.message_id,))
            if not counts:
                conn.execute(_DELETE_MESSAGE, (event.message_id,))
                LOGGER.info("Deleted message %s due to no reactions", event.message_id)
                return RecordResult.DELETED

            conn.execute(
                _UPSERT_MESSAGE,
                (
                    event.message_id,
                    event.guild_id,
                    event.channel_id,
                    event.author_id,
                    event.permalink,
                    _to_db(event.timestamp),
                    sum(counts.values()),
                ),
            )
            conn.executemany(
                _INSERT_REACTION,
                [(event.message_id, key.name, count, key.custom_id) for key, count in counts.items()],
            )
        LOGGER.info("Updated reactions for message %s", event.message_id)
        return RecordResult.STORED

    def opt_out_user(self, user_id: int) -> int:
        """Purge a user's messages and record the opt-out. Returns messages purged."""

        with self._write("opt out user %s", user_id) as conn:
            conn.execute(
                "DELETE FROM reactions WHERE message_id IN (SELECT id FROM messages WHERE author = ?)",
                (user_id,),
            )
            purged = conn.execute("DELETE FROM messages WHERE author = ?", (user_id,)).rowcount
            conn.execute(
                """
                INSERT INTO opted_out_users(user_id, opted_out_at) VALUES (?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, _utc_now_iso()),
            )
        LOGGER.info("User %s opted out, purged %d messages", user_id, purged)
        return purged

    def opt_in_user(self, user_id: int) -> None:
        with self._write("opt in user %s", user_id) as conn:
            conn.execute("DELETE FROM opted_out_users WHERE user_id = ?", (user_id,))

    def is_opted_out(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(_IS_OPTED_OUT, (user_id,)).fetchone()
        return row is not None

    def delete_messages(self, guild_id: int, channel_id: int | None = None, user_id: int | None = None) -> int:
        """Delete stored messages for a guild, optionally narrowed by channel and author."""

        where, params = _message_filter(guild_id, channel_id, user_id)
        plain_where, _ = _message_filter(guild_id, channel_id, user_id, prefix="")
        with self._write(
            "delete messages for guild %s, channel %s, user %s", guild_id, channel_id, user_id
        ) as conn:
            conn.execute(
                f"DELETE FROM reactions WHERE message_id IN (SELECT m.id FROM messages m WHERE {where})",
                params,
            )
            deleted = conn.execute(f"DELETE FROM messages WHERE {plain_where}", params).rowcount
        return deleted

    def top_messages(
        self,
        start: datetime,
        end: datetime,
        limit: int,
        guild_id: int,
        channel_id: int | None = None,
        user_id: int | None = None,
        *,
        include_channels: Iterable[int] | None = None,
        exclude_channels: Iterable[int] | None = None,
    ) -> list[TopMessage]:
        """Messages in ``[start, end)`` ranked by total reactions, highest first.

        Ties are broken by timestamp then message id, both ascending.
        """
        where, params = _message_filter(guild_id, channel_id, user_id)
        clauses = [where, "m.timestamp >= ?", "m.timestamp < ?"]
        params.extend([_to_db(start), _to_db(end)])
        for column_values, operator in ((include_channels, "IN"), (exclude_channels, "NOT IN")):
            values = list(column_values or [])
            if values:
                clauses.append(f"m.channel_id {operator} ({', '.join('?' for _ in values)})")
                params.extend(values)

        with self._connect() as conn:
            rows = conn.execute(_TOP_MESSAGES.format(where=" AND ".join(clauses)), (*params, limit)).fetchall()
            breakdown = _load_breakdown(conn, [row["id"] for row in rows])

        return [
            TopMessage(
                permalink=row["url"],
                author_id=row["author"],
                total_reactions=row["total_reactions"],
                reactions=breakdown.get(row["id"], {}),
                message_id=row["id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def top_messages_for_date(
        self,
        day: date,
        limit: int,
        guild_id: int,
        channel_id: int | None = None,
        user_id: int | None = None,
    ) -> list[TopMessage]:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        return self.top_messages(start, start + timedelta(days=1), limit, guild_id, channel_id, user_id)

    # -- scheduled jobs ----------------------------------------------------

    def create_scheduled_job(self, job: ScheduledJob) -> str:
        with self._write("create scheduled job for guild %s, channel %s", job.guild_id, job.channel_id) as conn:
            conn.execute(
                f"INSERT INTO scheduled_jobs({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.cron_expression,
                    job.interval_hours,
                    job.channel_id,
                    job.guild_id,
                    job.count,
                    _to_db(job.next_run),
                    _to_db(job.created_at),
                    int(job.is_forum),
                    job.thread_title_template,
                ),
            )
        return job.id

    def get_due_jobs(self, now: datetime) -> list[ScheduledJob]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE next_run <= ? ORDER BY next_run ASC, id ASC",
                (_to_db(now),),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def update_job_next_run(self, job_id: str, next_run: datetime) -> None:
        with self._write("update next run for job %s", job_id) as conn:
            conn.execute("UPDATE scheduled_jobs SET next_run = ? WHERE id = ?", (_to_db(next_run), job_id))

    def get_jobs_for_guild(self, guild_id: int) -> list[ScheduledJob]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE guild_id = ? ORDER BY created_at ASC, id ASC",
                (guild_id,),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def get_job_by_id(self, job_id: str) -> ScheduledJob | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def delete_job(self, job_id: str) -> bool:
        with self._write("delete job %s", job_id) as conn:
            conn.execute("DELETE FROM schedule_channels WHERE schedule_id = ?", (job_id,))
            deleted = conn.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,)).rowcount
        return deleted > 0

    def get_schedule_channels(self, job_id: str) -> list[ChannelFilter]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT channel_id, is_excluded FROM schedule_channels WHERE schedule_id = ? ORDER BY channel_id",
                (job_id,),
            ).fetchall()
        return [ChannelFilter(channel_id=row["channel_id"], is_excluded=bool(row["is_excluded"])) for row in rows]

    def add_schedule_channels(self, job_id: str, filters: Iterable[ChannelFilter]) -> None:
        with self._write("add channel filters for job %s", job_id) as conn:
            conn.executemany(
                """
                INSERT INTO schedule_channels(schedule_id, channel_id, is_excluded) VALUES (?, ?, ?)
                ON CONFLICT(schedule_id, channel_id) DO UPDATE SET is_excluded=excluded.is_excluded
                """,
                [(job_id, item.channel_id, int(item.is_excluded)) for item in filters],
            )

    def remove_schedule_channels(self, job_id: str, channel_ids: Iterable[int]) -> None:
        with self._write("remove channel filters for job %s", job_id) as conn:
            conn.executemany(
                "DELETE FROM schedule_channels WHERE schedule_id = ? AND channel_id = ?",
                [(job_id, channel_id) for channel_id in channel_ids],
            )

    def set_schedule_channels(self, job_id: str, channel_ids: Iterable[int], is_excluded: bool) -> None:
        """Replace the include (or exclude) set of a job with ``channel_ids``."""

        selected = list(dict.fromkeys(channel_ids))
        with self._write("set channel filters for job %s", job_id) as conn:
            conn.execute(
                "DELETE FROM schedule_channels WHERE schedule_id = ? AND is_excluded = ?",
                (job_id, int(is_excluded)),
            )
            conn.executemany(
                """
                INSERT INTO schedule_channels(schedule_id, channel_id, is_excluded) VALUES (?, ?, ?)
                ON CONFLICT(schedule_id, channel_id) DO UPDATE SET is_excluded=excluded.is_excluded
                """,
                [(job_id, channel_id, int(is_excluded)) for channel_id in selected],
            )


def _message_filter(
    guild_id: int, channel_id: int | None, user_id: int | None, prefix: str = "m."
) -> tuple[str, list[object]]:
    clauses = [f"{prefix}guild_id = ?"]
    params: list[object] = [guild_id]
    if channel_id is not None:
        clauses.append(f"{prefix}channel_id = ?")
        params.append(channel_id)
    if user_id is not None:
        clauses.append(f"{prefix}author = ?")
        params.append(user_id)
    return " AND ".join(clauses), params


def _load_breakdown(conn: sqlite3.Connection, message_ids: list[int]) -> dict[int, dict[EmojiKey, int]]:
    if not message_ids:
        return {}
    rows = conn.execute(
        _REACTION_BREAKDOWN.format(placeholders=", ".join("?" for _ in message_ids)),
        message_ids,
    ).fetchall()
    breakdown: dict[int, dict[EmojiKey, int]] = {}
    for row in rows:
        key = EmojiKey(row["emoji"], row["reaction_id"])
        breakdown.setdefault(row["message_id"], {})[key] = row["reaction_count"]
    return breakdown


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        id=row["id"],
        cron_expression=row["cron_expression"],
        interval_hours=row["interval_hours"],
        channel_id=row["channel_id"],
        guild_id=row["guild_id"],
        count=row["count"],
        next_run=datetime.fromisoformat(row["next_run"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        is_forum=bool(row["is_forum"]),
        thread_title_template=row["thread_title_template"],
    )


def _to_db(moment: datetime) -> str:
    # Fixed-width UTC text so lexical order matches chronological order.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now_iso() -> str:
    return _to_db(datetime.now(timezone.utc))
