"""SQLite storage adapter.

Implements the core store ports (targets, messages, memberships, analyses,
job locks, reveal access, delivery outbox and credits) on one SQLite file.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from core.models import (
    AccessRecord,
    Analysis,
    AnalyzedAuthor,
    DeliveryStatus,
    IncomingMessage,
    JobLockRecord,
    MembershipRecord,
    MessageRecord,
    QueuedMessage,
    Target,
    TargetKind,
)

JOB_IN_PROGRESS = "in_progress"
JOB_IDLE = "idle"


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies every storage port of the core."""

    def __init__(self, db_path: str, busy_timeout_seconds: float = 30.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout_seconds

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode; multi-statement writes go through _transaction.
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database lock up front."""

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - targets: one row per group or channel with its observed message counter
        - messages: the retained sliding window of messages per target
        - memberships: running per (target, author) activity counters
        - analyses: immutable analysis snapshots, variants stored as JSON
        - analysis_jobs: durable per-target job lock rows
        - analysis_access: every reveal of an analysis text
        - outbox: persisted notification queue with retry state
        - credits: per-user credit balance
        """

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            # message_count counts every message ever observed, it is never
            # decremented by the window trim.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS targets (
                    target_id INTEGER PRIMARY KEY,
                    title TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    member_count INTEGER,
                    username TEXT,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # message_id may be NULL (scraped previews); NULLs never collide
            # on the unique index, so such rows are always appended.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    target_id INTEGER NOT NULL,
                    message_id INTEGER,
                    author_id INTEGER NOT NULL,
                    author_name TEXT,
                    author_username TEXT,
                    text TEXT NOT NULL,
                    date TIMESTAMP NOT NULL,
                    UNIQUE (target_id, message_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_target_date ON messages (target_id, date, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memberships (
                    target_id INTEGER NOT NULL,
                    author_id INTEGER NOT NULL,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    last_activity TIMESTAMP NOT NULL,
                    display_name TEXT,
                    username TEXT,
                    PRIMARY KEY (target_id, author_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analyses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    target_id INTEGER NOT NULL,
                    message_count INTEGER NOT NULL,
                    authors TEXT NOT NULL,
                    variants TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_analyses_target ON analyses (target_id, created_at, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_jobs (
                    target_id INTEGER PRIMARY KEY,
                    state TEXT NOT NULL,
                    owner TEXT,
                    acquired_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_access (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    requester_id INTEGER NOT NULL,
                    analysis_id INTEGER NOT NULL,
                    author_id INTEGER NOT NULL,
                    variant TEXT NOT NULL,
                    credits_charged INTEGER NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_access_lookup
                ON analysis_access (requester_id, analysis_id, author_id, variant)
                """
            )
            # next_attempt_at is wall-clock epoch seconds so it survives restarts.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at REAL NOT NULL,
                    last_error TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_outbox_due ON outbox (status, next_attempt_at, id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credits (
                    user_id INTEGER PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    # Targets and messages

    def upsert_target(self, target: Target) -> None:
        """Insert or refresh target metadata; the message counter is kept."""

        with self._connect() as conn:
            self._upsert_target(conn, target.target_id, target.title, target.kind, target.member_count, target.username)

    @staticmethod
    def _upsert_target(
        conn: sqlite3.Connection,
        target_id: int,
        title: str,
        kind: TargetKind,
        member_count: Optional[int],
        username: Optional[str],
    ) -> None:
        conn.execute(
            """
            INSERT INTO targets (target_id, title, kind, member_count, username, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(target_id) DO UPDATE SET
                title = excluded.title,
                kind = excluded.kind,
                member_count = COALESCE(excluded.member_count, targets.member_count),
                username = COALESCE(excluded.username, targets.username),
                updated_at = excluded.updated_at
            """,
            (target_id, title, kind.value, member_count, username, _now()),
        )

    def get_target(self, target_id: int) -> Optional[Target]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM targets WHERE target_id = ?", (target_id,)).fetchone()
        return self._target_from_row(row) if row else None

    @staticmethod
    def _target_from_row(row: sqlite3.Row) -> Target:
        return Target(
            target_id=int(row["target_id"]),
            title=row["title"],
            kind=TargetKind(row["kind"]),
            member_count=row["member_count"],
            message_count=int(row["message_count"]),
            username=row["username"],
        )

    def record_message(self, message: IncomingMessage, window_size: int) -> bool:
        """Store one message with its side effects in a single transaction.

        Upserts the target, appends the message, bumps the target counter and
        the author's membership, then trims the window. Returns False when the
        message was already stored.
        """

        with self._transaction() as conn:
            self._upsert_target(
                conn,
                message.target_id,
                message.target_title,
                message.target_kind,
                message.member_count,
                message.target_username,
            )
            inserted = self._insert_message(
                conn,
                MessageRecord(
                    target_id=message.target_id,
                    author_id=message.author_id,
                    author_name=message.author_name,
                    text=message.text,
                    message_id=message.message_id,
                    date=message.date,
                    author_username=message.author_username,
                ),
            )
            if not inserted:
                return False
            conn.execute(
                "UPDATE targets SET message_count = message_count + 1 WHERE target_id = ?",
                (message.target_id,),
            )
            self._bump_membership(
                conn,
                message.target_id,
                message.author_id,
                message.author_name,
                message.author_username,
                _iso(message.date),
            )
            self._trim(conn, message.target_id, window_size)
        return True

    @staticmethod
    def _insert_message(conn: sqlite3.Connection, record: MessageRecord) -> bool:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO messages (
                target_id,
                message_id,
                author_id,
                author_name,
                author_username,
                text,
                date
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.target_id,
                record.message_id,
                record.author_id,
                record.author_name,
                record.author_username,
                record.text,
                _iso(record.date),
            ),
        )
        return cur.rowcount == 1

    def append_message(self, record: MessageRecord) -> None:
        """Append one message without touching counters or the window."""

        with self._transaction() as conn:
            self._insert_message(conn, record)

    def trim_to_window(self, target_id: int, window_size: int) -> int:
        """Delete everything but the newest ``window_size`` messages."""

        with self._transaction() as conn:
            return self._trim(conn, target_id, window_size)

    @staticmethod
    def _trim(conn: sqlite3.Connection, target_id: int, window_size: int) -> int:
        cur = conn.execute(
            """
            DELETE FROM messages
            WHERE target_id = ?
              AND id NOT IN (
                  SELECT id FROM messages
                  WHERE target_id = ?
                  ORDER BY date DESC, id DESC
                  LIMIT ?
              )
            """,
            (target_id, target_id, window_size),
        )
        return cur.rowcount

    def bump_membership(
        self,
        target_id: int,
        author_id: int,
        display_name: Optional[str],
        username: Optional[str] = None,
    ) -> None:
        with self._transaction() as conn:
            self._bump_membership(conn, target_id, author_id, display_name, username, _now())

    @staticmethod
    def _bump_membership(
        conn: sqlite3.Connection,
        target_id: int,
        author_id: int,
        display_name: Optional[str],
        username: Optional[str],
        activity_at: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO memberships (target_id, author_id, message_count, last_activity, display_name, username)
            VALUES (?, ?, 1, ?, ?, ?)
            ON CONFLICT(target_id, author_id) DO UPDATE SET
                message_count = memberships.message_count + 1,
                last_activity = MAX(memberships.last_activity, excluded.last_activity),
                display_name = COALESCE(excluded.display_name, memberships.display_name),
                username = COALESCE(excluded.username, memberships.username)
            """,
            (target_id, author_id, activity_at, display_name, username),
        )

    def recent_messages(self, target_id: int, limit: int) -> List[MessageRecord]:
        """Return up to ``limit`` newest messages, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE target_id = ?
                ORDER BY date DESC, id DESC
                LIMIT ?
                """,
                (target_id, limit),
            ).fetchall()
        return [
            MessageRecord(
                target_id=int(row["target_id"]),
                author_id=int(row["author_id"]),
                author_name=row["author_name"],
                text=row["text"],
                message_id=row["message_id"],
                date=_parse(row["date"]),
                author_username=row["author_username"],
            )
            for row in reversed(rows)
        ]

    def window_count(self, target_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM messages WHERE target_id = ?", (target_id,)).fetchone()
        return int(row["n"])

    def top_k_active(self, target_id: int, limit: int) -> List[MembershipRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memberships
                WHERE target_id = ?
                ORDER BY message_count DESC, last_activity DESC, author_id
                LIMIT ?
                """,
                (target_id, limit),
            ).fetchall()
        return [
            MembershipRecord(
                target_id=int(row["target_id"]),
                author_id=int(row["author_id"]),
                message_count=int(row["message_count"]),
                last_activity=_parse(row["last_activity"]),
                display_name=row["display_name"],
                username=row["username"],
            )
            for row in rows
        ]

    def is_member(self, target_id: int, author_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM memberships WHERE target_id = ? AND author_id = ?",
                (target_id, author_id),
            ).fetchone()
        return row is not None

    def message_count_at(self, target_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT message_count FROM targets WHERE target_id = ?", (target_id,)).fetchone()
        return int(row["message_count"]) if row else 0

    # Analyses

    def save_analysis(self, analysis: Analysis) -> Analysis:
        variants = {
            variant: {str(author_id): text for author_id, text in texts.items()}
            for variant, texts in analysis.variants.items()
        }
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO analyses (target_id, message_count, authors, variants, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    analysis.target_id,
                    analysis.message_count,
                    json.dumps([author.to_dict() for author in analysis.authors], ensure_ascii=False),
                    json.dumps(variants, ensure_ascii=False),
                    _iso(analysis.created_at),
                ),
            )
            analysis_id = int(cur.lastrowid)
        return Analysis(
            target_id=analysis.target_id,
            variants=analysis.variants,
            authors=analysis.authors,
            message_count=analysis.message_count,
            created_at=analysis.created_at,
            analysis_id=analysis_id,
        )

    def latest_analysis(self, target_id: int) -> Optional[Analysis]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM analyses
                WHERE target_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (target_id,),
            ).fetchone()
        if row is None:
            return None
        raw_variants: Dict[str, Dict[str, str]] = json.loads(row["variants"])
        return Analysis(
            target_id=int(row["target_id"]),
            variants={
                variant: {int(author_id): text for author_id, text in texts.items()}
                for variant, texts in raw_variants.items()
            },
            authors=tuple(AnalyzedAuthor.from_dict(item) for item in json.loads(row["authors"])),
            message_count=int(row["message_count"]),
            created_at=_parse(row["created_at"]),
            analysis_id=int(row["id"]),
        )

    # Job locks

    def try_acquire_job(self, target_id: int, owner: str) -> bool:
        """Take the lock row unless it is already in progress.

        The conditional upsert is a single statement, so two callers racing
        for the same target cannot both see rowcount 1.
        """

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO analysis_jobs (target_id, state, owner, acquired_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(target_id) DO UPDATE SET
                    state = excluded.state,
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at
                WHERE analysis_jobs.state != ?
                """,
                (target_id, JOB_IN_PROGRESS, owner, _now(), JOB_IN_PROGRESS),
            )
            return cur.rowcount == 1

    def release_job(self, target_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE analysis_jobs SET state = ?, owner = NULL WHERE target_id = ?",
                (JOB_IDLE, target_id),
            )

    def get_job(self, target_id: int) -> Optional[JobLockRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM analysis_jobs WHERE target_id = ?", (target_id,)).fetchone()
        return self._job_from_row(row) if row else None

    def list_in_progress_jobs(self) -> List[JobLockRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM analysis_jobs WHERE state = ? ORDER BY acquired_at",
                (JOB_IN_PROGRESS,),
            ).fetchall()
        return [self._job_from_row(row) for row in rows]

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> JobLockRecord:
        return JobLockRecord(
            target_id=int(row["target_id"]),
            in_progress=row["state"] == JOB_IN_PROGRESS,
            owner=row["owner"],
            acquired_at=_parse(row["acquired_at"]),
        )

    # Reveal access

    def has_access(self, requester_id: int, analysis_id: int, author_id: int, variant: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM analysis_access
                WHERE requester_id = ? AND analysis_id = ? AND author_id = ? AND variant = ?
                LIMIT 1
                """,
                (requester_id, analysis_id, author_id, variant),
            ).fetchone()
        return row is not None

    def record_access(self, record: AccessRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analysis_access (
                    requester_id,
                    analysis_id,
                    author_id,
                    variant,
                    credits_charged,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.requester_id,
                    record.analysis_id,
                    record.author_id,
                    record.variant,
                    record.credits_charged,
                    _iso(record.created_at),
                ),
            )

    # Delivery outbox

    def enqueue_delivery(self, recipient: int, payload: str, available_at: float) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO outbox (recipient, payload, status, attempts, next_attempt_at, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (recipient, payload, DeliveryStatus.PENDING.value, available_at, _now()),
            )
            return int(cur.lastrowid)

    def due_deliveries(self, now: float, limit: int) -> List[QueuedMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox
                WHERE status = ? AND next_attempt_at <= ?
                ORDER BY id
                LIMIT ?
                """,
                (DeliveryStatus.PENDING.value, now, limit),
            ).fetchall()
        return [self._queued_from_row(row) for row in rows]

    def next_delivery_at(self) -> Optional[float]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(next_attempt_at) AS next_at FROM outbox WHERE status = ?",
                (DeliveryStatus.PENDING.value,),
            ).fetchone()
        return float(row["next_at"]) if row["next_at"] is not None else None

    def mark_delivery_sent(self, message_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outbox SET status = ?, attempts = attempts + 1, last_error = NULL WHERE id = ?",
                (DeliveryStatus.SENT.value, message_id),
            )

    def mark_delivery_retry(self, message_id: int, attempts: int, next_attempt_at: float, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outbox SET attempts = ?, next_attempt_at = ?, last_error = ? WHERE id = ?",
                (attempts, next_attempt_at, error, message_id),
            )

    def mark_delivery_failed(self, message_id: int, attempts: int, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outbox SET status = ?, attempts = ?, last_error = ? WHERE id = ?",
                (DeliveryStatus.FAILED.value, attempts, error, message_id),
            )

    def get_delivery(self, message_id: int) -> Optional[QueuedMessage]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM outbox WHERE id = ?", (message_id,)).fetchone()
        return self._queued_from_row(row) if row else None

    @staticmethod
    def _queued_from_row(row: sqlite3.Row) -> QueuedMessage:
        return QueuedMessage(
            message_id=int(row["id"]),
            recipient=int(row["recipient"]),
            payload=row["payload"],
            status=DeliveryStatus(row["status"]),
            attempts=int(row["attempts"]),
            next_attempt_at=float(row["next_attempt_at"]),
            last_error=row["last_error"],
        )

    # Credits

    def balance(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT balance FROM credits WHERE user_id = ?", (user_id,)).fetchone()
        return int(row["balance"]) if row else 0

    def add_credits(self, user_id: int, amount: int) -> int:
        """Grant credits and return the new balance."""

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO credits (user_id, balance) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET balance = credits.balance + excluded.balance
                """,
                (user_id, amount),
            )
            row = conn.execute("SELECT balance FROM credits WHERE user_id = ?", (user_id,)).fetchone()
        return int(row["balance"])

    def ensure_account(self, user_id: int, initial_credits: int) -> bool:
        """Create a credit account once; return True when it was new."""

        with self._connect() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO credits (user_id, balance) VALUES (?, ?)",
                (user_id, initial_credits),
            )
            return cur.rowcount == 1

    def debit(self, user_id: int, amount: int) -> bool:
        """Take ``amount`` credits if the balance covers it."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE credits SET balance = balance - ? WHERE user_id = ? AND balance >= ?",
                (amount, user_id, amount),
            )
            return cur.rowcount == 1
