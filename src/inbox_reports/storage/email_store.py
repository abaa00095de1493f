"""SQLite-backed persistence for ingested emails, summaries and embeddings."""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from inbox_reports.core.exceptions import InvalidInputError
from inbox_reports.core.models import DateRange, EmailFilter, EmailRef, SimilarEmail

logger = logging.getLogger(__name__)


def _to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not a or len(a) != len(b):
        return 0.0
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b, strict=True)) / (norm_a * norm_b)


class SqliteEmailStore:
    """Stores emails keyed by provider message ID.

    Tables:
    - emails: one row per email with summary/embedding columns filled in later
    - ingest_runs: audit log of ingestion runs

    Every write is idempotent per email ID, so overlapping tasks can share a store.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.debug("Connected to email store at %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SqliteEmailStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    thread_id TEXT NOT NULL DEFAULT '',
                    subject TEXT DEFAULT '',
                    sender TEXT DEFAULT '',
                    recipients TEXT DEFAULT '',
                    cc TEXT DEFAULT '',
                    date TEXT NOT NULL,
                    body TEXT DEFAULT '',
                    summary TEXT,
                    labels TEXT DEFAULT '[]',
                    embedding TEXT,
                    processed_for_vector INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date);
                CREATE INDEX IF NOT EXISTS idx_emails_vector ON emails(processed_for_vector);

                CREATE TABLE IF NOT EXISTS ingest_runs (
                    run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    client_id TEXT DEFAULT '',
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    emails_seen INTEGER DEFAULT 0,
                    emails_inserted INTEGER DEFAULT 0,
                    emails_skipped INTEGER DEFAULT 0
                );
            """)

    def exists_by_id(self, email_id: str) -> bool:
        """Check if an email is already stored."""
        with self._lock:
            row = self.conn.execute("SELECT 1 FROM emails WHERE id = ?", (email_id,)).fetchone()
        return row is not None

    def upsert(self, email: EmailRef) -> bool:
        """Insert an email, or refresh its metadata if already stored.

        An existing summary or embedding is never cleared.

        Returns True if the email was newly inserted.
        """
        now = datetime.now(UTC).isoformat()
        with self._lock:
            existed = self.exists_by_id(email.id)
            self.conn.execute(
                """INSERT INTO emails
                   (id, thread_id, subject, sender, recipients, cc, date, body,
                    summary, labels, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       subject = excluded.subject,
                       sender = excluded.sender,
                       recipients = excluded.recipients,
                       cc = excluded.cc,
                       date = excluded.date,
                       body = CASE WHEN excluded.body != '' THEN excluded.body
                                   ELSE emails.body END,
                       summary = COALESCE(NULLIF(emails.summary, ''), excluded.summary),
                       updated_at = excluded.updated_at""",
                (
                    email.id,
                    email.thread_id,
                    email.subject,
                    email.sender,
                    email.to,
                    email.cc,
                    _to_utc_iso(email.date),
                    email.body,
                    email.summary or None,
                    json.dumps(list(email.labels)),
                    now,
                    now,
                ),
            )
            self.conn.commit()
        return not existed

    def get_email(self, email_id: str) -> EmailRef | None:
        """Get a stored email by ID."""
        with self._lock:
            row = self.conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
        return self._row_to_email(row) if row else None

    def pending_summaries(self, limit: int) -> list[EmailRef]:
        """Emails without a summary, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM emails WHERE summary IS NULL OR summary = '' "
                "ORDER BY date ASC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_email(row) for row in rows]

    def save_summary(self, email_id: str, summary: str, labels: Sequence[str]) -> bool:
        """Store a summary unless one was written in the meantime.

        Returns True if this call wrote the summary.
        """
        now = datetime.now(UTC).isoformat()
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE emails SET summary = ?, labels = ?, updated_at = ? "
                "WHERE id = ? AND (summary IS NULL OR summary = '')",
                (summary, json.dumps(list(labels)), now, email_id),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def pending_embeddings(self, limit: int) -> list[EmailRef]:
        """Emails not yet processed for vector search, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM emails WHERE processed_for_vector = 0 OR embedding IS NULL "
                "ORDER BY date ASC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_email(row) for row in rows]

    def save_embedding(self, email_id: str, embedding: Sequence[float]) -> bool:
        """Store an embedding unless one was written in the meantime."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE emails SET embedding = ?, processed_for_vector = 1, updated_at = ? "
                "WHERE id = ? AND (processed_for_vector = 0 OR embedding IS NULL)",
                (json.dumps(list(embedding)), now, email_id),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def get_embedding(self, email_id: str) -> list[float] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT embedding FROM emails WHERE id = ?", (email_id,)
            ).fetchone()
        if not row or row["embedding"] is None:
            return None
        return json.loads(row["embedding"])

    def load_corpus(
        self, date_range: DateRange | None = None, filters: EmailFilter | None = None
    ) -> list[EmailRef]:
        """Load stored emails for a date range and client filter, newest first."""
        query = "SELECT * FROM emails"
        params: list[str] = []
        if date_range is not None:
            query += " WHERE date >= ? AND date <= ?"
            params = [_to_utc_iso(date_range.start), _to_utc_iso(date_range.end)]
        query += " ORDER BY date DESC, id ASC"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        emails = [self._row_to_email(row) for row in rows]
        if filters is not None and not filters.is_empty:
            emails = [email for email in emails if filters.matches(email)]
        return emails

    def find_similar(
        self,
        query_vector: Sequence[float],
        date_range: DateRange | None = None,
        filters: EmailFilter | None = None,
        limit: int = 10,
    ) -> list[SimilarEmail]:
        """Embedded emails ranked by cosine similarity to query_vector, best first.

        Emails without an embedding, or whose embedding has a different
        dimension or no magnitude, are left out.

        Raises:
            InvalidInputError: If the query vector is empty or all zeros, or limit < 1.
        """
        if limit < 1:
            raise InvalidInputError("limit must be positive")
        query = [float(x) for x in query_vector]
        if not any(query):
            raise InvalidInputError("query vector must be non-empty and non-zero")

        sql = "SELECT * FROM emails WHERE embedding IS NOT NULL"
        params: list[str] = []
        if date_range is not None:
            sql += " AND date >= ? AND date <= ?"
            params = [_to_utc_iso(date_range.start), _to_utc_iso(date_range.end)]

        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()

        ranked: list[SimilarEmail] = []
        skipped = 0
        for row in rows:
            vector = json.loads(row["embedding"])
            if len(vector) != len(query) or not any(vector):
                skipped += 1
                continue
            email = self._row_to_email(row)
            if filters is not None and not filters.is_empty and not filters.matches(email):
                continue
            ranked.append(SimilarEmail(email, cosine_similarity(query, vector)))
        if skipped:
            logger.warning("Skipped %d embeddings not comparable with the query", skipped)

        ranked.sort(key=lambda match: (-match.similarity, match.email.id))
        return ranked[:limit]

    def count_by_status(self) -> dict[str, int]:
        """Counts of stored, summarized and embedded emails."""
        with self._lock:
            row = self.conn.execute(
                """SELECT
                       COUNT(*) AS total,
                       SUM(CASE WHEN summary IS NOT NULL AND summary != '' THEN 1 ELSE 0 END)
                           AS summarized,
                       SUM(processed_for_vector) AS embedded
                   FROM emails"""
            ).fetchone()
        return {
            "total": row["total"] or 0,
            "summarized": row["summarized"] or 0,
            "embedded": row["embedded"] or 0,
        }

    def start_run(self, task_id: str, client_id: str | None = None) -> int:
        """Record the start of an ingestion run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO ingest_runs (task_id, client_id, started_at) VALUES (?, ?, ?)",
                (task_id, client_id or "", now),
            )
            self.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(
        self,
        run_id: int,
        emails_seen: int = 0,
        emails_inserted: int = 0,
        emails_skipped: int = 0,
    ) -> None:
        """Record the completion of an ingestion run."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self.conn.execute(
                """UPDATE ingest_runs SET
                   completed_at = ?, emails_seen = ?, emails_inserted = ?, emails_skipped = ?
                   WHERE run_id = ?""",
                (now, emails_seen, emails_inserted, emails_skipped, run_id),
            )
            self.conn.commit()

    @staticmethod
    def _row_to_email(row: sqlite3.Row) -> EmailRef:
        return EmailRef(
            id=row["id"],
            thread_id=row["thread_id"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            to=row["recipients"] or "",
            cc=row["cc"] or "",
            date=datetime.fromisoformat(row["date"]),
            body=row["body"] or "",
            summary=row["summary"] or "",
            labels=tuple(json.loads(row["labels"] or "[]")),
        )
