import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .config import Settings, validate_config_value, settings_from_mapping, DB_FILE
from .db import connect_db
from .models import Job, Subscription, ACTIVE, EXPIRED, JOB_STATES
from .utils import now_iso, iso_in_utc_from_seconds_from_now, to_iso, parse_iso


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    value = validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


def load_settings(conn, db_path: str = DB_FILE) -> Settings:
    return settings_from_mapping(get_config(conn), db_path=db_path)


@contextmanager
def _connection(path: str):
    conn = connect_db(path)
    try:
        yield conn
    finally:
        conn.close()


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=row["kind"],
        payload=json.loads(row["payload"]),
        state=row["state"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_error=row["last_error"],
    )


# ---------- Job store ----------
class SqliteJobStore:
    """Job records keyed by id. Expired rows read as absent."""

    def __init__(self, path: str = DB_FILE):
        self.path = path

    def get(self, job_id: str) -> Optional[Job]:
        with _connection(self.path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id=? AND (expires_at IS NULL OR expires_at > ?)",
                (job_id, now_iso()),
            ).fetchone()
        return _row_to_job(row) if row else None

    def put(self, job: Job, ttl_seconds: Optional[int] = None) -> None:
        # Without ttl_seconds the upsert keeps any TTL already set on the row.
        expires_at = iso_in_utc_from_seconds_from_now(ttl_seconds) if ttl_seconds else None
        with _connection(self.path) as conn, conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, kind, payload, state, attempts, max_attempts, created_at, updated_at,
                    last_error, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     kind=excluded.kind, payload=excluded.payload, state=excluded.state,
                     attempts=excluded.attempts, max_attempts=excluded.max_attempts,
                     updated_at=excluded.updated_at, last_error=excluded.last_error,
                     expires_at=COALESCE(excluded.expires_at, jobs.expires_at)""",
                (
                    job.id, job.kind, json.dumps(job.payload), job.state, job.attempts,
                    job.max_attempts, job.created_at, job.updated_at, job.last_error, expires_at,
                ),
            )

    def expire(self, job_id: str, ttl_seconds: int) -> bool:
        with _connection(self.path) as conn, conn:
            res = conn.execute(
                "UPDATE jobs SET expires_at=? WHERE id=?",
                (iso_in_utc_from_seconds_from_now(ttl_seconds), job_id),
            )
        return res.rowcount == 1

    def iter_jobs(self, state: Optional[str] = None) -> Iterator[Job]:
        sql = "SELECT * FROM jobs WHERE (expires_at IS NULL OR expires_at > ?)"
        params = [now_iso()]
        if state:
            sql += " AND state=?"
            params.append(state)
        sql += " ORDER BY created_at ASC"
        with _connection(self.path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return iter([_row_to_job(r) for r in rows])

    def purge_expired(self) -> int:
        with _connection(self.path) as conn, conn:
            res = conn.execute(
                "DELETE FROM jobs WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now_iso(),),
            )
        return res.rowcount


# ---------- FIFO queue ----------
class SqliteJobQueue:
    """Job ids ordered by insertion sequence; head = lowest seq."""

    def __init__(self, path: str = DB_FILE):
        self.path = path

    def push_tail(self, job_id: str) -> None:
        with _connection(self.path) as conn, conn:
            conn.execute("INSERT INTO job_queue(job_id) VALUES(?)", (job_id,))

    def pop_head(self) -> Optional[str]:
        # Single statement, so concurrent pops never hand out the same row.
        with _connection(self.path) as conn, conn:
            rows = conn.execute(
                """DELETE FROM job_queue
                   WHERE seq = (SELECT MIN(seq) FROM job_queue)
                   RETURNING job_id"""
            ).fetchall()
        return rows[0]["job_id"] if rows else None

    def length(self) -> int:
        with _connection(self.path) as conn:
            return conn.execute("SELECT COUNT(1) AS c FROM job_queue").fetchone()["c"]

    def contains(self, job_id: str) -> bool:
        with _connection(self.path) as conn:
            row = conn.execute("SELECT 1 FROM job_queue WHERE job_id=? LIMIT 1", (job_id,)).fetchone()
        return row is not None


# ---------- Subscriptions ----------
def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        plan_name=row["plan_name"],
        status=row["status"],
        start_date=row["start_date"],
        end_date=row["end_date"],
    )


def _normalise(value: str) -> str:
    return to_iso(parse_iso(value))


class SqliteSubscriptionRepository:
    """Local view of subscription rows used by the expiration scanner."""

    def __init__(self, path: str = DB_FILE):
        self.path = path

    def add(self, sub: Subscription) -> Subscription:
        if not sub.id or not sub.id.strip():
            raise ValueError("Subscription id cannot be empty.")
        with _connection(self.path) as conn, conn:
            conn.execute(
                """INSERT INTO subscriptions
                   (id, email, name, plan_name, status, start_date, end_date, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    sub.id, sub.email, sub.name, sub.plan_name, sub.status,
                    _normalise(sub.start_date) if sub.start_date else now_iso(),
                    _normalise(sub.end_date), now_iso(),
                ),
            )
        return self.get(sub.id)

    def get(self, sub_id: str) -> Optional[Subscription]:
        with _connection(self.path) as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE id=?", (sub_id,)).fetchone()
        return _row_to_subscription(row) if row else None

    def find_active_expired(self, now: datetime) -> List[Subscription]:
        with _connection(self.path) as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE status=? AND end_date < ? ORDER BY end_date ASC",
                (ACTIVE, to_iso(now)),
            ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def mark_expired(self, sub: Subscription) -> Optional[Subscription]:
        """Returns the updated subscription, or None if it was no longer ACTIVE."""
        with _connection(self.path) as conn, conn:
            res = conn.execute(
                "UPDATE subscriptions SET status=?, updated_at=? WHERE id=? AND status=?",
                (EXPIRED, now_iso(), sub.id, ACTIVE),
            )
        if res.rowcount != 1:
            return None
        return self.get(sub.id)


# ---------- Queries ----------
def list_jobs(store, state: Optional[str] = None) -> List[Job]:
    return list(store.iter_jobs(state))


def counts(store, queue) -> Dict[str, int]:
    out = {s: 0 for s in JOB_STATES}
    for job in store.iter_jobs():
        out[job.state] = out.get(job.state, 0) + 1
    out["queued"] = queue.length()
    return out
