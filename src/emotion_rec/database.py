"""
SQLite-backed Q-table and experience log.

A Database owns a per-thread connection pool. Stores built on it satisfy the
same contracts as the in-memory ones; QTable updates run inside
BEGIN IMMEDIATE so a read-modify-write on one key is serialized across
threads and processes.
"""

import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from .config import DB_HEALTH_CHECK_INTERVAL, DB_PATH, DB_POOL_SIZE, MAX_EXPERIENCES_PER_USER
from .errors import StorageFault
from .experience import Experience, ExperienceLog
from .qtable import QEntry, QTableStore
from .state import EmotionalState, DesiredState

logger = logging.getLogger(__name__)


def parse_timestamp(timestamp_str: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken to be UTC."""
    dt = datetime.fromisoformat(timestamp_str)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class ConnectionPool:
    """
    One SQLite connection per thread, shared by every store on a Database.

    Connections idle past health_check_interval seconds are checked with
    SELECT 1 on their next use and reopened if that fails. Connections
    owned by threads that have exited are closed every cleanup_interval
    seconds, and whenever the pool is full. The pool also tracks per-thread
    transaction nesting for Database.transaction().
    """

    def __init__(
        self,
        db_path: str,
        max_size: int = DB_POOL_SIZE,
        health_check_interval: float = DB_HEALTH_CHECK_INTERVAL,
        cleanup_interval: float = 60.0,
    ):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval
        self._cleanup_interval = cleanup_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_checked: dict[int, float] = {}
        self._depth: dict[int, int] = {}
        self._last_cleanup = time.monotonic()

    def _open(self) -> sqlite3.Connection:
        # Autocommit; Database.transaction() issues BEGIN IMMEDIATE itself
        conn = sqlite3.connect(self._db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @staticmethod
    def _is_healthy(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _discard(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._last_checked.pop(thread_id, None)
        self._depth.pop(thread_id, None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _maybe_cleanup(self, force: bool = False) -> int:
        """Close connections whose thread has exited. Caller holds the lock."""
        now = time.monotonic()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return 0
        self._last_cleanup = now

        alive = {t.ident for t in threading.enumerate()}
        dead = [tid for tid in self._connections if tid not in alive]
        for thread_id in dead:
            self._discard(thread_id)
        if dead:
            logger.info(f"Closed {len(dead)} connections of exited threads, {len(self._connections)} open")
        return len(dead)

    def get_connection(self) -> sqlite3.Connection:
        """The calling thread's connection, opened on first use."""
        thread_id = threading.get_ident()
        now = time.monotonic()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_checked.get(thread_id, now) >= self._health_check_interval:
                if self._is_healthy(conn):
                    self._last_checked[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, reopening")
                    depth = self._depth.get(thread_id, 0)
                    self._discard(thread_id)
                    self._depth[thread_id] = depth
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size and not self._maybe_cleanup(force=True):
                    raise StorageFault(
                        f"Connection pool exhausted ({self._max_size} connections); "
                        f"too many live threads are using {self._db_path}"
                    )
                conn = self._open()
                self._connections[thread_id] = conn
                self._last_checked[thread_id] = now
                self._depth.setdefault(thread_id, 0)
                logger.debug(f"Opened connection for thread {thread_id} ({len(self._connections)} open)")

            return conn

    def cleanup(self) -> int:
        """Close connections of exited threads now. Returns how many were closed."""
        with self._lock:
            return self._maybe_cleanup(force=True)

    def get_transaction_depth(self) -> int:
        return self._depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = self._depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = max(0, self._depth.get(thread_id, 1) - 1)

    def close_all(self) -> None:
        with self._lock:
            for thread_id in list(self._connections):
                self._discard(thread_id)
            self._depth.clear()
        logger.info(f"Closed connection pool for {self._db_path}")

    def stats(self) -> dict:
        with self._lock:
            return {
                "active_connections": len(self._connections),
                "max_size": self._max_size,
                "thread_ids": list(self._connections),
            }


SCHEMA = """
    CREATE TABLE IF NOT EXISTS q_values (
        user_id TEXT NOT NULL,
        state_key TEXT NOT NULL,
        content_id TEXT NOT NULL,
        q_value REAL NOT NULL,
        visit_count INTEGER NOT NULL DEFAULT 0,
        last_updated TEXT NOT NULL,
        PRIMARY KEY (user_id, state_key, content_id)
    );

    CREATE TABLE IF NOT EXISTS exploration_rates (
        user_id TEXT PRIMARY KEY,
        rate REAL NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS experiences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        content_id TEXT NOT NULL,
        state_before TEXT NOT NULL,     -- JSON
        state_after TEXT NOT NULL,      -- JSON
        desired_state TEXT,             -- JSON
        reward REAL NOT NULL,
        timestamp TEXT NOT NULL,
        completed INTEGER NOT NULL DEFAULT 0,
        rating REAL,
        watch_duration REAL NOT NULL DEFAULT 0,
        total_duration REAL NOT NULL DEFAULT 0,
        q_value_before REAL,
        q_value_after REAL,
        was_exploration INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_experiences_user ON experiences(user_id, id);
"""


class Database:
    """SQLite file plus its connection pool."""

    def __init__(
        self,
        path: Path | str = DB_PATH,
        pool_size: int = DB_POOL_SIZE,
        health_check_interval: float = DB_HEALTH_CHECK_INTERVAL,
    ):
        self.path = Path(path)
        self.path.parent.mkdir(exist_ok=True, parents=True)
        self.pool = ConnectionPool(str(self.path), pool_size, health_check_interval)

    def init(self) -> "Database":
        with self.transaction() as conn:
            _execute_script(conn, SCHEMA)
        logger.info(f"Initialized database at {self.path}")
        return self

    @contextmanager
    def transaction(self):
        """
        Yield a connection inside a write transaction.

        Nested calls reuse the outer transaction; only the outermost one
        commits or rolls back. sqlite3 errors surface as StorageFault.
        """
        pool = self.pool
        conn = pool.get_connection()
        is_outermost = pool.get_transaction_depth() == 0
        pool.increment_transaction_depth()
        try:
            if is_outermost:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if is_outermost:
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            if is_outermost and conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageFault(f"database error: {e}") from e
        except BaseException:
            if is_outermost and conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            pool.decrement_transaction_depth()

    @contextmanager
    def read(self):
        """Yield a connection for reads; no transaction is opened."""
        conn = self.pool.get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageFault(f"database error: {e}") from e

    def close(self):
        self.pool.close_all()


def _execute_script(conn: sqlite3.Connection, script: str) -> None:
    # executescript() would COMMIT the open transaction first
    for statement in script.split(";"):
        if statement.strip():
            conn.execute(statement)


def _row_to_entry(row: sqlite3.Row) -> QEntry:
    return QEntry(
        user_id=row["user_id"],
        state_key=row["state_key"],
        content_id=row["content_id"],
        q_value=row["q_value"],
        visit_count=row["visit_count"],
        last_updated=parse_timestamp(row["last_updated"]),
    )


class SQLiteQTable(QTableStore):
    def __init__(self, db: Database, initial_exploration_rate: float | None = None):
        self.db = db
        self._initial_rate = initial_exploration_rate

    def get(self, user_id, state_key, content_id):
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM q_values WHERE user_id = ? AND state_key = ? AND content_id = ?",
                (user_id, state_key, content_id),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def state_actions(self, user_id, state_key):
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM q_values WHERE user_id = ? AND state_key = ?",
                (user_id, state_key),
            ).fetchall()
        return {row["content_id"]: _row_to_entry(row) for row in rows}

    def update(self, user_id, state_key, content_id, fn):
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM q_values WHERE user_id = ? AND state_key = ? AND content_id = ?",
                (user_id, state_key, content_id),
            ).fetchone()
            old = _row_to_entry(row) if row else None
            new = fn(old)
            conn.execute(
                """
                INSERT INTO q_values (user_id, state_key, content_id, q_value, visit_count, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, state_key, content_id) DO UPDATE SET
                    q_value = excluded.q_value,
                    visit_count = excluded.visit_count,
                    last_updated = excluded.last_updated
                """,
                (user_id, state_key, content_id, new.q_value, new.visit_count, new.last_updated.isoformat()),
            )
        return old, QEntry(user_id, state_key, content_id, new.q_value, new.visit_count, new.last_updated)

    def get_exploration_rate(self, user_id):
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT rate FROM exploration_rates WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["rate"] if row else self._initial_rate

    def set_exploration_rate(self, user_id, rate):
        with self.db.transaction() as conn:
            self._write_rate(conn, user_id, rate)

    def update_exploration_rate(self, user_id, fn):
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT rate FROM exploration_rates WHERE user_id = ?", (user_id,)
            ).fetchone()
            new_rate = fn(row["rate"] if row else self._initial_rate)
            self._write_rate(conn, user_id, new_rate)
        return new_rate

    @staticmethod
    def _write_rate(conn: sqlite3.Connection, user_id: str, rate: float) -> None:
        conn.execute(
            """
            INSERT INTO exploration_rates (user_id, rate, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET rate = excluded.rate, updated_at = excluded.updated_at
            """,
            (user_id, rate, datetime.now(timezone.utc).isoformat()),
        )

    def entries(self, user_id=None):
        with self.db.read() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM q_values").fetchall()
            else:
                rows = conn.execute("SELECT * FROM q_values WHERE user_id = ?", (user_id,)).fetchall()
        return iter([_row_to_entry(row) for row in rows])


class SQLiteExperienceLog(ExperienceLog):
    """Experience history table, trimmed to the newest `max_per_user` rows per user."""

    def __init__(self, db: Database, max_per_user: int = MAX_EXPERIENCES_PER_USER):
        if max_per_user < 1:
            raise ValueError("max_per_user must be at least 1")
        self.db = db
        self.max_per_user = max_per_user

    def append(self, experience):
        e = experience
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO experiences (
                    user_id, content_id, state_before, state_after, desired_state, reward,
                    timestamp, completed, rating, watch_duration, total_duration,
                    q_value_before, q_value_after, was_exploration
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    e.user_id,
                    e.content_id,
                    json.dumps(e.state_before.to_dict()),
                    json.dumps(e.state_after.to_dict()),
                    json.dumps(e.desired_state.to_dict()) if e.desired_state else None,
                    e.reward,
                    e.timestamp.isoformat(),
                    int(e.completed),
                    e.rating,
                    e.watch_duration,
                    e.total_duration,
                    e.q_value_before,
                    e.q_value_after,
                    int(e.was_exploration),
                ),
            )
            conn.execute(
                """
                DELETE FROM experiences WHERE user_id = ? AND id NOT IN (
                    SELECT id FROM experiences WHERE user_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (e.user_id, e.user_id, self.max_per_user),
            )

    def history(self, user_id, limit=None):
        if limit is not None and limit <= 0:
            return []
        with self.db.read() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM experiences WHERE user_id = ? ORDER BY id", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM (SELECT * FROM experiences WHERE user_id = ? ORDER BY id DESC LIMIT ?) "
                    "ORDER BY id",
                    (user_id, limit),
                ).fetchall()
        return [self._row_to_experience(row) for row in rows]

    def count(self, user_id):
        with self.db.read() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM experiences WHERE user_id = ?", (user_id,)).fetchone()
        return row["n"]

    def clear(self, user_id=None):
        with self.db.transaction() as conn:
            if user_id is None:
                conn.execute("DELETE FROM experiences")
            else:
                conn.execute("DELETE FROM experiences WHERE user_id = ?", (user_id,))

    @staticmethod
    def _row_to_experience(row: sqlite3.Row) -> Experience:
        desired = json.loads(row["desired_state"]) if row["desired_state"] else None
        return Experience(
            user_id=row["user_id"],
            content_id=row["content_id"],
            state_before=EmotionalState.from_dict(json.loads(row["state_before"])),
            state_after=EmotionalState.from_dict(json.loads(row["state_after"])),
            reward=row["reward"],
            desired_state=DesiredState.from_dict(desired) if desired else None,
            timestamp=parse_timestamp(row["timestamp"]),
            completed=bool(row["completed"]),
            rating=row["rating"],
            watch_duration=row["watch_duration"],
            total_duration=row["total_duration"],
            q_value_before=row["q_value_before"],
            q_value_after=row["q_value_after"],
            was_exploration=bool(row["was_exploration"]),
        )
