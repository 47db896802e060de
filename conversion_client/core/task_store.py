"""
SQLite task store for ConversionClient.
Thread-safe via check_same_thread=False + explicit locking; every write is a
single transaction so a record is never left half-updated.
"""

import sqlite3
import logging
import threading
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from pathlib import Path

from conversion_client.core.constants import DB_PATH, TaskStatus, TaskPhase, TERMINAL_STATUSES
from conversion_client.core.models import LocalTaskRecord
from conversion_client.core.error_codes import IdentityError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 3

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS tasks (
    local_id TEXT PRIMARY KEY,
    current_task_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_size INTEGER DEFAULT 0,
    params TEXT NOT NULL DEFAULT '{}',
    server_task_id TEXT,
    batch_id TEXT,
    status TEXT NOT NULL DEFAULT 'Pending',
    phase TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
"""

# Columns added after the first schema; applied with ALTER TABLE when missing.
_MIGRATED_COLUMNS = [
    ("speed", "REAL"),
    ("eta_sec", "INTEGER"),
    ("server_created_at", "TEXT"),
    ("completed_at", "TEXT"),
    ("downloaded_at", "TEXT"),
    ("is_downloaded", "INTEGER DEFAULT 0"),
    ("local_output_path", "TEXT"),
    ("source_file_processed", "INTEGER DEFAULT 0"),
    ("source_file_action", "TEXT"),
    ("archive_path", "TEXT"),
    ("retry_count", "INTEGER DEFAULT 0"),
    ("max_retries", "INTEGER DEFAULT 3"),
    ("last_error", "TEXT"),
    ("superseded_ids", "TEXT"),
]

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_tasks_current_task_id ON tasks(current_task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_server_task_id ON tasks(server_task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_downloaded ON tasks(is_downloaded);
"""

_COLUMNS = [f.name for f in fields(LocalTaskRecord)]
_BOOL_COLUMNS = {'is_downloaded', 'source_file_processed'}


class TaskStore:
    """Durable key-value store for LocalTaskRecords."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=FULL")
        self._migrate()
        logger.info("TaskStore ready db=%s total=%d", self.db_path, self.count())

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cols = {row["name"] for row in cur.execute("PRAGMA table_info(tasks)")}
            for name, decl in _MIGRATED_COLUMNS:
                if name not in cols:
                    cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                    logger.info("TaskStore migration: added column %s", name)
            cur.executescript(_CREATE_INDEXES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LocalTaskRecord:
        data = {k: row[k] for k in row.keys() if k in _COLUMNS}
        for key in _BOOL_COLUMNS:
            data[key] = bool(data.get(key))
        return LocalTaskRecord(**data)

    def _writable(self, key: str) -> sqlite3.Connection:
        """The open connection; writes after close() fail like an unknown id."""
        if self.conn is None:
            raise IdentityError(key, "Task store is closed")
        return self.conn

    def _fetch_one(self, sql: str, params: tuple) -> LocalTaskRecord | None:
        with self._lock:
            if self.conn is None:
                return None
            row = self.conn.execute(sql, params).fetchone()
        return self._row_to_record(row) if row else None

    def _update_where(self, column: str, key: str, **values) -> LocalTaskRecord:
        """
        Apply `values` to the record whose `column` equals `key` in one
        transaction and return the updated record.
        Raises IdentityError (and writes nothing) if no record matches.
        """
        values['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in values)
        with self._lock:
            with self._writable(key):
                row = self.conn.execute(
                    f"SELECT local_id FROM tasks WHERE {column} = ? "
                    "ORDER BY created_at ASC, local_id ASC LIMIT 1",
                    (key,),
                ).fetchone()
                if row is None:
                    raise IdentityError(key)
                local_id = row["local_id"]
                self.conn.execute(
                    f"UPDATE tasks SET {sets} WHERE local_id = ?",
                    list(values.values()) + [local_id],
                )
            return self.get(local_id)

    # ── Record CRUD ───────────────────────────────────────────────────

    def put(self, record: LocalTaskRecord) -> LocalTaskRecord:
        """Insert or fully replace a record keyed by its local_id."""
        now = self._now()
        if record.created_at is None:
            record.created_at = now
        record.updated_at = now
        values = [getattr(record, c) for c in _COLUMNS]
        placeholders = ', '.join('?' for _ in _COLUMNS)
        with self._lock:
            with self._writable(record.local_id):
                self.conn.execute(
                    f"INSERT OR REPLACE INTO tasks ({', '.join(_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    values,
                )
        return record

    def put_many(self, records: list[LocalTaskRecord]):
        """Insert several records in one transaction."""
        now = self._now()
        rows = []
        for record in records:
            if record.created_at is None:
                record.created_at = now
            record.updated_at = now
            rows.append([getattr(record, c) for c in _COLUMNS])
        placeholders = ', '.join('?' for _ in _COLUMNS)
        with self._lock:
            with self._writable(records[0].local_id if records else ""):
                self.conn.executemany(
                    f"INSERT OR REPLACE INTO tasks ({', '.join(_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    rows,
                )

    def get(self, local_id: str) -> LocalTaskRecord | None:
        return self._fetch_one("SELECT * FROM tasks WHERE local_id = ?", (local_id,))

    def find_by_current_id(self, current_task_id: str) -> LocalTaskRecord | None:
        return self._fetch_one(
            "SELECT * FROM tasks WHERE current_task_id = ? "
            "ORDER BY created_at ASC, local_id ASC LIMIT 1",
            (current_task_id,),
        )

    def find_by_any_id(self, task_id: str) -> LocalTaskRecord | None:
        """Look a record up by current, server or local identifier, in that order."""
        return (self.find_by_current_id(task_id)
                or self._fetch_one("SELECT * FROM tasks WHERE server_task_id = ? LIMIT 1",
                                   (task_id,))
                or self.get(task_id))

    def list_all(self) -> list[LocalTaskRecord]:
        with self._lock:
            if self.conn is None:
                return []
            rows = self.conn.execute(
                "SELECT * FROM tasks ORDER BY created_at ASC, local_id ASC"
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_downloaded(self) -> list[LocalTaskRecord]:
        with self._lock:
            if self.conn is None:
                return []
            rows = self.conn.execute(
                "SELECT * FROM tasks WHERE is_downloaded = 1 ORDER BY created_at ASC"
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            if self.conn is None:
                return 0
            return self.conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]

    # ── Identity ──────────────────────────────────────────────────────

    def update_identifier_mapping(self, local_id: str, server_task_id: str,
                                  batch_id: str | None = None) -> LocalTaskRecord:
        """Record the server id and switch current_task_id over to it."""
        fields_ = {
            'server_task_id': server_task_id,
            'current_task_id': server_task_id,
            'server_created_at': self._now(),
        }
        if batch_id:
            fields_['batch_id'] = batch_id
        record = self._update_where('local_id', local_id, **fields_)
        logger.info("Identifier mapping %s -> %s", local_id, server_task_id)
        return record

    # ── Status / progress ─────────────────────────────────────────────

    def update_status(self, current_task_id: str, status: str,
                      error: str | None = None, phase: str | None = None) -> LocalTaskRecord:
        fields_ = {'status': status}
        if phase is not None:
            fields_['phase'] = phase
        if error:
            fields_['last_error'] = error[:2000]
        if status in TERMINAL_STATUSES:
            fields_['completed_at'] = self._now()
            fields_['speed'] = None
            fields_['eta_sec'] = None
        if status == TaskStatus.COMPLETED:
            fields_['progress'] = 100
        return self._update_where('current_task_id', current_task_id, **fields_)

    def update_progress(self, current_task_id: str, progress: float, phase: str,
                        status: str | None = None, speed: float | None = None,
                        eta: float | None = None) -> LocalTaskRecord:
        fields_ = {
            'progress': int(round(progress)),
            'phase': phase,
            'speed': speed,
            'eta_sec': int(eta) if eta is not None else None,
        }
        if status is not None:
            fields_['status'] = status
        return self._update_where('current_task_id', current_task_id, **fields_)

    # ── Download bookkeeping ──────────────────────────────────────────

    def update_download_state(self, current_task_id: str, local_path: str) -> LocalTaskRecord:
        return self._update_where(
            'current_task_id', current_task_id,
            is_downloaded=1,
            local_output_path=str(local_path),
            downloaded_at=self._now(),
        )

    def clear_download_state(self, current_task_id: str) -> LocalTaskRecord:
        return self._update_where(
            'current_task_id', current_task_id,
            is_downloaded=0,
            local_output_path=None,
            downloaded_at=None,
        )

    def update_source_processing(self, local_id: str, action: str,
                                 archive_path: str | None = None) -> LocalTaskRecord:
        fields_ = {
            'source_file_processed': 1,
            'source_file_action': action,
        }
        if archive_path:
            fields_['archive_path'] = str(archive_path)
        return self._update_where('local_id', local_id, **fields_)

    # ── Retry ─────────────────────────────────────────────────────────

    def increment_retry(self, local_id: str) -> LocalTaskRecord:
        with self._lock:
            with self._writable(local_id):
                cur = self.conn.execute(
                    "UPDATE tasks SET retry_count = retry_count + 1, updated_at = ? "
                    "WHERE local_id = ?",
                    (self._now(), local_id),
                )
            if cur.rowcount == 0:
                raise IdentityError(local_id)
            return self.get(local_id)

    def reset_for_retry(self, local_id: str) -> LocalTaskRecord:
        """Return a failed record to Pending/local-keyed with one more retry used."""
        with self._lock:
            record = self.increment_retry(local_id)
            superseded = record.superseded
            if record.server_task_id:
                superseded.add(record.server_task_id)
            return self._update_where(
                'local_id', local_id,
                current_task_id=local_id,
                superseded_ids=",".join(sorted(superseded)) or None,
                server_task_id=None,
                server_created_at=None,
                status=TaskStatus.PENDING,
                phase=TaskPhase.PENDING,
                progress=0,
                speed=None,
                eta_sec=None,
                completed_at=None,
                last_error=None,
            )

    # ── Removal ───────────────────────────────────────────────────────

    def delete(self, local_id: str):
        with self._lock:
            with self._writable(local_id):
                cur = self.conn.execute("DELETE FROM tasks WHERE local_id = ?", (local_id,))
            if cur.rowcount == 0:
                raise IdentityError(local_id)

    def delete_completed_before(self, days: int = 30) -> int:
        """Remove Completed records finished more than `days` ago."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._lock:
            with self._writable("completed"):
                cur = self.conn.execute(
                    "DELETE FROM tasks WHERE status = ? AND completed_at IS NOT NULL "
                    "AND completed_at < ?",
                    (TaskStatus.COMPLETED, cutoff),
                )
        logger.info("Removed %d completed tasks older than %d days", cur.rowcount, days)
        return cur.rowcount
