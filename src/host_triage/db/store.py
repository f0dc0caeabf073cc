"""
host_triage.db Operations - Append-only Artifact Store

Every save_<kind>() call is one transaction: all rows of the batch are
written, or none are. Snapshot kinds (system info, network info) insert the
parent row first and attach their child rows (disks, interfaces) to the
parent id it generated.

A single connection is shared by all callers; a lock serializes writes so
only one transaction is open at a time.

Usage:
    from host_triage.db import ArtifactStore

    store = ArtifactStore("/path/to/host_triage.db")
    store.init_schema()
    store.save(ArtifactKind.LOGIN_FAILED, records)
    rows = store.fetch_rows("login_failed", limit=50)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from ..exceptions import DatabaseError
from ..models import ArtifactKind, EvtxEvent, NetworkSnapshot, SystemSnapshot
from .schemas import TRIAGE_SCHEMA

logger = logging.getLogger(__name__)

# Insertable columns per table (id and created_at are added by the store)
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "user_info": ("username", "uid", "gid", "home_dir", "name"),
    "system_info": ("hostname", "os", "arch", "cpu_cores", "kernel_version",
                    "cpu_usage", "total_memory", "memory_usage"),
    "disk_info": ("system_info_id", "mount_point", "total_size", "used_size",
                  "free_size", "usage"),
    "cron_task": ("line", "source"),
    "startup_item": ("name", "path", "type", "enabled", "last_mod_time", "size",
                     "description"),
    "file_monitor": ("path", "file_exists", "size", "mode", "mod_time", "create_time",
                     "access_time", "change_time", "is_dir", "is_symlink", "owner",
                     "group_name", "permissions", "description"),
    "login_failed": ("time", "event_id", "event_type", "source", "username",
                     "ip_address", "reason"),
    "login_success": ("time", "event_id", "event_type", "source", "username",
                      "ip_address"),
    "rdp_login": ("time", "username", "ip", "status", "description"),
    "network_info": ("hostname", "gateway"),
    "network_interface": ("network_info_id", "name", "ip", "mac", "bytes_sent",
                          "bytes_recv", "packets_sent", "packets_recv"),
    "network_connection": ("proto", "local_addr", "remote_addr", "status", "pid"),
    "process_info": ("pid", "name", "ppid", "parent_name", "create_time", "exe",
                     "cmdline", "username", "file_ctime", "file_mtime", "md5",
                     "signature", "cpu_percent", "mem_percent"),
    "shell_history": ("time", "command", "user", "shell"),
    "patch_record": ("time", "title", "description", "status", "kb"),
    "evtx_event": ("time", "event_id", "provider", "level", "channel", "computer",
                   "user_id", "description", "event_record_id", "version",
                   "qualifiers", "task", "opcode", "keywords", "process_id",
                   "thread_id", "message", "system_info", "event_data", "user_data"),
}

# Column names that differ from the record attribute they hold
_COLUMN_ATTRS = {"file_exists": "exists", "group_name": "group"}

_BOOL_COLUMNS = frozenset({"enabled", "file_exists", "is_dir", "is_symlink"})
_JSON_COLUMNS = frozenset({"system_info", "event_data", "user_data"})

KIND_TABLES: dict[ArtifactKind, str] = {
    ArtifactKind.USERS: "user_info",
    ArtifactKind.SYSTEM_INFO: "system_info",
    ArtifactKind.CRON: "cron_task",
    ArtifactKind.STARTUP: "startup_item",
    ArtifactKind.FILE_MONITOR: "file_monitor",
    ArtifactKind.LOGIN_FAILED: "login_failed",
    ArtifactKind.LOGIN_SUCCESS: "login_success",
    ArtifactKind.RDP: "rdp_login",
    ArtifactKind.NETWORK_INFO: "network_info",
    ArtifactKind.NETWORK_CONNECTION: "network_connection",
    ArtifactKind.PROCESS: "process_info",
    ArtifactKind.SHELL_HISTORY: "shell_history",
    ArtifactKind.PATCH: "patch_record",
}


def _row_values(table: str, record: Any, **extra: Any) -> tuple:
    values = []
    for column in TABLE_COLUMNS[table]:
        if column in extra:
            values.append(extra[column])
            continue
        value = getattr(record, _COLUMN_ATTRS.get(column, column))
        if column in _JSON_COLUMNS:
            value = json.dumps(value, sort_keys=True)
        values.append(value)
    return tuple(values)


def _insert_sql(table: str) -> str:
    columns = TABLE_COLUMNS[table] + ("created_at",)
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


class ArtifactStore:
    """Interface to host_triage.db."""

    def __init__(self, db_path: str | Path):
        """Initialize the store (the connection is opened lazily).

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                # isolation_level=None: transactions are opened explicitly
                self._conn = sqlite3.connect(
                    str(self.db_path), isolation_level=None, check_same_thread=False
                )
            except sqlite3.Error as e:
                raise DatabaseError(f"Cannot open database {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if isinstance(self.db_path, Path):
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def init_schema(self):
        """Initialize database schema."""
        with self._lock:
            try:
                self.connect().executescript(TRIAGE_SCHEMA)
            except sqlite3.Error as e:
                raise DatabaseError(f"Schema initialization failed: {e}") from e

    def __enter__(self) -> "ArtifactStore":
        self.init_schema()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _transaction(self, label: str) -> Iterator[sqlite3.Connection]:
        """One serialized transaction; any failure rolls back the whole batch."""
        with self._lock:
            conn = self.connect()
            try:
                conn.execute("BEGIN")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                logger.error("Rolled back %s batch: %s", label, e)
                raise DatabaseError(f"Failed to save {label}: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    # ==================== Generic Writers ====================

    def _save_flat(self, table: str, records: Iterable[Any]) -> int:
        records = list(records)
        if not records:
            return 0
        sql = _insert_sql(table)
        with self._transaction(table) as conn:
            for record in records:
                conn.execute(sql, _row_values(table, record) + (record.captured_at,))
        logger.debug("Saved %d rows to %s", len(records), table)
        return len(records)

    def _save_snapshots(
        self,
        table: str,
        child_table: str,
        parent_key: str,
        children_attr: str,
        records: Iterable[Any],
    ) -> int:
        records = list(records)
        if not records:
            return 0
        parent_sql = _insert_sql(table)
        child_sql = _insert_sql(child_table)
        with self._transaction(table) as conn:
            for record in records:
                cursor = conn.execute(
                    parent_sql, _row_values(table, record) + (record.captured_at,)
                )
                parent_id = cursor.lastrowid
                for child in getattr(record, children_attr):
                    conn.execute(
                        child_sql,
                        _row_values(child_table, child, **{parent_key: parent_id})
                        + (record.captured_at,),
                    )
        logger.debug("Saved %d %s snapshots", len(records), table)
        return len(records)

    # ==================== Per-kind Writers ====================

    def save_users(self, records) -> int:
        return self._save_flat("user_info", records)

    def save_system_info(self, records: Iterable[SystemSnapshot]) -> int:
        return self._save_snapshots("system_info", "disk_info", "system_info_id", "disks", records)

    def save_cron(self, records) -> int:
        return self._save_flat("cron_task", records)

    def save_startup_items(self, records) -> int:
        return self._save_flat("startup_item", records)

    def save_file_monitor(self, records) -> int:
        return self._save_flat("file_monitor", records)

    def save_login_failed(self, records) -> int:
        return self._save_flat("login_failed", records)

    def save_login_success(self, records) -> int:
        return self._save_flat("login_success", records)

    def save_rdp(self, records) -> int:
        return self._save_flat("rdp_login", records)

    def save_network_info(self, records: Iterable[NetworkSnapshot]) -> int:
        return self._save_snapshots(
            "network_info", "network_interface", "network_info_id", "interfaces", records
        )

    def save_network_connections(self, records) -> int:
        return self._save_flat("network_connection", records)

    def save_processes(self, records) -> int:
        return self._save_flat("process_info", records)

    def save_shell_history(self, records) -> int:
        return self._save_flat("shell_history", records)

    def save_patches(self, records) -> int:
        return self._save_flat("patch_record", records)

    def save_evtx_events(self, records: Iterable[EvtxEvent]) -> int:
        return self._save_flat("evtx_event", records)

    def save(self, kind: ArtifactKind | str, records) -> int:
        """Save a batch of records of one kind. Returns the number of parent rows."""
        kind = ArtifactKind(kind)
        writers = {
            ArtifactKind.USERS: self.save_users,
            ArtifactKind.SYSTEM_INFO: self.save_system_info,
            ArtifactKind.CRON: self.save_cron,
            ArtifactKind.STARTUP: self.save_startup_items,
            ArtifactKind.FILE_MONITOR: self.save_file_monitor,
            ArtifactKind.LOGIN_FAILED: self.save_login_failed,
            ArtifactKind.LOGIN_SUCCESS: self.save_login_success,
            ArtifactKind.RDP: self.save_rdp,
            ArtifactKind.NETWORK_INFO: self.save_network_info,
            ArtifactKind.NETWORK_CONNECTION: self.save_network_connections,
            ArtifactKind.PROCESS: self.save_processes,
            ArtifactKind.SHELL_HISTORY: self.save_shell_history,
            ArtifactKind.PATCH: self.save_patches,
        }
        return writers[kind](records)

    # ==================== Read-back ====================

    def _check_table(self, table: str) -> None:
        if table not in TABLE_COLUMNS:
            raise ValueError(f"Unknown table: {table!r}")

    def fetch_rows(self, table: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Rows of ``table`` in insert order, with booleans and JSON maps decoded."""
        self._check_table(table)
        sql = f"SELECT * FROM {table} ORDER BY id"
        params: tuple = ()
        if limit:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._lock:
            try:
                rows = self.connect().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to read {table}: {e}") from e

        results = []
        for row in rows:
            item = dict(row)
            for column in _BOOL_COLUMNS.intersection(item):
                if item[column] is not None:
                    item[column] = bool(item[column])
            if table == "evtx_event":
                for column in _JSON_COLUMNS:
                    item[column] = json.loads(item[column]) if item[column] else {}
            results.append(item)
        return results

    def count_rows(self, table: str) -> int:
        self._check_table(table)
        with self._lock:
            try:
                row = self.connect().execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to count {table}: {e}") from e
        return row[0]

    def get_stats(self) -> dict[str, int]:
        """Row count of every table."""
        return {table: self.count_rows(table) for table in TABLE_COLUMNS}
