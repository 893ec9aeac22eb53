from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dayline.models import (
    PersistedEvent,
    ReconciliationPlan,
    _ensure_tz,
    parse_iso_datetime,
    signal_from_meta,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _db_time(value: datetime) -> str:
    # Fixed width so that string comparison in SQL orders like time.
    return _ensure_tz(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _row_to_event(row: sqlite3.Row) -> PersistedEvent:
    try:
        meta = json.loads(row["meta_json"] or "{}")
    except ValueError:
        meta = {}
    return PersistedEvent(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        title=str(row["title"] or ""),
        scheduled_start=parse_iso_datetime(row["scheduled_start"]),
        scheduled_end=parse_iso_datetime(row["scheduled_end"]),
        signal=signal_from_meta(meta if isinstance(meta, dict) else {}),
        locked_at=parse_iso_datetime(row["locked_at"]),
    )


@dataclass
class AppliedPlan:
    inserted_ids: list[str] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    extended_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserted_ids),
            "updated": len(self.updated_ids),
            "deleted": len(self.deleted_ids),
            "extended": len(self.extended_ids),
            "skipped": len(self.skipped_ids),
        }


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS timeline_events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            scheduled_start TEXT NOT NULL,
            scheduled_end TEXT NOT NULL,
            meta_json TEXT NOT NULL,
            locked_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS timeline_events_user_window_idx
            ON timeline_events (user_id, scheduled_start, scheduled_end);

        CREATE TABLE IF NOT EXISTS window_locks (
            user_id TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            locked_at TEXT NOT NULL,
            stats_json TEXT NOT NULL,
            PRIMARY KEY (user_id, window_start)
        );

        CREATE TABLE IF NOT EXISTS ingestion_checkpoints (
            user_id TEXT PRIMARY KEY,
            last_processed_at TEXT NOT NULL,
            last_processed_window_start TEXT NOT NULL,
            last_processed_window_end TEXT NOT NULL,
            last_run_stats_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS reconcile_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            window_start TEXT,
            window_end TEXT,
            duration_ms INTEGER NOT NULL,
            counts_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Timeline entries

    def insert_event(
        self,
        *,
        user_id: str,
        title: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        meta: dict[str, Any],
        locked_at: datetime | None = None,
        event_id: str | None = None,
    ) -> PersistedEvent:
        event_id = event_id or str(uuid.uuid4())
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO timeline_events(
                        id, user_id, title, scheduled_start, scheduled_end, meta_json, locked_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        user_id,
                        title,
                        _db_time(scheduled_start),
                        _db_time(scheduled_end),
                        json.dumps(meta, ensure_ascii=False),
                        _db_time(locked_at) if locked_at is not None else None,
                        now,
                        now,
                    ),
                )
                conn.commit()
        event = self.get_event(event_id)
        if event is None:
            raise RuntimeError(f"Timeline event vanished after insert: {event_id}")
        return event

    def get_event(self, event_id: str) -> PersistedEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, user_id, title, scheduled_start, scheduled_end, meta_json, locked_at
                    FROM timeline_events
                    WHERE id = ?
                    """,
                    (str(event_id),),
                ).fetchone()
        return _row_to_event(row) if row else None

    def fetch_events_in_window(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        *,
        locked_only: bool = False,
    ) -> list[PersistedEvent]:
        query = """
            SELECT id, user_id, title, scheduled_start, scheduled_end, meta_json, locked_at
            FROM timeline_events
            WHERE user_id = ? AND scheduled_start < ? AND scheduled_end > ?
        """
        if locked_only:
            query += " AND locked_at IS NOT NULL"
        query += " ORDER BY scheduled_start, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, (user_id, _db_time(window_end), _db_time(window_start))).fetchall()
        return [_row_to_event(row) for row in rows]

    def locked_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[PersistedEvent]:
        return self.fetch_events_in_window(user_id, start, end, locked_only=True)

    def has_locked_events_in_window(self, user_id: str, window_start: datetime, window_end: datetime) -> bool:
        return bool(self.locked_events_in_range(user_id, window_start, window_end))

    def lock_event(self, event_id: str, locked_at: datetime | None = None) -> bool:
        stamp = _db_time(locked_at or datetime.now(timezone.utc))
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE timeline_events
                    SET locked_at = ?, updated_at = ?
                    WHERE id = ? AND locked_at IS NULL
                    """,
                    (stamp, _utc_now(), str(event_id)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def lock_events_in_window(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        locked_at: datetime | None = None,
    ) -> int:
        stamp = _db_time(locked_at or datetime.now(timezone.utc))
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE timeline_events
                    SET locked_at = ?, updated_at = ?
                    WHERE user_id = ? AND scheduled_start < ? AND scheduled_end > ? AND locked_at IS NULL
                    """,
                    (stamp, _utc_now(), user_id, _db_time(window_end), _db_time(window_start)),
                )
                conn.commit()
                return int(cursor.rowcount)

    def apply_plan(self, user_id: str, plan: ReconciliationPlan) -> AppliedPlan:
        """Apply ``plan`` in one transaction.

        Every mutation is guarded by ``locked_at IS NULL`` so a lock that landed
        after the plan was computed still wins; such operations are reported as
        skipped.
        """
        applied = AppliedPlan()
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                for candidate in plan.inserts:
                    event_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO timeline_events(
                            id, user_id, title, scheduled_start, scheduled_end, meta_json, locked_at, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
                        """,
                        (
                            event_id,
                            user_id,
                            candidate.title,
                            _db_time(candidate.scheduled_start),
                            _db_time(candidate.scheduled_end),
                            json.dumps(candidate.to_meta(), ensure_ascii=False),
                            now,
                            now,
                        ),
                    )
                    applied.inserted_ids.append(event_id)

                for update in plan.updates:
                    assignments: list[str] = []
                    params: list[Any] = []
                    if update.new_start is not None:
                        assignments.append("scheduled_start = ?")
                        params.append(_db_time(update.new_start))
                    if update.new_end is not None:
                        assignments.append("scheduled_end = ?")
                        params.append(_db_time(update.new_end))
                    if update.new_title is not None:
                        assignments.append("title = ?")
                        params.append(update.new_title)
                    if not assignments:
                        continue
                    assignments.append("updated_at = ?")
                    params.extend([now, update.event_id, user_id])
                    cursor = conn.execute(
                        f"UPDATE timeline_events SET {', '.join(assignments)} "  # nosec B608
                        "WHERE id = ? AND user_id = ? AND locked_at IS NULL",
                        params,
                    )
                    if cursor.rowcount:
                        applied.updated_ids.append(update.event_id)
                    else:
                        applied.skipped_ids.append(update.event_id)

                for extension in plan.extensions:
                    cursor = conn.execute(
                        """
                        UPDATE timeline_events
                        SET scheduled_end = ?, updated_at = ?
                        WHERE id = ? AND user_id = ? AND locked_at IS NULL
                        """,
                        (_db_time(extension.new_end), now, extension.event_id, user_id),
                    )
                    if cursor.rowcount:
                        applied.extended_ids.append(extension.event_id)
                    else:
                        applied.skipped_ids.append(extension.event_id)

                for delete in plan.deletes:
                    cursor = conn.execute(
                        """
                        DELETE FROM timeline_events
                        WHERE id = ? AND user_id = ? AND locked_at IS NULL
                        """,
                        (delete.event_id, user_id),
                    )
                    if cursor.rowcount:
                        applied.deleted_ids.append(delete.event_id)
                    else:
                        applied.skipped_ids.append(delete.event_id)
                conn.commit()
        return applied

    # Processing windows

    def is_window_locked(self, user_id: str, window_start: datetime) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT 1 FROM window_locks
                    WHERE user_id = ? AND window_start = ?
                    """,
                    (user_id, _db_time(window_start)),
                ).fetchone()
        return row is not None

    def lock_window(
        self,
        *,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        stats: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO window_locks(user_id, window_start, window_end, locked_at, stats_json)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, window_start) DO NOTHING
                    """,
                    (
                        user_id,
                        _db_time(window_start),
                        _db_time(window_end),
                        _utc_now(),
                        json.dumps(stats or {}, ensure_ascii=False),
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    def get_window_lock(self, user_id: str, window_start: datetime) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, window_start, window_end, locked_at, stats_json
                    FROM window_locks
                    WHERE user_id = ? AND window_start = ?
                    """,
                    (user_id, _db_time(window_start)),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["stats"] = json.loads(item.pop("stats_json") or "{}")
        return item

    def get_checkpoint(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, last_processed_at, last_processed_window_start,
                           last_processed_window_end, last_run_stats_json
                    FROM ingestion_checkpoints
                    WHERE user_id = ?
                    """,
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["last_run_stats"] = json.loads(item.pop("last_run_stats_json") or "{}")
        return item

    def advance_checkpoint(
        self,
        *,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        stats: dict[str, Any],
    ) -> None:
        """Move the user's watermark forward; an older window never moves it back."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO ingestion_checkpoints(
                        user_id, last_processed_at, last_processed_window_start,
                        last_processed_window_end, last_run_stats_json
                    )
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        last_processed_at = excluded.last_processed_at,
                        last_processed_window_start = excluded.last_processed_window_start,
                        last_processed_window_end = excluded.last_processed_window_end,
                        last_run_stats_json = excluded.last_run_stats_json
                    WHERE excluded.last_processed_window_end >= ingestion_checkpoints.last_processed_window_end
                    """,
                    (
                        user_id,
                        _utc_now(),
                        _db_time(window_start),
                        _db_time(window_end),
                        json.dumps(stats, ensure_ascii=False),
                    ),
                )
                conn.commit()

    # Runs and audit trail

    def start_run(
        self,
        *,
        user_id: str,
        trigger: str,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO reconcile_runs(
                        run_at, user_id, trigger, status, message, window_start, window_end, duration_ms, counts_json
                    )
                    VALUES (?, ?, ?, 'running', 'running', ?, ?, 0, '{}')
                    """,
                    (
                        _utc_now(),
                        user_id,
                        trigger,
                        _db_time(window_start) if window_start is not None else None,
                        _db_time(window_end) if window_end is not None else None,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        counts: dict[str, int] | None = None,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE reconcile_runs
                    SET status = ?, message = ?, duration_ms = ?, counts_json = ?,
                        window_start = COALESCE(?, window_start),
                        window_end = COALESCE(?, window_end)
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        json.dumps(counts or {}),
                        _db_time(window_start) if window_start is not None else None,
                        _db_time(window_end) if window_end is not None else None,
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_at, user_id, trigger, status, message, window_start, window_end, duration_ms, counts_json
            FROM reconcile_runs
        """
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["counts"] = json.loads(item.pop("counts_json") or "{}")
            output.append(item)
        return output

    def get_run(self, run_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, run_at, user_id, trigger, status, message, window_start, window_end, duration_ms, counts_json
                    FROM reconcile_runs
                    WHERE id = ?
                    """,
                    (int(run_id),),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["counts"] = json.loads(item.pop("counts_json") or "{}")
        return item

    def record_audit_event(
        self,
        *,
        user_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, user_id, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), user_id, event_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, event_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
