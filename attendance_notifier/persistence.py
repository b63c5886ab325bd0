"""SQLite backed persistence used by the notification worker."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite


def _now() -> int:
    return int(time.time())


class Persistence:
    """Helper class responsible for reading and writing worker state."""

    def __init__(self, db_path: str = "/data/attendance_notifier.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_queue (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    type TEXT,
                    metadata TEXT,
                    error_message TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_status ON notification_queue(status, created_at)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS manual_triggers (
                    id TEXT PRIMARY KEY,
                    type TEXT,
                    year INTEGER,
                    month INTEGER,
                    target TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    error_message TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS classes (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    grade TEXT,
                    whatsapp_group_name TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS students (
                    id TEXT PRIMARY KEY,
                    nisn TEXT,
                    nama TEXT NOT NULL,
                    class_id TEXT,
                    status TEXT,
                    parent_wa_number TEXT
                )
                """
            )
            try:
                await db.execute("ALTER TABLE students ADD COLUMN parent_wa_number TEXT")
            except aiosqlite.OperationalError:
                pass
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS attendance (
                    id TEXT PRIMARY KEY,
                    student_id TEXT NOT NULL,
                    class_id TEXT,
                    record_date TEXT NOT NULL,
                    status TEXT,
                    timestamp_masuk TEXT,
                    timestamp_pulang TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(record_date)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS holidays (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL
                )
                """
            )
            await db.commit()

    @staticmethod
    def _rows_to_dicts(rows: Iterable[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        return [dict(zip(columns, row)) for row in rows]

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        for field in ("payload", "metadata"):
            raw = data.get(field)
            if raw is None:
                data[field] = {}
                continue
            try:
                data[field] = json.loads(raw)
            except json.JSONDecodeError:
                data[field] = {"raw": raw}
        return data

    async def enqueue_job(
        self,
        payload: Dict[str, Any],
        *,
        job_type: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        now_ts: Optional[int] = None,
    ) -> str:
        """Insert a new ``pending`` job and return its id."""
        job_id = job_id or uuid.uuid4().hex
        ts = now_ts if now_ts is not None else _now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO notification_queue
                (id, payload, status, type, metadata, error_message, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?, '', ?, ?)
                """,
                (job_id, json.dumps(payload), job_type, json.dumps(metadata or {}), ts, ts),
            )
            await db.commit()
        return job_id

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a single job or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM notification_queue WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols)

    async def fetch_pending_jobs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Return pending jobs in creation order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM notification_queue
                WHERE status = 'pending'
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (limit,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def claim_job(self, job_id: str, now_ts: Optional[int] = None) -> bool:
        """Move a job from ``pending`` to ``processing`` if nobody else did."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE notification_queue
                SET status='processing', updated_at=?
                WHERE id=? AND status='pending'
                """,
                (now_ts if now_ts is not None else _now(), job_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def _finish_job(self, job_id: str, status: str, error: str, now_ts: Optional[int]) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE notification_queue
                SET status=?, error_message=?, updated_at=?
                WHERE id=? AND status='processing'
                """,
                (status, error, now_ts if now_ts is not None else _now(), job_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_sent(self, job_id: str, now_ts: Optional[int] = None) -> bool:
        """Mark a claimed job as delivered."""
        return await self._finish_job(job_id, "sent", "", now_ts)

    async def mark_failed(self, job_id: str, error: str, now_ts: Optional[int] = None) -> bool:
        """Mark a claimed job as permanently failed."""
        return await self._finish_job(job_id, "failed", error or "unknown error", now_ts)

    async def requeue_job(self, job_id: str, error: str, now_ts: Optional[int] = None) -> bool:
        """Return a claimed job to ``pending`` so a later pass retries it."""
        return await self._finish_job(job_id, "pending", error, now_ts)

    async def reset_stuck_jobs(self, older_than_ts: int, reason: str, now_ts: Optional[int] = None) -> int:
        """Reset every ``processing`` job not touched since ``older_than_ts``.

        The reset is a single statement, so either all matches move back to
        ``pending`` or none do.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE notification_queue
                SET status='pending', error_message=?, updated_at=?
                WHERE status='processing' AND updated_at <= ?
                """,
                (reason, now_ts if now_ts is not None else _now(), older_than_ts),
            )
            await db.commit()
            return cursor.rowcount

    async def list_jobs(self, status: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        """Return jobs newest first, without attachment bytes."""
        query = "SELECT * FROM notification_queue"
        params: List[Any] = []
        if status:
            query += " WHERE status=?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        jobs = [self._decode_job_row(row, cols) for row in rows]
        for job in jobs:
            payload = job["payload"]
            if payload.get("fileData"):
                payload["fileData"] = f"<{len(payload['fileData'])} base64 chars>"
        return jobs

    async def count_jobs(self, status: str = "pending") -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM notification_queue WHERE status=?", (status,)
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    # Manual triggers ------------------------------------------------------------
    async def add_manual_trigger(
        self,
        *,
        trigger_type: Any = "monthly_recap",
        year: Any = None,
        month: Any = None,
        target: Any = None,
        now_ts: Optional[int] = None,
    ) -> str:
        """Insert a ``pending`` manual trigger and return its id."""
        trigger_id = uuid.uuid4().hex
        ts = now_ts if now_ts is not None else _now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO manual_triggers
                (id, type, year, month, target, status, error_message, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'pending', '', ?, ?)
                """,
                (trigger_id, trigger_type, year, month, target, ts, ts),
            )
            await db.commit()
        return trigger_id

    async def fetch_pending_triggers(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM manual_triggers
                WHERE status='pending'
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (limit,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def claim_trigger(self, trigger_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE manual_triggers SET status='processing', updated_at=?
                WHERE id=? AND status='pending'
                """,
                (_now(), trigger_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_trigger_failed(self, trigger_id: str, error: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE manual_triggers SET status='failed', error_message=?, updated_at=?
                WHERE id=?
                """,
                (error, _now(), trigger_id),
            )
            await db.commit()

    async def delete_trigger(self, trigger_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM manual_triggers WHERE id=?", (trigger_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_triggers(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM manual_triggers ORDER BY created_at ASC, rowid ASC") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    # Settings -------------------------------------------------------------------
    async def get_setting(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a settings document (e.g. ``schoolHours``) or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT data FROM settings WHERE key=?", (key,)) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        return json.loads(row[0])

    async def set_setting(self, key: str, data: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO settings (key, data, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET data=excluded.data, updated_at=excluded.updated_at
                """,
                (key, json.dumps(data), _now()),
            )
            await db.commit()

    async def merge_setting(self, key: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into a settings document, creating it if needed."""
        current = await self.get_setting(key) or {}
        current.update(fields)
        await self.set_setting(key, current)
        return current

    # Reference data ---------------------------------------------------------------
    async def upsert_class(self, cls: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO classes (id, name, grade, whatsapp_group_name)
                VALUES (?, ?, ?, ?)
                """,
                (cls["id"], cls["name"], cls.get("grade"), cls.get("whatsapp_group_name")),
            )
            await db.commit()

    async def list_classes(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM classes ORDER BY grade, name") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def upsert_student(self, student: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO students (id, nisn, nama, class_id, status, parent_wa_number)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    student["id"],
                    student.get("nisn"),
                    student["nama"],
                    student.get("class_id"),
                    student.get("status", "Aktif"),
                    student.get("parent_wa_number"),
                ),
            )
            await db.commit()

    async def list_students(
        self,
        *,
        class_ids: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return students, optionally restricted to classes and a status."""
        query = "SELECT * FROM students"
        clauses: List[str] = []
        params: List[Any] = []
        if class_ids is not None:
            if not class_ids:
                return []
            clauses.append(f"class_id IN ({', '.join('?' for _ in class_ids)})")
            params.extend(class_ids)
        if status is not None:
            clauses.append("status=?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY nama"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def upsert_attendance(self, record: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO attendance
                (id, student_id, class_id, record_date, status, timestamp_masuk, timestamp_pulang)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.get("id") or uuid.uuid4().hex,
                    record["student_id"],
                    record.get("class_id"),
                    record["record_date"],
                    record.get("status"),
                    record.get("timestamp_masuk"),
                    record.get("timestamp_pulang"),
                ),
            )
            await db.commit()

    async def list_attendance(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """Return attendance records with ``start_date <= record_date <= end_date``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM attendance
                WHERE record_date >= ? AND record_date <= ?
                ORDER BY record_date ASC
                """,
                (start_date, end_date),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def upsert_holiday(self, holiday: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO holidays (id, name, start_date, end_date)
                VALUES (?, ?, ?, ?)
                """,
                (
                    holiday.get("id") or uuid.uuid4().hex,
                    holiday.get("name"),
                    holiday["start_date"],
                    holiday["end_date"],
                ),
            )
            await db.commit()

    async def list_holidays(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM holidays ORDER BY start_date") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)
