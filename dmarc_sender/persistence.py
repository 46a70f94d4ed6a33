"""SQLite backed report queue used by the sender."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import Report

_REPORT_COLUMNS = "rowid, id, domain, rua, body, begin_ts, end_ts, error"


class ReportStore:
    """Queue of aggregate reports waiting for delivery.

    :meth:`next_pending` walks the queue in insertion order and remembers the
    last row it handed out, so a report that stays queued after a transient
    failure is not returned again until :meth:`reset_cursor` is called.
    """

    def __init__(self, db_path: str = "dmarc_reports.db"):
        """Persist data to the given database path.

        Every operation opens its own connection, so the path must name a file.
        """
        if not db_path or db_path == ":memory:":
            raise ValueError("ReportStore needs a database file path")
        self.db_path = db_path
        self._cursor = 0

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    rua TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL DEFAULT '',
                    begin_ts INTEGER,
                    end_ts INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    error TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            await db.commit()

    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        data.pop("rowid", None)
        data["begin"] = data.pop("begin_ts", None)
        data["end"] = data.pop("end_ts", None)
        return data

    async def enqueue_report(self, report: Report) -> bool:
        """Store a report, returning ``False`` if the id is already queued."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO reports (id, domain, rua, body, begin_ts, end_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (report.id, report.domain, report.rua, report.body, report.begin, report.end),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def next_pending(self) -> Optional[Report]:
        """Return the next queued report not yet handed out, or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {_REPORT_COLUMNS}
                FROM reports
                WHERE rowid > ?
                ORDER BY rowid ASC
                LIMIT 1
                """,
                (self._cursor,),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        if row is None:
            return None
        self._cursor = row[0]
        return Report.model_validate(self._decode_row(row, cols))

    def reset_cursor(self) -> None:
        """Start the next :meth:`next_pending` walk from the head of the queue."""
        self._cursor = 0

    async def delete_report(self, report_id: Optional[str]) -> bool:
        """Remove a report permanently."""
        if not report_id:
            return False
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM reports WHERE id=?", (report_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def record_error(self, report_id: Optional[str], message: str) -> None:
        """Annotate a report with its latest transient failure."""
        if not report_id:
            return
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE reports
                SET error=?, error_count=error_count + 1, updated_at=CURRENT_TIMESTAMP
                WHERE id=?
                """,
                (message, report_id),
            )
            await db.commit()

    async def get_report(self, report_id: str) -> Optional[Report]:
        """Fetch a single report by id."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {_REPORT_COLUMNS} FROM reports WHERE id=?",
                (report_id,),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        if row is None:
            return None
        return Report.model_validate(self._decode_row(row, cols))

    async def list_reports(self) -> List[Dict[str, Any]]:
        """Return queued reports (without bodies) for inspection purposes."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, domain, rua, length(body) AS body_length, begin_ts, end_ts,
                       created_at, updated_at, error, error_count
                FROM reports
                ORDER BY rowid ASC
                """
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def count_reports(self) -> int:
        """Return the number of queued reports."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM reports") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0
