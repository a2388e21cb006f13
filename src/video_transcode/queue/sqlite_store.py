"""SQLite implementation of VideoStatusStore.

Uses:
- sqlite-utils for table access
- WAL mode for concurrent readers (e.g. an admin dashboard)
- JSON columns for the manifest fields
- A state_transitions table as audit trail
"""

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from ..models import ProcessedVideo, ProcessingOptions
from .models import ProcessingStatus, StateTransition, VideoRecord
from .store import VideoStatusStore

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    video_id TEXT PRIMARY KEY,
    source_url TEXT,
    processing_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed')),
    options TEXT DEFAULT '{}',
    processed_formats TEXT DEFAULT '[]',
    thumbnails TEXT DEFAULT '[]',
    metadata TEXT DEFAULT '{}',
    duration REAL,
    original_size INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(processing_status);

CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT,
    FOREIGN KEY(video_id) REFERENCES videos(video_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_video ON state_transitions(video_id, timestamp);
"""

ERROR_MAX_CHARS = 500
SNIPPET_MAX_CHARS = 200


class SQLiteVideoStore(VideoStatusStore):
    """SQLite-backed status store.

    Not thread-safe: use it from the thread that owns the event loop.
    """

    def __init__(self, db_path: str):
        """Open (and create if needed) the status database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        if db_path == ":memory:":
            self.db_path = None
            self.db = Database(memory=True)
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = Database(str(self.db_path))
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")
            self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, video_id: str, source_url: str, options: ProcessingOptions) -> None:
        now = datetime.now().isoformat()
        current = self._status_of(video_id)

        with self.db.conn:
            if current is None:
                self.db["videos"].insert({
                    "video_id": video_id,
                    "source_url": source_url,
                    "processing_status": ProcessingStatus.PENDING.value,
                    "options": options.model_dump_json(),
                    "created_at": now,
                    "updated_at": now,
                })
            else:
                self.db.execute("""
                    UPDATE videos
                    SET source_url = ?, options = ?, processing_status = ?,
                        processed_formats = '[]', thumbnails = '[]', metadata = '{}',
                        duration = NULL, original_size = 0,
                        last_error = NULL, updated_at = ?
                    WHERE video_id = ?
                """, (
                    source_url,
                    options.model_dump_json(),
                    ProcessingStatus.PENDING.value,
                    now,
                    video_id,
                ))

            self._log_transition(video_id, current, ProcessingStatus.PENDING.value)

    def mark_processing(self, video_id: str) -> None:
        self._set_status(video_id, ProcessingStatus.PROCESSING)

    def mark_completed(self, video_id: str, result: ProcessedVideo) -> None:
        self._set_status(
            video_id,
            ProcessingStatus.COMPLETED,
            fields={
                "processed_formats": json.dumps([f.model_dump() for f in result.formats]),
                "thumbnails": json.dumps([t.model_dump() for t in result.thumbnails]),
                "metadata": json.dumps(result.metadata.model_dump()),
                "duration": result.duration,
                "original_size": result.original_size,
                "last_error": None,
            },
        )

    def mark_failed(self, video_id: str, error: str) -> None:
        error = error[:ERROR_MAX_CHARS] if error else None
        self._set_status(
            video_id, ProcessingStatus.FAILED, fields={"last_error": error}, error=error
        )

    def mark_pending(self, video_id: str, reason: Optional[str] = None) -> None:
        self._set_status(video_id, ProcessingStatus.PENDING, error=reason)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, video_id: str) -> Optional[VideoRecord]:
        rows = list(self.db["videos"].rows_where("video_id = ?", [video_id]))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def list_by_status(self, status: Optional[ProcessingStatus] = None) -> List[VideoRecord]:
        if status is not None:
            rows = self.db["videos"].rows_where(
                "processing_status = ?", [ProcessingStatus(status).value], order_by="updated_at"
            )
        else:
            rows = self.db["videos"].rows_where(order_by="updated_at")
        return [self._row_to_record(row) for row in rows]

    def find_stale_processing(self, stale_after_s: int) -> List[VideoRecord]:
        cutoff = (datetime.now() - timedelta(seconds=stale_after_s)).isoformat()
        rows = self.db["videos"].rows_where(
            "processing_status = ? AND updated_at < ?",
            [ProcessingStatus.PROCESSING.value, cutoff],
            order_by="updated_at",
        )
        return [self._row_to_record(row) for row in rows]

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ProcessingStatus}
        cursor = self.db.execute(
            "SELECT processing_status, COUNT(*) FROM videos GROUP BY processing_status"
        )
        for status, count in cursor.fetchall():
            counts[status] = count
        return counts

    def transitions(self, video_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "video_id = ?", [video_id], order_by="id"
        )
        return [StateTransition(**row) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _status_of(self, video_id: str) -> Optional[str]:
        row = self.db.execute(
            "SELECT processing_status FROM videos WHERE video_id = ?", [video_id]
        ).fetchone()
        return row[0] if row else None

    def _set_status(
        self,
        video_id: str,
        status: ProcessingStatus,
        fields: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Atomically update status (plus extra columns) and log the transition.

        Raises:
            LookupError: If the video was never registered
        """
        current = self._status_of(video_id)
        if current is None:
            raise LookupError(f"Unknown video: {video_id}")

        updates = dict(fields or {})
        updates["processing_status"] = status.value
        updates["updated_at"] = datetime.now().isoformat()

        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self.db.conn:
            self.db.execute(
                f"UPDATE videos SET {assignments} WHERE video_id = ?",
                [*updates.values(), video_id],
            )
            self._log_transition(video_id, current, status.value, error)

    def _log_transition(
        self,
        video_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ) -> None:
        self.db["state_transitions"].insert({
            "video_id": video_id,
            "from_state": from_state,
            "to_state": to_state,
            "timestamp": datetime.now().isoformat(),
            "error_snippet": error[:SNIPPET_MAX_CHARS] if error else None,
        })

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> VideoRecord:
        return VideoRecord(
            video_id=row["video_id"],
            source_url=row.get("source_url"),
            status=row["processing_status"],
            options=json.loads(row.get("options") or "{}"),
            processed_formats=json.loads(row.get("processed_formats") or "[]"),
            thumbnails=json.loads(row.get("thumbnails") or "[]"),
            metadata=json.loads(row.get("metadata") or "{}"),
            duration=row.get("duration"),
            original_size=row.get("original_size") or 0,
            last_error=row.get("last_error"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
