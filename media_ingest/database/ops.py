import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator

from ..exceptions import CheckpointWriteFailed
from ..models import (
    CompanionFile, DedupStatus, FileRecord, ImportSession, ImportStatus,
    RelationType, SourceType,
)

_SESSION_COLUMNS = (
    "id", "source", "destination", "status", "total_files", "processed_files",
    "duplicate_files", "renamed_files", "sidecar_files", "error_files",
    "skipped_files", "total_bytes", "processed_bytes", "started_at",
    "completed_at", "error", "batch_id", "batch_name", "source_type",
    "source_volume", "source_volume_serial", "source_fingerprint", "updated_at",
)

_FILE_COLUMNS = (
    "session_id", "source_path", "relative_path", "seq", "size", "mtime",
    "status", "stage", "hash", "hash_short", "dest_hash", "dest_path",
    "verified", "retries", "category", "mime_type", "extension_mismatch",
    "source_type", "device_fingerprint", "dedup_status", "duplicate_of",
    "renamed", "original_name", "final_name", "related_json", "relation_type",
    "is_primary", "hidden", "companions_json", "sidecar_path",
    "warnings_json", "error", "updated_at",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _opt_bool(value) -> Optional[int]:
    return None if value is None else int(bool(value))


def _enum_value(value) -> Optional[str]:
    return value.value if value is not None else None


class CheckpointStore:
    """
    Durable session state in the destination catalog.

    Every write commits before returning; a failed write raises
    CheckpointWriteFailed and the caller must treat the session as failed.
    """

    def __init__(self, conn: sqlite3.Connection, write_lock: Optional[threading.Lock] = None):
        self.conn = conn
        self._lock = write_lock or threading.Lock()

    @contextmanager
    def _write(self, what: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            try:
                cur = self.conn.cursor()
                yield cur
                self.conn.commit()
            except sqlite3.Error as e:
                try:
                    self.conn.rollback()
                except sqlite3.Error:
                    logging.debug("Rollback after failed checkpoint write also failed")
                raise CheckpointWriteFailed(f"Checkpoint write failed ({what}): {e}") from e

    # ---------------------- SESSIONS ----------------------

    def _session_row(self, s: ImportSession) -> tuple:
        return (
            s.id, str(s.source), str(s.destination), s.status.value,
            s.total_files, s.processed_files, s.duplicate_files, s.renamed_files,
            s.sidecar_files, s.error_files, s.skipped_files, s.total_bytes,
            s.processed_bytes, s.started_at, s.completed_at, s.error,
            s.batch_id, s.batch_name, _enum_value(s.source_type),
            s.source_volume, s.source_volume_serial, s.source_fingerprint, _now(),
        )

    def _upsert_session(self, cur: sqlite3.Cursor, session: ImportSession) -> None:
        # REPLACE deletes the row first, which cascades to session_files
        updates = ", ".join(f"{c} = excluded.{c}" for c in _SESSION_COLUMNS[1:])
        cur.execute(
            f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _SESSION_COLUMNS)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            self._session_row(session),
        )

    def save_session(self, session: ImportSession) -> None:
        """Inserts or updates the session row (files are saved separately)."""
        with self._write(f"session {session.id}") as cur:
            self._upsert_session(cur, session)

    def create_session(self, session: ImportSession) -> None:
        """Persists a fresh session together with its pending file list."""
        placeholders = ", ".join("?" for _ in _FILE_COLUMNS)
        with self._write(f"create session {session.id}") as cur:
            cur.execute(
                f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _SESSION_COLUMNS)})",
                self._session_row(session),
            )
            cur.executemany(
                f"INSERT INTO session_files ({', '.join(_FILE_COLUMNS)}) VALUES ({placeholders})",
                [self._file_row(session.id, seq, rec) for seq, rec in enumerate(session.files)],
            )

    # ---------------------- FILES ----------------------

    def _file_row(self, session_id: str, seq: int, r: FileRecord) -> tuple:
        companions = [vars(c) for c in r.companions] if r.companions else None
        return (
            session_id, str(r.source_path), r.relative_path, seq, r.size, r.mtime,
            r.status.value, r.stage.value, r.hash, r.hash_short, r.dest_hash,
            str(r.dest_path) if r.dest_path else None,
            int(r.verified), r.retries, r.category, r.mime_type,
            _opt_bool(r.extension_mismatch), _enum_value(r.source_type),
            r.device_fingerprint, _enum_value(r.dedup_status), r.duplicate_of,
            int(r.renamed), r.original_name, r.final_name,
            json.dumps(r.related_files) if r.related_files else None,
            _enum_value(r.relation_type), _opt_bool(r.is_primary), int(r.hidden),
            json.dumps(companions) if companions else None,
            str(r.sidecar_path) if r.sidecar_path else None,
            json.dumps(r.warnings) if r.warnings else None,
            r.error, _now(),
        )

    def _upsert_file(self, cur: sqlite3.Cursor, session_id: str, record: FileRecord) -> None:
        assignments = ", ".join(f"{c} = ?" for c in _FILE_COLUMNS[4:])
        row = self._file_row(session_id, 0, record)
        cur.execute(
            f"UPDATE session_files SET {assignments} WHERE session_id = ? AND source_path = ?",
            (*row[4:], session_id, str(record.source_path)),
        )
        if cur.rowcount == 0:
            cur.execute("SELECT COALESCE(MAX(seq), -1) + 1 FROM session_files WHERE session_id = ?", (session_id,))
            seq = cur.fetchone()[0]
            cur.execute(
                f"INSERT INTO session_files ({', '.join(_FILE_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _FILE_COLUMNS)})",
                self._file_row(session_id, seq, record),
            )

    def save_file(self, session_id: str, record: FileRecord) -> None:
        """Checkpoints one file; the row keeps its original sequence number."""
        with self._write(f"file {record.relative_path}") as cur:
            self._upsert_file(cur, session_id, record)

    def checkpoint(self, session: ImportSession, record: FileRecord) -> None:
        """File state and session counters, committed together."""
        with self._write(f"checkpoint {record.relative_path}") as cur:
            self._upsert_file(cur, session.id, record)
            self._upsert_session(cur, session)

    def _row_to_file(self, row: sqlite3.Row) -> FileRecord:
        d = dict(zip(_FILE_COLUMNS, row))
        companions = [CompanionFile(**c) for c in json.loads(d["companions_json"])] if d["companions_json"] else []
        return FileRecord(
            source_path=Path(d["source_path"]),
            relative_path=d["relative_path"],
            size=d["size"],
            mtime=d["mtime"],
            session_id=d["session_id"],
            status=ImportStatus(d["status"]),
            stage=ImportStatus(d["stage"]),
            hash=d["hash"],
            hash_short=d["hash_short"],
            dest_hash=d["dest_hash"],
            dest_path=Path(d["dest_path"]) if d["dest_path"] else None,
            verified=bool(d["verified"]),
            retries=d["retries"],
            category=d["category"],
            mime_type=d["mime_type"],
            extension_mismatch=None if d["extension_mismatch"] is None else bool(d["extension_mismatch"]),
            source_type=SourceType(d["source_type"]) if d["source_type"] else None,
            device_fingerprint=d["device_fingerprint"],
            dedup_status=DedupStatus(d["dedup_status"]) if d["dedup_status"] else None,
            duplicate_of=d["duplicate_of"],
            renamed=bool(d["renamed"]),
            original_name=d["original_name"],
            final_name=d["final_name"],
            related_files=json.loads(d["related_json"]) if d["related_json"] else [],
            relation_type=RelationType(d["relation_type"]) if d["relation_type"] else None,
            is_primary=None if d["is_primary"] is None else bool(d["is_primary"]),
            hidden=bool(d["hidden"]),
            companions=companions,
            sidecar_path=Path(d["sidecar_path"]) if d["sidecar_path"] else None,
            warnings=json.loads(d["warnings_json"]) if d["warnings_json"] else [],
            error=d["error"],
        )

    # ---------------------- LOADING ----------------------

    def load_session(self, session_id: str) -> Optional[ImportSession]:
        cur = self.conn.cursor()
        cur.execute(f"SELECT {', '.join(_SESSION_COLUMNS)} FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
        if row is None:
            return None
        d = dict(zip(_SESSION_COLUMNS, row))
        session = ImportSession(
            id=d["id"],
            source=Path(d["source"]),
            destination=Path(d["destination"]),
            status=ImportStatus(d["status"]),
            total_files=d["total_files"],
            processed_files=d["processed_files"],
            duplicate_files=d["duplicate_files"],
            renamed_files=d["renamed_files"],
            sidecar_files=d["sidecar_files"],
            error_files=d["error_files"],
            skipped_files=d["skipped_files"],
            total_bytes=d["total_bytes"],
            processed_bytes=d["processed_bytes"],
            started_at=d["started_at"],
            completed_at=d["completed_at"],
            error=d["error"],
            batch_id=d["batch_id"],
            batch_name=d["batch_name"],
            source_type=SourceType(d["source_type"]) if d["source_type"] else None,
            source_volume=d["source_volume"],
            source_volume_serial=d["source_volume_serial"],
            source_fingerprint=d["source_fingerprint"],
        )
        cur.execute(
            f"SELECT {', '.join(_FILE_COLUMNS)} FROM session_files WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        session.files = [self._row_to_file(r) for r in cur.fetchall()]
        return session

    def find_resumable(self, source: Path, destination: Path) -> Optional[ImportSession]:
        """Latest unfinished session for the same source/destination pair."""
        cur = self.conn.cursor()
        cur.execute("""
            SELECT id FROM sessions
            WHERE source = ? AND destination = ? AND status != ?
            ORDER BY started_at DESC LIMIT 1
        """, (str(source), str(destination), ImportStatus.COMPLETED.value))
        row = cur.fetchone()
        return self.load_session(row[0]) if row else None

    def latest_session(self) -> Optional[ImportSession]:
        cur = self.conn.cursor()
        cur.execute("SELECT id FROM sessions ORDER BY started_at DESC LIMIT 1")
        row = cur.fetchone()
        return self.load_session(row[0]) if row else None

    def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT id, source, status, total_files, processed_files, error_files,
                   duplicate_files, started_at, completed_at
            FROM sessions ORDER BY started_at DESC LIMIT ?
        """, (limit,))
        keys = ("id", "source", "status", "total", "successful", "failed",
                "duplicates", "started_at", "completed_at")
        return [dict(zip(keys, r)) for r in cur.fetchall()]

    # ---------------------- CONTENT INDEX ----------------------

    def register_content(self, content_hash: str, dest_path: Path, session_id: Optional[str]) -> None:
        with self._write(f"content {content_hash[:16]}") as cur:
            cur.execute("""
                INSERT OR IGNORE INTO content_index (hash, dest_path, session_id, registered_at)
                VALUES (?, ?, ?, ?)
            """, (content_hash.lower(), str(dest_path), session_id, _now()))

    def update_content_path(self, content_hash: str, dest_path: Path) -> None:
        with self._write(f"content {content_hash[:16]}") as cur:
            cur.execute("UPDATE content_index SET dest_path = ? WHERE hash = ?",
                        (str(dest_path), content_hash.lower()))

    def known_content(self) -> Dict[str, str]:
        """Full hash -> destination path, for files whose destination still exists."""
        cur = self.conn.cursor()
        cur.execute("SELECT hash, dest_path FROM content_index")
        known = {}
        stale = 0
        for h, p in cur.fetchall():
            if Path(p).exists():
                known[h] = p
            else:
                stale += 1
        if stale:
            logging.info(f"Ignoring {stale} catalog entries whose destination file is gone")
        return known
