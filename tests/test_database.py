import sqlite3
from pathlib import Path

import pytest

from media_ingest.database.db import DBManager
from media_ingest.database.ops import CheckpointStore
from media_ingest.database.schema import CURRENT_SCHEMA_VERSION, init_schema
from media_ingest.exceptions import CheckpointWriteFailed
from media_ingest.models import (
    CompanionFile, DedupStatus, FileRecord, ImportSession, ImportStatus, RelationType, SourceType,
)


def _session(sid="s1", started="2026-01-01T10:00:00+00:00", n=3, source="/card", dest="/archive"):
    files = [FileRecord(source_path=Path(f"{source}/IMG_{i:04d}.JPG"), relative_path=f"IMG_{i:04d}.JPG", size=100 + i)
             for i in range(n)]
    return ImportSession(id=sid, source=Path(source), destination=Path(dest), status=ImportStatus.COPYING,
                         total_files=n, total_bytes=sum(f.size for f in files), started_at=started, files=files)


def test_schema_is_idempotent(conn):
    init_schema(conn)
    init_schema(conn)
    rows = conn.execute("SELECT version FROM schema_version").fetchall()
    assert rows == [(CURRENT_SCHEMA_VERSION,)]


def test_create_and_load_session(store):
    session = _session()
    session.batch_id = "b1"
    session.source_type = SourceType.MEMORY_CARD
    store.create_session(session)

    loaded = store.load_session("s1")
    assert loaded.status == ImportStatus.COPYING
    assert loaded.batch_id == "b1"
    assert loaded.source_type == SourceType.MEMORY_CARD
    assert [f.relative_path for f in loaded.files] == ["IMG_0000.JPG", "IMG_0001.JPG", "IMG_0002.JPG"]
    assert all(f.status == ImportStatus.PENDING for f in loaded.files)
    assert store.load_session("nope") is None


def test_file_round_trip_keeps_order(store):
    session = _session()
    store.create_session(session)

    rec = session.files[1]
    rec.status = ImportStatus.COMPLETED
    rec.stage = ImportStatus.COMPLETED
    rec.hash = "a" * 64
    rec.hash_short = "a" * 16
    rec.dest_path = Path("/archive/aaaaaaaaaaaaaaaa.jpg")
    rec.verified = True
    rec.dedup_status = DedupStatus.UNIQUE
    rec.renamed = True
    rec.original_name = "IMG_0001.JPG"
    rec.relation_type = RelationType.RAW_JPEG_PAIR
    rec.is_primary = False
    rec.extension_mismatch = False
    rec.related_files = ["IMG_0001.CR2"]
    rec.companions = [CompanionFile("a.thm", "/archive/a.thm", ".thm", "f" * 16, 4, None)]
    rec.warnings = ["clock unset"]
    store.save_file("s1", rec)

    loaded = store.load_session("s1")
    back = loaded.files[1]
    assert [f.relative_path for f in loaded.files] == ["IMG_0000.JPG", "IMG_0001.JPG", "IMG_0002.JPG"]
    assert back.status == ImportStatus.COMPLETED
    assert back.dest_path == Path("/archive/aaaaaaaaaaaaaaaa.jpg")
    assert back.verified and back.renamed
    assert back.dedup_status == DedupStatus.UNIQUE
    assert back.relation_type == RelationType.RAW_JPEG_PAIR
    assert back.is_primary is False
    assert back.extension_mismatch is False
    assert back.related_files == ["IMG_0001.CR2"]
    assert back.companions == rec.companions
    assert back.warnings == ["clock unset"]

    # a file the plan did not know about goes to the end
    extra = FileRecord(source_path=Path("/card/late.jpg"), relative_path="late.jpg")
    store.save_file("s1", extra)
    assert store.load_session("s1").files[-1].relative_path == "late.jpg"


def test_checkpoint_updates_session_without_dropping_files(tmp_path):
    with DBManager(tmp_path / "catalog.db") as conn:
        store = CheckpointStore(conn)
        session = _session()
        store.create_session(session)

        session.processed_files = 1
        session.files[0].status = ImportStatus.COMPLETED
        store.checkpoint(session, session.files[0])
        store.save_session(session)

        loaded = store.load_session("s1")
        assert loaded.processed_files == 1
        assert len(loaded.files) == 3
        assert loaded.files[0].status == ImportStatus.COMPLETED


def test_find_resumable_ignores_completed(store):
    old = _session("old", "2026-01-01T09:00:00+00:00")
    new = _session("new", "2026-01-01T10:00:00+00:00")
    other = _session("other", "2026-01-01T11:00:00+00:00", source="/other-card")
    for s in (old, new, other):
        store.create_session(s)

    assert store.find_resumable(Path("/card"), Path("/archive")).id == "new"

    new.status = ImportStatus.COMPLETED
    store.save_session(new)
    assert store.find_resumable(Path("/card"), Path("/archive")).id == "old"
    assert store.find_resumable(Path("/card"), Path("/elsewhere")) is None
    assert store.latest_session().id == "other"
    assert [r["id"] for r in store.list_sessions()] == ["other", "new", "old"]


def test_content_index(store, tmp_path):
    kept = tmp_path / "kept.jpg"
    kept.write_bytes(b"x")
    store.register_content("A" * 64, kept, "s1")
    store.register_content("a" * 64, tmp_path / "second.jpg", "s2")
    store.register_content("b" * 64, tmp_path / "gone.jpg", "s1")

    assert store.known_content() == {"a" * 64: str(kept)}

    moved = tmp_path / "moved.jpg"
    moved.write_bytes(b"x")
    store.update_content_path("a" * 64, moved)
    assert store.known_content() == {"a" * 64: str(moved)}


def test_write_failure_raises_checkpoint_error(store, conn):
    conn.execute("DROP TABLE session_files")
    with pytest.raises(CheckpointWriteFailed):
        store.save_file("s1", FileRecord(source_path=Path("/card/x.jpg"), relative_path="x.jpg"))


def test_unopenable_catalog(tmp_path):
    with pytest.raises(CheckpointWriteFailed):
        DBManager(tmp_path / "missing-dir" / "catalog.db").connect()
