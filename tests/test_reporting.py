import csv
import json
from pathlib import Path

from media_ingest import config
from media_ingest.models import DedupStatus, FileRecord, ImportSession, ImportStatus
from media_ingest.reporting import ReportGenerator


def _record(dest_root, name, h, status=ImportStatus.COMPLETED, **kw):
    return FileRecord(source_path=Path("/card") / name, relative_path=name, size=10,
                      status=status, hash=h, hash_short=h[:16] if h else None,
                      dest_path=dest_root / name if h else None, **kw)


def test_manifest_merges_and_sorts(tmp_path):
    reports = ReportGenerator(tmp_path)
    first = ImportSession(id="s1", source=Path("/card"), destination=tmp_path, files=[
        _record(tmp_path, "b.jpg", "b" * 64),
        _record(tmp_path, "failed.jpg", None, status=ImportStatus.FAILED, error="boom"),
    ])
    reports.write_manifest(first)

    second = ImportSession(id="s2", source=Path("/card"), destination=tmp_path, files=[
        _record(tmp_path, "a.jpg", "a" * 64),
        _record(tmp_path, "b.jpg", "c" * 64),
    ])
    path = reports.write_manifest(second)

    data = json.loads(path.read_text())
    assert path == tmp_path / config.MANIFEST_FILE_NAME
    assert [f["path"] for f in data["files"]] == ["a.jpg", "b.jpg"]
    assert data["files"][1]["hash_full"] == "c" * 64
    assert data["files"][0]["hash"] == "a" * 16
    assert data["fileCount"] == 2
    assert data["totalBytes"] == 20
    assert data["session_id"] == "s2"
    assert data["hashLength"] == config.SHORT_HASH_LENGTH
    assert not (tmp_path / (config.MANIFEST_FILE_NAME + ".tmp")).exists()


def test_corrupt_manifest_is_rewritten(tmp_path):
    (tmp_path / config.MANIFEST_FILE_NAME).write_text("{oops")
    session = ImportSession(id="s1", source=Path("/card"), destination=tmp_path,
                            files=[_record(tmp_path, "a.jpg", "a" * 64)])
    data = json.loads(ReportGenerator(tmp_path).write_manifest(session).read_text())
    assert data["fileCount"] == 1


def test_session_csv(tmp_path):
    session = ImportSession(id="s1", source=Path("/card"), destination=tmp_path, files=[
        _record(tmp_path, "a.jpg", "a" * 64, renamed=True),
        _record(tmp_path, "dup.jpg", "a" * 64, dedup_status=DedupStatus.DUPLICATE,
                duplicate_of=str(tmp_path / "a.jpg")),
        _record(tmp_path, "bad.jpg", None, status=ImportStatus.FAILED, error="Cannot read"),
    ])
    out = ReportGenerator(tmp_path).write_session_report(session)
    assert out == tmp_path / "import_s1.csv"

    with open(out, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["status"] for r in rows] == ["completed", "completed", "failed"]
    assert rows[0]["renamed"] == "yes"
    assert rows[1]["dedup_status"] == "duplicate"
    assert rows[1]["duplicate_of"].endswith("a.jpg")
    assert rows[2]["error"] == "Cannot read"
    assert rows[2]["destination_path"] == ""
