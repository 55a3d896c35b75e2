import sqlite3

import pytest

from media_ingest.copying.copier import NetworkAwareCopier
from media_ingest.database.ops import CheckpointStore
from media_ingest.database.schema import init_schema
from media_ingest.hashing.hasher import ContentHasher
from media_ingest.models import HasherMode


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:", check_same_thread=False)
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def store(conn):
    return CheckpointStore(conn)


@pytest.fixture
def hasher():
    """In-process hasher so results never depend on a local b3sum install."""
    return ContentHasher(mode=HasherMode.FORCED_FALLBACK)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def copier(hasher, sleeps):
    return NetworkAwareCopier(hasher=hasher, sleep=sleeps.append)


@pytest.fixture
def card(tmp_path):
    """A small camera card: a RAW+JPEG pair, a lone JPEG and a clip."""
    root = tmp_path / "card"
    dcim = root / "DCIM" / "100CANON"
    dcim.mkdir(parents=True)
    (dcim / "IMG_0001.CR2").write_bytes(b"II*\x00" + b"raw-one" * 200)
    (dcim / "IMG_0001.JPG").write_bytes(b"\xff\xd8\xff\xe0" + b"jpeg-one" * 200)
    (dcim / "IMG_0002.JPG").write_bytes(b"\xff\xd8\xff\xe0" + b"jpeg-two" * 200)
    (dcim / "MVI_0003.MP4").write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"clip" * 300)
    return root
