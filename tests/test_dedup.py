import json
import threading

from media_ingest.dedup.deduplicator import EXTERNAL_ORIGIN, Deduplicator
from media_ingest.hashing.hasher import ContentHasher
from media_ingest.models import Algorithm

H1 = "a" * 64
H2 = "b" * 64


def test_first_registration_wins():
    d = Deduplicator()
    assert d.check_and_register(H1, "/dest/one.jpg") is None
    assert d.is_pending(H1)
    d.confirm(H1, "/dest/one.jpg")
    assert not d.is_pending(H1)
    assert d.check_and_register(H1, "/dest/two.jpg") == "/dest/one.jpg"
    d.register(H1, "/dest/three.jpg")
    assert d.check_duplicate(H1) == "/dest/one.jpg"
    assert H1.upper() in d
    assert len(d) == 1


def test_concurrent_claims_have_one_winner():
    d = Deduplicator()
    barrier = threading.Barrier(16)
    winners = []
    lock = threading.Lock()

    def worker(i):
        barrier.wait()
        if d.check_and_register(H1, f"/dest/{i}.jpg") is None:
            with lock:
                winners.append(i)
            d.confirm(H1, f"/dest/{i}.jpg")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert d.check_duplicate(H1) == f"/dest/{winners[0]}.jpg"


def test_release_and_update_only_touch_own_claim():
    d = Deduplicator()
    d.check_and_register(H1, "/dest/a.jpg")

    d.release(H1, "/dest/other.jpg")
    assert d.check_duplicate(H1) == "/dest/a.jpg"

    d.update_path(H1, "/dest/a.jpg", "/dest/aaaa.jpg")
    assert d.check_duplicate(H1) == "/dest/aaaa.jpg"

    d.release(H1, "/dest/aaaa.jpg")
    assert d.check_duplicate(H1) is None
    assert not d.is_pending(H1)


def test_duplicate_waits_for_pending_claim_and_takes_over_on_release():
    d = Deduplicator()
    assert d.check_and_register(H1, "/dest/a.jpg") is None
    results = []
    waiter = threading.Thread(target=lambda: results.append(d.check_and_register(H1, "/dest/b.jpg")))
    waiter.start()

    waiter.join(timeout=0.2)
    assert waiter.is_alive()
    assert results == []

    d.release(H1, "/dest/a.jpg")
    waiter.join(timeout=5)
    assert results == [None]
    assert d.check_duplicate(H1) == "/dest/b.jpg"
    assert d.is_pending(H1)


def test_duplicate_sees_confirmed_path_after_rename():
    d = Deduplicator()
    d.check_and_register(H1, "/dest/a.jpg")
    results = []
    waiter = threading.Thread(target=lambda: results.append(d.check_and_register(H1, "/dest/b.jpg")))
    waiter.start()

    d.update_path(H1, "/dest/a.jpg", "/dest/aaaa.jpg")
    d.confirm(H1, "/dest/aaaa.jpg")
    waiter.join(timeout=5)
    assert results == ["/dest/aaaa.jpg"]


def test_known_content_is_never_pending():
    d = Deduplicator(known={H1: "/archive/x.jpg"})
    d.register(H2, "/archive/y.jpg")
    assert d.check_and_register(H1, "/dest/a.jpg") == "/archive/x.jpg"
    assert d.check_and_register(H2, "/dest/b.jpg") == "/archive/y.jpg"


def test_known_hashes_seed_index():
    d = Deduplicator(known={H1.upper(): "/archive/x.cr2"})
    assert d.check_duplicate(H1) == "/archive/x.cr2"
    assert d.load_hashes([H1, H2, ""]) == 1
    assert d.check_duplicate(H2) == EXTERNAL_ORIGIN


def test_load_manifest(tmp_path):
    manifest = tmp_path / "manifest.json"
    manifest.write_text(json.dumps({
        "root": str(tmp_path),
        "files": [
            {"path": "2024/a.jpg", "hash": H1[:16], "hash_full": H1, "size": 1},
            {"path": "2024/short-only.jpg", "hash": "c" * 16, "size": 1},
        ],
    }))
    d = Deduplicator()

    assert d.load_manifest(manifest) == 1
    assert d.check_duplicate(H1) == str(tmp_path / "2024" / "a.jpg")
    assert d.load_manifest(tmp_path / "missing.json") == 0

    manifest.write_text("{not json")
    assert Deduplicator().load_manifest(manifest) == 0


def test_index_directory_skips_internal_files(tmp_path, hasher):
    (tmp_path / "2024").mkdir()
    (tmp_path / "2024" / "a.jpg").write_bytes(b"one")
    (tmp_path / "2024" / "a.jpg.xmp").write_bytes(b"<x/>")
    (tmp_path / "manifest.json").write_text("{}")
    (tmp_path / "b.mov").write_bytes(b"two")

    d = Deduplicator()
    assert d.index_directory(tmp_path, hasher) == 2
    assert d.check_duplicate(ContentHasher.hash_bytes(b"one", Algorithm.BLAKE3_FULL)) == \
        str(tmp_path / "2024" / "a.jpg")
    assert d.index_directory(tmp_path / "missing", hasher) == 0
