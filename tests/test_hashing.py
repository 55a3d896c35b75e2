import sys

import pytest

from media_ingest.exceptions import AmbiguousAlgorithm, NativeHasherUnavailable, SourceUnreadable
from media_ingest.hashing.hasher import ContentHasher, detect_algorithm
from media_ingest.hashing.native import NativeB3sum
from media_ingest.hashing.pool import HashTask, HashWorkerPool
from media_ingest.models import Algorithm, HasherMode

EMPTY_BLAKE3 = "af1349b9f5f9a1a6a0404dea36dcc9499bcb25c9adc112b7cc9a93cae41f3262"


def _fake_b3sum(tmp_path):
    """A b3sum stand-in that prints '<digest>  <path>' like the real tool."""
    script = tmp_path / "bin" / "b3sum"
    script.parent.mkdir()
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "from blake3 import blake3\n"
        "path = sys.argv[-1]\n"
        "with open(path, 'rb') as f:\n"
        "    print(blake3(f.read()).hexdigest() + '  ' + path)\n"
    )
    script.chmod(0o755)
    return NativeB3sum(explicit_path=str(script), search_paths=[], which=lambda name: None)


def test_empty_input_digests():
    assert ContentHasher.hash_bytes(b"") == EMPTY_BLAKE3[:16]
    assert ContentHasher.hash_bytes(b"", Algorithm.BLAKE3_FULL) == EMPTY_BLAKE3
    assert ContentHasher.hash_bytes(b"", Algorithm.SHA256) == \
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert ContentHasher.hash_bytes(b"", Algorithm.MD5) == "d41d8cd98f00b204e9800998ecf8427e"
    assert ContentHasher.hash_bytes(b"", Algorithm.XXHASH64) == "ef46db3751d8e999"


def test_buffer_and_string_variants_agree():
    data = "grüße vom Speicherkarte"
    assert ContentHasher.hash_string(data) == ContentHasher.hash_buffer(data.encode("utf-8"))
    assert ContentHasher.hash_string(data, full=True).startswith(ContentHasher.hash_string(data))
    assert len(ContentHasher.hash_string(data, full=True)) == 64


def test_hash_file_matches_bytes(tmp_path, hasher):
    p = tmp_path / "clip.mov"
    data = b"frame" * 50_000
    p.write_bytes(data)

    res = hasher.hash_file(p, Algorithm.BLAKE3)
    assert res.hash == ContentHasher.hash_bytes(data)
    assert res.size == len(data)
    assert res.backend == "in-process"

    # small and large read sizes give the same digest
    assert hasher.hash_file(p, Algorithm.BLAKE3_FULL, buffer_size=7).hash == \
        hasher.hash_file(p, Algorithm.BLAKE3_FULL, buffer_size=1024 * 1024).hash


def test_native_and_fallback_agree(tmp_path):
    p = tmp_path / "photo.jpg"
    p.write_bytes(b"\xff\xd8\xff" + bytes(range(256)) * 40)

    native = ContentHasher(mode=HasherMode.NATIVE, native=_fake_b3sum(tmp_path))
    fallback = ContentHasher(mode=HasherMode.FORCED_FALLBACK)

    n = native.hash_file(p, Algorithm.BLAKE3)
    f = fallback.hash_file(p, Algorithm.BLAKE3)
    assert n.backend == "native"
    assert f.backend == "in-process"
    assert n.hash == f.hash


def test_progress_callback_forces_in_process(tmp_path):
    p = tmp_path / "a.bin"
    p.write_bytes(b"x" * 300_000)
    calls = []

    h = ContentHasher(mode=HasherMode.AUTO, native=_fake_b3sum(tmp_path))
    res = h.hash_file(p, on_progress=lambda done, total: calls.append((done, total)))

    assert res.backend == "in-process"
    assert calls[-1] == (300_000, 300_000)


def test_native_mode_without_binary(tmp_path, monkeypatch):
    monkeypatch.delenv("MEDIA_INGEST_NATIVE_B3SUM", raising=False)
    p = tmp_path / "a.bin"
    p.write_bytes(b"abc")
    missing = NativeB3sum(search_paths=[], which=lambda name: None)

    with pytest.raises(NativeHasherUnavailable):
        ContentHasher(mode=HasherMode.NATIVE, native=missing).hash_file(p)
    # auto quietly falls back
    assert ContentHasher(mode=HasherMode.AUTO, native=missing).hash_file(p).backend == "in-process"


def test_untrusted_native_candidates_rejected(tmp_path):
    evil = tmp_path / "not-a-hasher"
    evil.write_text("#!/bin/sh\n")
    evil.chmod(0o755)
    assert NativeB3sum(explicit_path=str(evil), search_paths=[], which=lambda n: None).resolve() is None
    assert NativeB3sum(explicit_path="b3sum", search_paths=[], which=lambda n: None).resolve() is None


def test_detect_algorithm_flags_ambiguity():
    assert detect_algorithm("a" * 16) == (Algorithm.BLAKE3, True)
    assert detect_algorithm("a" * 32) == (Algorithm.MD5, False)
    assert detect_algorithm("a" * 64) == (Algorithm.SHA256, True)
    assert detect_algorithm("a" * 128) == (Algorithm.SHA512, False)
    with pytest.raises(AmbiguousAlgorithm):
        detect_algorithm("a" * 10)


def test_verify_file(tmp_path, hasher):
    p = tmp_path / "doc.pdf"
    p.write_bytes(b"%PDF-1.7 body")
    full = hasher.hash_file(p, Algorithm.BLAKE3_FULL).hash

    ok = hasher.verify_file(p, full, Algorithm.BLAKE3_FULL)
    assert ok.match and not ok.ambiguous

    # 64 chars guessed as sha256: flagged, and a BLAKE3 digest does not match
    guessed = hasher.verify_file(p, full)
    assert guessed.ambiguous
    assert guessed.algorithm == Algorithm.SHA256
    assert not guessed.match


def test_hash_file_all_single_pass(tmp_path, hasher):
    p = tmp_path / "a.wav"
    data = b"RIFF" + b"\x00" * 1000
    p.write_bytes(data)
    all_ = hasher.hash_file_all(p)

    assert all_["blake3"] == ContentHasher.hash_bytes(data)
    assert all_["blake3-full"].startswith(all_["blake3"])
    assert all_["sha256"] == ContentHasher.hash_bytes(data, Algorithm.SHA256)
    assert all_["xxhash64"] == ContentHasher.hash_bytes(data, Algorithm.XXHASH64)
    assert all_["size"] == len(data)


def test_hash_batch_records_errors(tmp_path, hasher):
    good = tmp_path / "good.jpg"
    good.write_bytes(b"good")
    missing = tmp_path / "missing.jpg"
    progress = []

    results = hasher.hash_batch([good, missing], on_progress=lambda *a: progress.append(a))

    assert results[0].hash == ContentHasher.hash_bytes(b"good")
    assert results[1].hash is None and results[1].error
    assert progress[-1][2:4] == (2, 2)


def test_missing_file_is_source_unreadable(tmp_path, hasher):
    with pytest.raises(SourceUnreadable):
        hasher.hash_file(tmp_path / "nope.cr2")


def test_worker_pool_matches_direct_hashing(tmp_path, hasher):
    paths = []
    for i in range(6):
        p = tmp_path / f"f{i}.bin"
        p.write_bytes(bytes([i]) * (1000 + i))
        paths.append(p)

    with HashWorkerPool(max_workers=3, mode=HasherMode.FORCED_FALLBACK) as pool:
        results = dict(pool.map(HashTask(p) for p in paths))
        single = pool.hash(HashTask(paths[0], Algorithm.SHA256))

    for task, res in results.items():
        assert res.hash == hasher.hash_file(task.path, Algorithm.BLAKE3_FULL).hash
    assert single.hash == hasher.hash_file(paths[0], Algorithm.SHA256).hash


def test_worker_pool_returns_errors(tmp_path):
    with HashWorkerPool(max_workers=2, mode=HasherMode.FORCED_FALLBACK) as pool:
        [(task, outcome)] = list(pool.map([HashTask(tmp_path / "gone")]))
    assert isinstance(outcome, SourceUnreadable)


class CountingNative(NativeB3sum):
    """Never finds a binary; counts how often it looked."""

    def __init__(self):
        super().__init__(search_paths=[], which=lambda name: None)
        self.lookups = 0

    def _find(self):
        self.lookups += 1
        return None


def test_worker_pool_shares_the_callers_hasher(tmp_path):
    native = CountingNative()
    shared = ContentHasher(mode=HasherMode.AUTO, native=native)
    paths = []
    for i in range(5):
        p = tmp_path / f"f{i}.bin"
        p.write_bytes(bytes([i]) * 2048)
        paths.append(p)

    with HashWorkerPool(max_workers=3, hasher=shared) as pool:
        assert pool.hasher is shared
        assert pool.mode == HasherMode.AUTO
        results = dict(pool.map(HashTask(p) for p in paths))

    assert native.lookups == 1
    for task, res in results.items():
        assert res.hash == ContentHasher.hash_bytes(task.path.read_bytes(), Algorithm.BLAKE3_FULL)
