import hashlib
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Tuple

import xxhash
from blake3 import blake3

from .. import config
from ..exceptions import AmbiguousAlgorithm, NativeHasherUnavailable, SourceUnreadable
from ..models import Algorithm, HasherMode
from ..network import buffer_size_for
from .native import NativeB3sum

ProgressCallback = Callable[[int, int], None]


@dataclass
class HashResult:
    path: Path
    hash: str
    algorithm: Algorithm
    size: int
    duration_ms: float
    backend: str  # "native" or "in-process"


@dataclass
class VerifyResult:
    match: bool
    actual: str
    algorithm: Algorithm
    ambiguous: bool  # algorithm was guessed from a length shared by two algorithms


@dataclass
class BatchHashResult:
    path: Path
    hash: Optional[str]
    size: int
    error: Optional[str] = None


class StreamingDigest:
    """Incremental digest with a uniform update()/hexdigest() surface."""

    def __init__(self, algorithm: Algorithm):
        self.algorithm = Algorithm(algorithm)
        self._impl = _new_impl(self.algorithm)
        self.bytes_seen = 0

    def update(self, chunk: bytes) -> None:
        self._impl.update(chunk)
        self.bytes_seen += len(chunk)

    def hexdigest(self) -> str:
        digest = self._impl.hexdigest().lower()
        if self.algorithm == Algorithm.BLAKE3:
            return digest[:config.SHORT_HASH_LENGTH]
        return digest


def _new_impl(algorithm: Algorithm):
    if algorithm in (Algorithm.BLAKE3, Algorithm.BLAKE3_FULL):
        return blake3()
    elif algorithm == Algorithm.SHA256:
        return hashlib.sha256()
    elif algorithm == Algorithm.SHA512:
        return hashlib.sha512()
    elif algorithm == Algorithm.MD5:
        return hashlib.md5()
    elif algorithm == Algorithm.XXHASH64:
        return xxhash.xxh64(seed=0)
    raise ValueError(f"Unsupported algorithm: {algorithm}")


def detect_algorithm(digest: str) -> Tuple[Algorithm, bool]:
    """
    Guesses the algorithm from digest length.

    Returns (algorithm, ambiguous). 16 chars may be truncated BLAKE3 or
    xxHash64; 64 chars may be full BLAKE3 or SHA-256. Callers that need
    certainty must pass the algorithm explicitly.
    """
    n = len(digest)
    if n == 16:
        return Algorithm.BLAKE3, True
    if n == 32:
        return Algorithm.MD5, False
    if n == 64:
        return Algorithm.SHA256, True
    if n == 128:
        return Algorithm.SHA512, False
    raise AmbiguousAlgorithm(f"Cannot detect algorithm for hash length {n}")


class ContentHasher:
    """
    Content hashing with BLAKE3 as the primary algorithm.

    Modes:
      - auto: use b3sum when present, otherwise hash in-process.
      - native: require b3sum (raises NativeHasherUnavailable).
      - forced-fallback: always hash in-process.

    The in-process path is always used when a progress callback is given,
    since b3sum cannot report per-chunk progress.
    """

    def __init__(self,
                 mode: HasherMode = HasherMode.AUTO,
                 native: Optional[NativeB3sum] = None,
                 buffer_size: Optional[int] = None):
        self.mode = HasherMode(mode)
        self.native = native if native is not None else NativeB3sum()
        self.buffer_size = buffer_size

    # --- Files ---

    def hash_file(self,
                  path: Path,
                  algorithm: Algorithm = Algorithm.BLAKE3,
                  buffer_size: Optional[int] = None,
                  on_progress: Optional[ProgressCallback] = None) -> HashResult:
        path = Path(path)
        algorithm = Algorithm(algorithm)
        start = time.perf_counter()
        try:
            size = path.stat().st_size
        except OSError as e:
            raise SourceUnreadable(f"Cannot read {path}: {e}") from e

        digest = None
        backend = "in-process"
        if self._wants_native(algorithm, on_progress):
            digest = self._native_digest(path, algorithm)
            if digest is not None:
                backend = "native"

        if digest is None:
            bufsize = buffer_size or self.buffer_size or buffer_size_for(path)
            try:
                with open(path, 'rb') as f:
                    digest = self._digest_stream(f, algorithm, bufsize, size, on_progress)
            except OSError as e:
                raise SourceUnreadable(f"Cannot read {path}: {e}") from e

        return HashResult(
            path=path,
            hash=digest,
            algorithm=algorithm,
            size=size,
            duration_ms=(time.perf_counter() - start) * 1000.0,
            backend=backend,
        )

    def _wants_native(self, algorithm: Algorithm, on_progress: Optional[ProgressCallback]) -> bool:
        if algorithm not in (Algorithm.BLAKE3, Algorithm.BLAKE3_FULL):
            return False
        if self.mode == HasherMode.FORCED_FALLBACK or on_progress is not None:
            return False
        if self.mode == HasherMode.NATIVE and not self.native.available:
            raise NativeHasherUnavailable("Native b3sum not available. Install b3sum or use forced-fallback mode.")
        return self.native.available

    def _native_digest(self, path: Path, algorithm: Algorithm) -> Optional[str]:
        try:
            full = self.native.hash_file(path)
        except (OSError, subprocess.SubprocessError) as e:
            if self.mode == HasherMode.NATIVE:
                raise
            logging.debug(f"b3sum failed for {path}, hashing in-process: {e}")
            return None
        if algorithm == Algorithm.BLAKE3:
            return full[:config.SHORT_HASH_LENGTH]
        return full

    def _digest_stream(self,
                       stream: BinaryIO,
                       algorithm: Algorithm,
                       bufsize: int,
                       total: int = 0,
                       on_progress: Optional[ProgressCallback] = None) -> str:
        d = StreamingDigest(algorithm)
        while chunk := stream.read(bufsize):
            d.update(chunk)
            if on_progress:
                on_progress(d.bytes_seen, total)
        return d.hexdigest()

    def hash_stream(self,
                    stream: BinaryIO,
                    algorithm: Algorithm = Algorithm.BLAKE3,
                    buffer_size: Optional[int] = None) -> str:
        return self._digest_stream(stream, Algorithm(algorithm), buffer_size or self.buffer_size or config.LOCAL_BUFFER_SIZE)

    def new_digest(self, algorithm: Algorithm = Algorithm.BLAKE3) -> StreamingDigest:
        """Digest fed chunk by chunk, e.g. while copying."""
        return StreamingDigest(algorithm)

    def hash_file_all(self, path: Path) -> Dict[str, object]:
        """Every supported digest in a single read of the file."""
        path = Path(path)
        full = StreamingDigest(Algorithm.BLAKE3_FULL)
        others = {a: StreamingDigest(a) for a in (Algorithm.SHA256, Algorithm.SHA512, Algorithm.MD5, Algorithm.XXHASH64)}
        start = time.perf_counter()
        try:
            with open(path, 'rb') as f:
                while chunk := f.read(self.buffer_size or buffer_size_for(path)):
                    full.update(chunk)
                    for d in others.values():
                        d.update(chunk)
        except OSError as e:
            raise SourceUnreadable(f"Cannot read {path}: {e}") from e

        full_hex = full.hexdigest()
        result: Dict[str, object] = {
            Algorithm.BLAKE3.value: full_hex[:config.SHORT_HASH_LENGTH],
            Algorithm.BLAKE3_FULL.value: full_hex,
        }
        for algo, d in others.items():
            result[algo.value] = d.hexdigest()
        result["size"] = full.bytes_seen
        result["duration_ms"] = (time.perf_counter() - start) * 1000.0
        return result

    def verify_file(self, path: Path, expected: str, algorithm: Optional[Algorithm] = None) -> VerifyResult:
        ambiguous = False
        if algorithm is None:
            algorithm, ambiguous = detect_algorithm(expected)
            if ambiguous:
                logging.warning(
                    f"Hash length {len(expected)} is ambiguous; assuming {algorithm.value}. "
                    "Pass the algorithm explicitly to be certain."
                )
        result = self.hash_file(path, algorithm)
        return VerifyResult(
            match=result.hash.lower() == expected.lower(),
            actual=result.hash,
            algorithm=Algorithm(algorithm),
            ambiguous=ambiguous,
        )

    def hash_batch(self,
                   paths: Iterable[Path],
                   algorithm: Algorithm = Algorithm.BLAKE3,
                   on_progress: Optional[Callable[[int, int, int, int, Path], None]] = None) -> List[BatchHashResult]:
        """
        Hashes files one after another. Errors are recorded per file.
        on_progress(bytes_done, total_bytes, files_done, total_files, current)
        """
        paths = [Path(p) for p in paths]
        sizes = []
        for p in paths:
            try:
                sizes.append(p.stat().st_size)
            except OSError:
                sizes.append(0)
        total_bytes = sum(sizes)

        results: List[BatchHashResult] = []
        done_bytes = 0
        for i, (p, size) in enumerate(zip(paths, sizes)):
            file_start = done_bytes
            cb = None
            if on_progress:
                def cb(n: int, _total: int, _start=file_start, _p=p, _i=i):
                    on_progress(_start + n, total_bytes, _i, len(paths), _p)
            try:
                res = self.hash_file(p, algorithm, on_progress=cb)
                results.append(BatchHashResult(p, res.hash, size))
            except (SourceUnreadable, OSError) as e:
                results.append(BatchHashResult(p, None, size, error=str(e)))
            done_bytes += size
            if on_progress:
                on_progress(done_bytes, total_bytes, i + 1, len(paths), p)
        return results

    # --- Pure in-memory variants ---

    @staticmethod
    def hash_bytes(data: bytes, algorithm: Algorithm = Algorithm.BLAKE3) -> str:
        d = StreamingDigest(algorithm)
        d.update(data)
        return d.hexdigest()

    @staticmethod
    def hash_buffer(data: bytes, full: bool = False) -> str:
        return ContentHasher.hash_bytes(data, Algorithm.BLAKE3_FULL if full else Algorithm.BLAKE3)

    @staticmethod
    def hash_string(text: str, full: bool = False) -> str:
        return ContentHasher.hash_buffer(text.encode('utf-8'), full)
