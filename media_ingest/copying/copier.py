import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from .. import config
from ..exceptions import DestinationExists, NetworkTransient, SourceUnreadable, VerificationFailed
from ..hashing.hasher import ContentHasher
from ..models import Algorithm
from ..network import backoff_delay, buffer_size_for, errno_name, is_network_path, is_retryable


@dataclass
class CopyResult:
    source: Path
    destination: Path
    hash: str
    algorithm: Algorithm
    size: int
    duration_ms: float
    verified: bool
    retries: int


@dataclass
class BatchCopyResult:
    results: List[CopyResult] = field(default_factory=list)
    errors: List[Tuple[Path, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class _SourceReadError(Exception):
    def __init__(self, cause: OSError):
        super().__init__(str(cause))
        self.cause = cause


class NetworkAwareCopier:
    """
    Copies a file and hashes it in the same read pass.

    - Refuses to overwrite unless asked (DestinationExists).
    - Verifies by re-hashing the destination; a mismatch removes the
      destination before VerificationFailed is raised.
    - Retries errno values from config.RETRYABLE_ERRNO_NAMES with
      exponential backoff; anything else propagates at once.
    - A failed copy never leaves a destination file it created.
    """

    def __init__(self,
                 hasher: Optional[ContentHasher] = None,
                 retry_attempts: int = config.RETRY_ATTEMPTS,
                 base_delay_ms: int = config.RETRY_BASE_DELAY_MS,
                 max_delay_ms: int = config.RETRY_MAX_DELAY_MS,
                 sleep: Callable[[float], None] = time.sleep):
        self.hasher = hasher or ContentHasher()
        self.retry_attempts = max(1, retry_attempts)
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def copy(self,
             source: Path,
             destination: Path,
             algorithm: Algorithm = Algorithm.BLAKE3,
             verify: bool = True,
             overwrite: bool = False,
             preserve_timestamps: bool = True,
             expected_hash: Optional[str] = None,
             on_progress: Optional[Callable[[int, int], None]] = None) -> CopyResult:
        """
        Args:
            expected_hash: digest already known for the source (same algorithm).
                           A differing inline digest means the source changed
                           between hashing and copying and fails verification.
        """
        source = Path(source)
        destination = Path(destination)
        algorithm = Algorithm(algorithm)
        start = time.perf_counter()

        if not overwrite and destination.exists():
            raise DestinationExists(f"Destination already exists: {destination}")

        try:
            src_stat = source.stat()
        except OSError as e:
            raise SourceUnreadable(f"Cannot read {source}: {e}") from e

        destination.parent.mkdir(parents=True, exist_ok=True)
        bufsize = buffer_size_for(source, destination)

        attempt = 0
        created = False
        while True:
            attempt += 1
            try:
                digest = self._copy_once(source, destination, algorithm, bufsize,
                                         src_stat.st_size, overwrite or created, on_progress)
                created = True
                break
            except FileExistsError as e:
                raise DestinationExists(f"Destination already exists: {destination}") from e
            except _SourceReadError as e:
                created = created or destination.exists()
                if is_retryable(e.cause) and attempt < self.retry_attempts:
                    self._wait_before_retry(attempt, source, e.cause)
                    continue
                self._discard(destination)
                if is_retryable(e.cause):
                    raise NetworkTransient(f"Copy of {source} failed after {attempt} attempts: {e.cause}",
                                           attempts=attempt) from e.cause
                raise SourceUnreadable(f"Cannot read {source}: {e.cause}") from e.cause
            except OSError as e:
                created = created or destination.exists()
                if is_retryable(e) and attempt < self.retry_attempts:
                    self._wait_before_retry(attempt, source, e)
                    continue
                if created:
                    self._discard(destination)
                if is_retryable(e):
                    raise NetworkTransient(f"Copy of {source} failed after {attempt} attempts: {e}",
                                           attempts=attempt) from e
                raise

        if expected_hash is not None and digest.lower() != expected_hash.lower():
            self._discard(destination)
            raise VerificationFailed(
                f"Source changed during import: expected {expected_hash}, read {digest}",
                expected=expected_hash, actual=digest,
            )

        verified = False
        if verify:
            check = self.hasher.hash_file(destination, algorithm, buffer_size=bufsize).hash
            if check != digest:
                self._discard(destination)
                raise VerificationFailed(
                    f"Verification failed: expected {digest}, got {check}",
                    expected=digest, actual=check,
                )
            verified = True

        if preserve_timestamps:
            os.utime(destination, ns=(src_stat.st_atime_ns, src_stat.st_mtime_ns))

        return CopyResult(
            source=source,
            destination=destination,
            hash=digest,
            algorithm=algorithm,
            size=src_stat.st_size,
            duration_ms=(time.perf_counter() - start) * 1000.0,
            verified=verified,
            retries=attempt - 1,
        )

    def _copy_once(self,
                   source: Path,
                   destination: Path,
                   algorithm: Algorithm,
                   bufsize: int,
                   total: int,
                   truncate: bool,
                   on_progress: Optional[Callable[[int, int], None]]) -> str:
        digest = self.hasher.new_digest(algorithm)
        try:
            src = open(source, 'rb')
        except OSError as e:
            raise _SourceReadError(e) from e
        with src, open(destination, 'wb' if truncate else 'xb') as dst:
            while True:
                try:
                    chunk = src.read(bufsize)
                except OSError as e:
                    raise _SourceReadError(e) from e
                if not chunk:
                    break
                digest.update(chunk)
                dst.write(chunk)
                if on_progress:
                    on_progress(digest.bytes_seen, total)
            dst.flush()
            os.fsync(dst.fileno())
        return digest.hexdigest()

    def _wait_before_retry(self, attempt: int, source: Path, err: OSError) -> None:
        delay = backoff_delay(attempt, self.base_delay_ms, self.max_delay_ms)
        logging.warning(f"Transient error copying {source} ({errno_name(err)}), "
                        f"retry {attempt}/{self.retry_attempts - 1} in {delay:.1f}s")
        self._sleep(delay)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def move(self, source: Path, destination: Path, **kwargs) -> CopyResult:
        """Verified copy, then delete the source. The source is kept unless verification passed."""
        kwargs["verify"] = True
        result = self.copy(source, destination, **kwargs)
        if result.verified:
            Path(source).unlink()
            logging.debug(f"Moved {source} -> {destination}")
        return result

    def copy_batch(self,
                   pairs: Iterable[Tuple[Path, Path]],
                   concurrency: int = config.BATCH_COPY_CONCURRENCY,
                   **kwargs) -> BatchCopyResult:
        """
        Copies (source, destination) pairs with bounded concurrency.
        Per-file failures are collected; the batch never aborts on one error.
        """
        pairs = [(Path(s), Path(d)) for s, d in pairs]
        if any(is_network_path(s) or is_network_path(d) for s, d in pairs):
            concurrency = min(concurrency, config.NETWORK_CONCURRENCY)

        batch = BatchCopyResult()
        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
            futures = {executor.submit(self.copy, s, d, **kwargs): s for s, d in pairs}
            for fut in as_completed(futures):
                src = futures[fut]
                try:
                    batch.results.append(fut.result())
                except Exception as e:
                    logging.error(f"Failed to copy {src}: {e}")
                    batch.errors.append((src, e))

        if batch.errors:
            logging.error(f"Failed to copy {len(batch.errors)} of {len(pairs)} files")
        return batch
