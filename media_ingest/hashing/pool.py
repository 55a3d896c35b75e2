"""
Offloads digest computation to worker threads or processes.

Thread workers share the caller's ContentHasher, so its native b3sum lookup
is resolved once. Process workers receive a HashTask and keep one hasher
per process and mode.
"""
import logging
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

from .. import config
from ..models import Algorithm, HasherMode
from .hasher import ContentHasher, HashResult

_process_hashers: Dict[HasherMode, ContentHasher] = {}


@dataclass(frozen=True)
class HashTask:
    path: Path
    algorithm: Algorithm = Algorithm.BLAKE3_FULL
    buffer_size: Optional[int] = None


def process_hasher(mode: HasherMode) -> ContentHasher:
    hasher = _process_hashers.get(mode)
    if hasher is None:
        hasher = _process_hashers[mode] = ContentHasher(mode=mode)
    return hasher


def run_hash_task(task: HashTask, mode: HasherMode = HasherMode.AUTO) -> HashResult:
    """Module-level so process workers can unpickle it."""
    return process_hasher(mode).hash_file(task.path, task.algorithm, buffer_size=task.buffer_size)


class HashWorkerPool:
    def __init__(self,
                 max_workers: int = config.DEFAULT_WORKERS,
                 mode: HasherMode = HasherMode.AUTO,
                 use_processes: bool = False,
                 hasher: Optional[ContentHasher] = None):
        self.max_workers = max(1, max_workers)
        self.mode = HasherMode(hasher.mode if hasher is not None else mode)
        self.use_processes = use_processes
        self.hasher = hasher if hasher is not None else ContentHasher(mode=self.mode)
        self._executor: Optional[Executor] = None

    def start(self) -> "HashWorkerPool":
        if self._executor is None:
            if self.use_processes:
                self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
            else:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="hash")
            logging.debug(f"Hash pool started: {self.max_workers} {'processes' if self.use_processes else 'threads'}")
        return self

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def submit(self, task: HashTask) -> "Future[HashResult]":
        self.start()
        if self.use_processes:
            return self._executor.submit(run_hash_task, task, self.mode)
        return self._executor.submit(self.hasher.hash_file, task.path, task.algorithm,
                                     buffer_size=task.buffer_size)

    def hash(self, task: HashTask) -> HashResult:
        """Blocking round trip through a worker."""
        return self.submit(task).result()

    def map(self, tasks: Iterable[HashTask]) -> Iterator[Tuple[HashTask, Union[HashResult, BaseException]]]:
        """Yields (task, result-or-exception) in completion order."""
        futures = {self.submit(t): t for t in tasks}
        for fut in as_completed(futures):
            task = futures[fut]
            exc = fut.exception()
            yield task, (exc if exc is not None else fut.result())
