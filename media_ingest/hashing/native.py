"""
Native BLAKE3 fast path via an external b3sum executable.
"""
import logging
import os
import re
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional

from .. import config
from ..exceptions import NativeHasherUnavailable, SourceUnreadable

_HEX64 = re.compile(r'^[0-9a-f]{64}$')
_UNRESOLVED = object()


class NativeB3sum:
    """
    Lazily resolves and memoizes the b3sum location.

    Resolution order: explicit path, MEDIA_INGEST_NATIVE_B3SUM, the well-known
    install locations, then PATH. A candidate must be an absolute, executable
    regular file whose name starts with "b3sum".
    Tests inject `explicit_path`, `search_paths` or `which` instead of touching
    process-wide state.
    """

    def __init__(self,
                 explicit_path: Optional[str] = None,
                 search_paths: Optional[List[str]] = None,
                 which: Callable[[str], Optional[str]] = shutil.which,
                 timeout: float = config.NATIVE_TIMEOUT_SEC):
        self._explicit = explicit_path
        self._search_paths = search_paths if search_paths is not None else list(config.NATIVE_B3SUM_PATHS)
        self._which = which
        self._timeout = timeout
        self._resolved = _UNRESOLVED
        self._lock = threading.Lock()

    def resolve(self) -> Optional[str]:
        with self._lock:
            if self._resolved is _UNRESOLVED:
                self._resolved = self._find()
                if self._resolved:
                    logging.debug(f"Native b3sum resolved to {self._resolved}")
            return self._resolved

    @property
    def available(self) -> bool:
        return self.resolve() is not None

    def _find(self) -> Optional[str]:
        candidates = [self._explicit, config.native_b3sum_override(), *self._search_paths]
        try:
            candidates.append(self._which("b3sum"))
        except OSError as e:
            logging.debug(f"PATH lookup for b3sum failed: {e}")
        for candidate in candidates:
            if candidate and self._is_trusted(candidate):
                return os.path.realpath(candidate)
        return None

    @staticmethod
    def _is_trusted(candidate: str) -> bool:
        if not os.path.isabs(candidate):
            return False
        real = os.path.realpath(candidate)
        if not Path(real).name.startswith("b3sum") and not Path(candidate).name.startswith("b3sum"):
            return False
        return os.path.isfile(real) and os.access(real, os.X_OK)

    def hash_file(self, path: Path) -> str:
        """Returns the full 64-hex BLAKE3 digest computed by b3sum."""
        exe = self.resolve()
        if not exe:
            raise NativeHasherUnavailable("Native b3sum not available. Install b3sum or use forced-fallback mode.")
        if not os.path.isfile(path):
            raise SourceUnreadable(f"Cannot read {path}: not a file")

        proc = subprocess.run(
            [exe, "--no-names", str(path)],
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=False,
        )
        if proc.returncode != 0:
            raise OSError(f"b3sum exited with {proc.returncode}: {proc.stderr.strip()}")

        parts = proc.stdout.split()
        digest = parts[0].lower() if parts else ""
        if not _HEX64.match(digest):
            raise OSError(f"Unexpected b3sum output: {proc.stdout[:80]!r}")
        return digest
