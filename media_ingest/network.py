"""
Path heuristics and retry policy shared by the hasher and the copier.
"""
import errno
import re
from pathlib import Path
from typing import Union

from . import config

PathLike = Union[str, Path]

_NETWORK_RES = [re.compile(p) for p in config.NETWORK_PATH_PATTERNS]


def is_network_path(path: PathLike) -> bool:
    """True for paths that look like mounted shares (SMB/NFS/gvfs/removable mounts)."""
    s = str(path)
    return any(r.match(s) for r in _NETWORK_RES)


def buffer_size_for(*paths: PathLike) -> int:
    """Large reads when either endpoint is network-style, small reads otherwise."""
    if any(is_network_path(p) for p in paths):
        return config.NETWORK_BUFFER_SIZE
    return config.LOCAL_BUFFER_SIZE


def errno_name(exc: BaseException) -> str:
    code = getattr(exc, "errno", None)
    if code is None:
        return ""
    return errno.errorcode.get(code, "")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and errno_name(exc) in config.RETRYABLE_ERRNO_NAMES


def backoff_delay(attempt: int,
                  base_ms: int = config.RETRY_BASE_DELAY_MS,
                  max_ms: int = config.RETRY_MAX_DELAY_MS) -> float:
    """Seconds to wait before retry number `attempt` (1-based)."""
    delay_ms = min(base_ms * (2 ** (attempt - 1)), max_ms)
    return delay_ms / 1000.0
