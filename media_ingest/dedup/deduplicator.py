import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional

from .. import config
from ..exceptions import SourceUnreadable
from ..hashing.hasher import ContentHasher
from ..models import Algorithm

EXTERNAL_ORIGIN = "<external>"


class Deduplicator:
    """
    Full-hash -> first-seen destination path.

    check_and_register() is the only safe way for concurrent workers to
    claim content: lookup and insert happen under one lock, so two workers
    hashing identical bytes cannot both see "not a duplicate".

    A claim stays pending until its owner calls confirm() or release().
    Later claimants of the same hash wait for that; if the owner releases,
    one of them takes the claim over.
    """

    def __init__(self, known: Optional[Dict[str, str]] = None):
        self._index: Dict[str, str] = {}
        self._pending: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        if known:
            for h, p in known.items():
                self._index.setdefault(h.lower(), p)

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, content_hash: str) -> bool:
        return self.check_duplicate(content_hash) is not None

    def check_duplicate(self, content_hash: str) -> Optional[str]:
        with self._lock:
            return self._index.get(content_hash.lower())

    def register(self, content_hash: str, path: str) -> None:
        """First registration wins; later ones are ignored."""
        with self._lock:
            self._index.setdefault(content_hash.lower(), str(path))

    def check_and_register(self, content_hash: str, path: str) -> Optional[str]:
        """
        Returns the existing path for a duplicate, or claims the hash and returns None.

        Blocks while another caller's claim on the same hash is pending, so a
        path is only returned once its copy has been confirmed.
        """
        key = content_hash.lower()
        while True:
            with self._lock:
                existing = self._index.get(key)
                if existing is None:
                    self._index[key] = str(path)
                    self._pending[key] = threading.Event()
                    return None
                pending = self._pending.get(key)
                if pending is None:
                    return existing
            pending.wait()

    def is_pending(self, content_hash: str) -> bool:
        with self._lock:
            return content_hash.lower() in self._pending

    def confirm(self, content_hash: str, path: str) -> None:
        """Marks the claim made by `path` as backed by a finished copy."""
        key = content_hash.lower()
        with self._lock:
            if self._index.get(key) == str(path):
                self._resolve(key)

    def release(self, content_hash: str, path: str) -> None:
        """Drops a claim made by `path`, e.g. when its copy failed."""
        key = content_hash.lower()
        with self._lock:
            if self._index.get(key) == str(path):
                del self._index[key]
                self._resolve(key)

    def _resolve(self, key: str) -> None:
        event = self._pending.pop(key, None)
        if event is not None:
            event.set()

    def update_path(self, content_hash: str, old_path: str, new_path: str) -> None:
        key = content_hash.lower()
        with self._lock:
            if self._index.get(key) == str(old_path):
                self._index[key] = str(new_path)

    def load_hashes(self, hashes: Iterable[str]) -> int:
        """Known content with no local path (e.g. from an external catalog)."""
        n = 0
        with self._lock:
            for h in hashes:
                if h and h.lower() not in self._index:
                    self._index[h.lower()] = EXTERNAL_ORIGIN
                    n += 1
        return n

    def load_manifest(self, manifest_path: Path) -> int:
        """Seeds the index from a manifest.json written by an earlier import."""
        manifest_path = Path(manifest_path)
        if not manifest_path.exists():
            return 0
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logging.warning(f"Ignoring unreadable manifest {manifest_path}: {e}")
            return 0

        root = Path(data.get("root") or manifest_path.parent)
        n = 0
        with self._lock:
            for entry in data.get("files", []):
                h = entry.get("hash_full") or entry.get("hash")
                if not h or len(h) != config.FULL_HASH_LENGTH:
                    continue
                key = h.lower()
                if key not in self._index:
                    self._index[key] = str(root / entry.get("path", ""))
                    n += 1
        logging.info(f"Loaded {n} known hashes from {manifest_path}")
        return n

    def index_directory(self, root: Path, hasher: ContentHasher) -> int:
        """Hashes every regular file under root (internal files excluded)."""
        root = Path(root)
        n = 0
        if not root.exists():
            return 0
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.is_symlink():
                continue
            if path.name in config.INTERNAL_FILE_NAMES or path.name.endswith(config.SIDECAR_SUFFIX):
                continue
            try:
                result = hasher.hash_file(path, Algorithm.BLAKE3_FULL)
            except (SourceUnreadable, OSError) as e:
                logging.debug(f"Skipping {path} while indexing destination: {e}")
                continue
            self.register(result.hash, str(path))
            n += 1
        logging.info(f"Indexed {n} existing files under {root}")
        return n
