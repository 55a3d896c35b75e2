import os
import re
import logging
import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Set, Optional, List, Tuple

from .. import config


@dataclass
class ScanResult:
    files: List[Path] = field(default_factory=list)
    total_bytes: int = 0
    skipped: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)


def load_ignore_patterns(root: Path) -> List[str]:
    """Reads `.ingestignore` from the source root: one glob per line, '#' comments."""
    ignore_file = Path(root) / config.IGNORE_FILE_NAME
    if not ignore_file.is_file():
        return []
    patterns = []
    try:
        for line in ignore_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith('#'):
                patterns.append(line)
    except OSError as e:
        logging.warning(f"Could not read {ignore_file}: {e}")
    return patterns


class SourceScanner:
    """
    Enumerates importable files under a source root.
    Symlinks are never followed; OS junk and dot-files are skipped.
    """

    def __init__(self,
                 exclude_patterns: Optional[List[str]] = None,
                 include_hidden: bool = False,
                 skip_dirs: Optional[Set[Path]] = None):
        self.exclude_patterns = list(exclude_patterns or [])
        self.include_hidden = include_hidden
        self.skip_dirs = {Path(d).resolve() for d in (skip_dirs or set())}
        self.junk = [re.compile(p) for p in config.SKIP_PATTERNS]

    def scan(self, root: Path) -> ScanResult:
        root = Path(root)
        patterns = self.exclude_patterns or load_ignore_patterns(root)
        result = ScanResult()

        for path in self._iter_files(root, patterns, result):
            try:
                result.total_bytes += path.stat().st_size
            except OSError as e:
                result.errors.append((str(path), str(e)))
                continue
            result.files.append(path)

        result.files.sort(key=lambda p: p.relative_to(root).as_posix())
        logging.info(f"Scanned {root}: {len(result.files)} files, "
                     f"{result.skipped} skipped, {len(result.errors)} unreadable directories")
        return result

    def _excluded(self, rel: str, name: str, patterns: List[str]) -> bool:
        for pat in patterns:
            p = pat.rstrip('/')
            if fnmatch.fnmatch(rel, p) or fnmatch.fnmatch(name, p):
                return True
        return False

    def _skip_name(self, name: str) -> bool:
        if name == config.IGNORE_FILE_NAME or name in config.INTERNAL_FILE_NAMES:
            return True
        if any(rx.search(name) for rx in self.junk):
            return True
        return not self.include_hidden and name.startswith('.')

    def _iter_files(self, root: Path, patterns: List[str], result: ScanResult) -> Iterator[Path]:
        """Depth-first walker using os.scandir, sorted for stable order."""
        stack = [root]
        while stack:
            current = stack.pop()
            if self.skip_dirs and current.resolve() in self.skip_dirs:
                logging.debug(f"Skipping destination inside source: {current}")
                continue

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"Cannot read directory {current}: {e}")
                result.errors.append((str(current), str(e)))
                continue

            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            for e in entries:
                rel = Path(e.path).relative_to(root).as_posix()
                if self._skip_name(e.name) or self._excluded(rel, e.name, patterns):
                    result.skipped += 1
                    continue
                if e.is_symlink():
                    result.skipped += 1
                    continue
                if e.is_dir(follow_symlinks=False):
                    dirs.append(Path(e.path))
                elif e.is_file(follow_symlinks=False):
                    yield Path(e.path)

            for d in reversed(dirs):
                stack.append(d)
