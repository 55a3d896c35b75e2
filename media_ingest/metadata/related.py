"""
Relationship discovery between files that form one logical asset
(Live Photo, RAW+JPEG, RAW+sidecar, burst, HDR+SDR) and companion sidecars.
"""
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Iterable

from .. import config
from ..models import RelatedGroup, RelationType

_BURST_PATTERNS = [
    ('underscore', re.compile(r'^(.+)_(\d+)(\.[^.]+)$')),
    ('paren', re.compile(r'^(.+)\((\d+)\)(\.[^.]+)$')),
    ('burst', re.compile(r'^BURST(\d+)_(\d+)(\.[^.]+)$', re.IGNORECASE)),
]
BURST_MIN_FILES = 3
BURST_MAX_GAP = 2


def _ext(p: Path) -> str:
    return p.suffix.lower()


class RelatedFileDetector:
    """
    Groups files by shared base name or sequence numbering.
    A file belongs to at most one group; earlier relation types claim first.
    """

    def __init__(self):
        self.groups: List[RelatedGroup] = []
        self._by_file: Dict[Path, RelatedGroup] = {}

    def find_groups(self, files: Iterable[Path]) -> List[RelatedGroup]:
        files = [Path(f) for f in files]
        by_base: Dict[tuple, List[Path]] = defaultdict(list)
        by_dir: Dict[Path, List[Path]] = defaultdict(list)
        for f in files:
            by_base[(f.parent, f.stem.lower())].append(f)
            by_dir[f.parent].append(f)

        groups: List[RelatedGroup] = []
        claimed = set()

        def claim(group: Optional[RelatedGroup]):
            if group is not None:
                groups.append(group)
                claimed.update(group.all_files)

        for base_files in by_base.values():
            claim(self._live_photo(base_files))

        for detect in (self._raw_jpeg_pair, self._raw_sidecar):
            for base_files in by_base.values():
                remaining = [f for f in base_files if f not in claimed]
                if len(remaining) >= 2:
                    claim(detect(remaining))

        for dir_files in by_dir.values():
            for group in self._bursts([f for f in dir_files if f not in claimed]):
                claim(group)

        for dir_files in by_dir.values():
            for group in self._hdr_sdr_pairs([f for f in dir_files if f not in claimed]):
                claim(group)

        self.groups = groups
        self._by_file = {f: g for g in groups for f in g.all_files}
        if groups:
            logging.info(f"Found {len(groups)} related-file groups")
        return groups

    # --- Lookups ---

    def group_for(self, file: Path) -> Optional[RelatedGroup]:
        return self._by_file.get(Path(file))

    def is_primary(self, file: Path) -> bool:
        """Files outside any group are their own primary."""
        group = self.group_for(file)
        return group is None or group.primary_file == Path(file)

    def primary_for(self, file: Path) -> Path:
        group = self.group_for(file)
        return group.primary_file if group else Path(file)

    def should_hide(self, file: Path) -> bool:
        """SDR copies and Live Photo motion clips are hidden from listings."""
        group = self.group_for(file)
        if group is None or Path(file) == group.primary_file:
            return False
        return group.type in (RelationType.SDR_HDR_PAIR, RelationType.LIVE_PHOTO)

    # --- Detectors ---

    def _live_photo(self, files: List[Path]) -> Optional[RelatedGroup]:
        image = video = None
        for f in files:
            ext = _ext(f)
            if ext in config.HEIC_EXTS or ext in config.JPEG_EXTS:
                image = f
            elif ext in config.LIVE_PHOTO_VIDEO_EXTS:
                video = f
        if image is None or video is None:
            return None

        image_base = re.sub(r'_HEVC$', '', image.stem)
        video_base = video.stem
        # Edited clips are named IMG_E1234
        video_clean = re.sub(r'^IMG_E', 'IMG_', video_base)
        if image_base.lower() in (video_base.lower(), video_clean.lower()):
            return RelatedGroup(RelationType.LIVE_PHOTO, image, [video])
        return None

    def _raw_jpeg_pair(self, files: List[Path]) -> Optional[RelatedGroup]:
        raw = next((f for f in files if _ext(f) in config.RAW_EXTS), None)
        jpeg = next((f for f in files if _ext(f) in config.JPEG_EXTS), None)
        if raw and jpeg:
            return RelatedGroup(RelationType.RAW_JPEG_PAIR, raw, [jpeg])
        return None

    def _raw_sidecar(self, files: List[Path]) -> Optional[RelatedGroup]:
        raw = next((f for f in files if _ext(f) in config.RAW_EXTS), None)
        sidecars = [f for f in files if _ext(f) in config.RAW_SIDECAR_EXTS]
        if raw and sidecars:
            return RelatedGroup(RelationType.RAW_SIDECAR, raw, sidecars)
        return None

    def _bursts(self, files: List[Path]) -> List[RelatedGroup]:
        series: Dict[str, List[tuple]] = defaultdict(list)
        for f in files:
            for kind, rx in _BURST_PATTERNS:
                m = rx.match(f.name)
                if m:
                    prefix, seq, ext = m.groups()
                    series[f"{kind}:{prefix}{ext.lower()}"].append((int(seq), f))
                    break

        groups = []
        for entries in series.values():
            if len(entries) < BURST_MIN_FILES:
                continue
            entries.sort(key=lambda e: e[0])
            gaps = [b[0] - a[0] for a, b in zip(entries, entries[1:])]
            if all(g <= BURST_MAX_GAP for g in gaps):
                ordered = [f for _, f in entries]
                groups.append(RelatedGroup(RelationType.BURST_SEQUENCE, ordered[0], ordered[1:]))
        return groups

    def _hdr_sdr_pairs(self, files: List[Path]) -> List[RelatedGroup]:
        by_name = {f.name: f for f in files}
        groups = []
        used = set()
        for f in files:
            if f in used or '_SDR.' not in f.name:
                continue
            hdr = by_name.get(f.name.replace('_SDR.', '.'))
            if hdr is not None and hdr not in used:
                groups.append(RelatedGroup(RelationType.SDR_HDR_PAIR, hdr, [f]))
                used.update((f, hdr))
        return groups


def find_companions(files: Iterable[Path]) -> Dict[Path, List[Path]]:
    """
    Maps each primary (non-sidecar) file to the sidecar-extension files in
    the same directory sharing its stem. When several primaries share a
    stem (RAW+JPEG), a RAW takes the companions.
    """
    files = [Path(f) for f in files]
    primaries: Dict[tuple, List[Path]] = defaultdict(list)
    sidecars: Dict[tuple, List[Path]] = defaultdict(list)
    for f in files:
        key = (f.parent, f.stem.lower())
        if _ext(f) in config.SIDECAR_EXTS:
            sidecars[key].append(f)
        else:
            primaries[key].append(f)

    result: Dict[Path, List[Path]] = {}
    for key, attached in sidecars.items():
        owners = primaries.get(key)
        if not owners:
            continue
        owner = next((o for o in owners if _ext(o) in config.RAW_EXTS), owners[0])
        result[owner] = sorted(attached)
    return result
