"""
Parses custody sidecars back into SidecarRecord and checks their self-hash.
"""
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import config
from ..exceptions import SidecarIntegrityMismatch, SidecarParseError
from ..models import CompanionFile, CustodyAction, CustodyEvent, EventOutcome
from .record import (
    COMPANION_TAGS, CUSTODY_TAGS, REQUIRED_TAGS, SCALAR_TAGS, SidecarRecord,
    split_metadata_tag,
)
from .writer import calculate_sidecar_hash

_RDF = config.XMP_NAMESPACES['rdf']
_MI = config.XMP_NAMESPACES[config.SIDECAR_NS_PREFIX]
_INT_RE = re.compile(r'^-?\d+$')
_FLOAT_RE = re.compile(r'^-?\d+\.\d+$')
# identifiers that can look numeric but must keep their exact text
_STRING_KEY_SUFFIXES = ('serial', '_id', 'version', 'firmware')
_DEVICE_INT_KEYS = {'media_capacity'}


@dataclass
class ParsedSidecar:
    """Neutral parse output: flat scalar tags plus the list containers."""
    scalars: Dict[str, str] = field(default_factory=dict)
    bags: Dict[str, List[str]] = field(default_factory=dict)
    resources: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)


@dataclass
class ParseResult:
    data: SidecarRecord
    hash_match: bool
    stored_hash: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class SidecarParser:
    """Turns sidecar text into ParsedSidecar. Swap implementations freely."""

    def parse(self, content: str) -> ParsedSidecar:
        raise NotImplementedError


class ElementTreeSidecarParser(SidecarParser):
    def parse(self, content: str) -> ParsedSidecar:
        try:
            root = ET.fromstring(content.encode("utf-8"))
        except ET.ParseError as e:
            raise SidecarParseError(f"Malformed sidecar XML: {e}") from e

        desc = root.find(f'.//{{{_RDF}}}Description')
        if desc is None:
            raise SidecarParseError("Sidecar has no rdf:Description")

        parsed = ParsedSidecar()
        for child in desc:
            if not child.tag.startswith(f'{{{_MI}}}'):
                continue
            name = child.tag[len(_MI) + 2:]
            container = next(iter(child), None)
            if container is None:
                parsed.scalars[name] = (child.text or "").strip()
                continue
            items = list(container)
            if items and any(len(li) for li in items):
                parsed.resources[name] = [
                    {el.tag[len(_MI) + 2:]: (el.text or "").strip() for el in li}
                    for li in items
                ]
            else:
                parsed.bags[name] = [(li.text or "").strip() for li in items]
        return parsed


def _coerce(value: str, typ=None) -> Any:
    """
    Typed tags are converted as declared. Untyped values only become numbers
    when writing the number back reproduces the same text ("007" and "1.10"
    stay strings).
    """
    if typ is bool or (typ is None and value in ("true", "false")):
        return value == "true"
    if typ is int:
        try:
            return int(value)
        except ValueError:
            return None
    if typ is None and _INT_RE.match(value) and str(int(value)) == value:
        return int(value)
    if typ is None and _FLOAT_RE.match(value) and repr(float(value)) == value:
        return float(value)
    return value


def _coerce_metadata(key: str, value: str) -> Any:
    if key.endswith(_STRING_KEY_SUFFIXES):
        return value
    return _coerce(value)


def _coerce_device(key: str, value: str) -> Any:
    if key in _DEVICE_INT_KEYS:
        return _coerce(value, int)
    return value


def _to_event(d: Dict[str, str]) -> CustodyEvent:
    kwargs = {attr: d.get(tag) or None for attr, tag in CUSTODY_TAGS}
    kwargs['event_id'] = kwargs['event_id'] or ""
    kwargs['event_timestamp'] = kwargs['event_timestamp'] or ""
    try:
        kwargs['event_action'] = CustodyAction(kwargs['event_action'])
        kwargs['event_outcome'] = EventOutcome(kwargs['event_outcome'] or EventOutcome.SUCCESS.value)
    except ValueError as e:
        raise SidecarParseError(f"Unknown custody event value: {e}") from e
    return CustodyEvent(**kwargs)


def _to_companion(d: Dict[str, str]) -> CompanionFile:
    kwargs = {attr: d.get(tag) for attr, tag in COMPANION_TAGS}
    kwargs['size'] = int(kwargs['size'] or 0)
    for key in ('source_path', 'dest_path', 'extension', 'hash'):
        kwargs[key] = kwargs[key] or ""
    return CompanionFile(**kwargs)


def parse_sidecar_content(content: str, parser: Optional[SidecarParser] = None) -> ParseResult:
    """
    Raises SidecarParseError for malformed XML or a missing required field.
    A self-hash mismatch is reported on the result, never raised here.
    """
    parsed = (parser or ElementTreeSidecarParser()).parse(content)

    missing = [tag for tag in REQUIRED_TAGS if not parsed.scalars.get(tag)]
    if missing:
        raise SidecarParseError(f"Missing required field(s): {', '.join(missing)}")

    record = SidecarRecord()
    for tag, value in parsed.scalars.items():
        if tag in SCALAR_TAGS:
            attr, typ = SCALAR_TAGS[tag]
            setattr(record, attr, _coerce(value, typ))
            continue
        split = split_metadata_tag(tag)
        if split:
            block, key = split
            record.metadata.setdefault(block, {})[key] = _coerce_metadata(key, value)
        elif tag.startswith("Device") and len(tag) > 6:
            key = re.sub(r'(?<!^)(?=[A-Z])', '_', tag[6:]).lower()
            record.source_device[key] = _coerce_device(key, value)

    record.related_files = parsed.bags.get('RelatedFiles', [])
    record.warnings = parsed.bags.get('Warnings', [])
    record.errors = parsed.bags.get('Errors', [])
    record.first_seen = parsed.scalars.get('FirstSeen', "")
    record.custody_chain = [_to_event(d) for d in parsed.resources.get('CustodyChain', [])]
    record.companions = [_to_companion(d) for d in parsed.resources.get('Companions', [])]

    result = ParseResult(data=record, hash_match=True, stored_hash=parsed.scalars.get('SidecarHash'))
    if result.stored_hash:
        result.hash_match = result.stored_hash == calculate_sidecar_hash(content)
        if not result.hash_match:
            result.errors.append("Sidecar hash mismatch - sidecar was modified after it was written")
    else:
        result.warnings.append("No sidecar hash present")

    stored_count = parsed.scalars.get('EventCount')
    if stored_count is not None and _coerce(stored_count, int) != record.event_count:
        result.errors.append(f"EventCount {stored_count} does not match {record.event_count} custody events")
    return result


def read_sidecar(sidecar_path: Path, parser: Optional[SidecarParser] = None) -> ParseResult:
    try:
        content = Path(sidecar_path).read_text(encoding="utf-8")
    except OSError as e:
        raise SidecarParseError(f"Cannot read sidecar {sidecar_path}: {e}") from e
    return parse_sidecar_content(content, parser)


def verify_sidecar(sidecar_path: Path) -> ParseResult:
    """Never raises for content problems; they land in ParseResult.errors."""
    try:
        return read_sidecar(sidecar_path)
    except SidecarParseError as e:
        logging.warning(f"Sidecar {sidecar_path} failed to parse: {e}")
        return ParseResult(data=SidecarRecord(), hash_match=False, errors=[str(e)])


def ensure_intact(sidecar_path: Path) -> ParseResult:
    result = read_sidecar(sidecar_path)
    if not result.hash_match:
        raise SidecarIntegrityMismatch(f"Sidecar {sidecar_path} was modified after it was written")
    return result
