"""
Renders a SidecarRecord as an XMP document and writes it with its self-hash.
"""
import logging
import re
from pathlib import Path
from typing import Any, List, Optional
from xml.sax.saxutils import escape

from .. import config
from ..hashing.hasher import ContentHasher
from .record import (
    COMPANION_TAGS, CUSTODY_TAGS, SECTIONS, SidecarRecord, device_tag, metadata_tag,
)

NS = config.SIDECAR_NS_PREFIX
_HASH_LINE = re.compile(rf'\n[ \t]*<{NS}:SidecarHash>[^<]*</{NS}:SidecarHash>')
_ENTITIES = {'"': '&quot;', "'": '&apos;'}


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        value = value.value
    return escape(str(value), _ENTITIES)


def _tag(lines: List[str], indent: int, tag: str, value: Any) -> None:
    if value is None or value == "":
        return
    lines.append(f"{' ' * indent}<{NS}:{tag}>{_fmt(value)}</{NS}:{tag}>")


def render_sidecar(record: SidecarRecord) -> str:
    """XMP text without the SidecarHash line."""
    lines = ['<?xml version="1.0" encoding="UTF-8"?>',
             f'<x:xmpmeta xmlns:x="{config.XMP_NAMESPACES["x"]}">',
             '  <rdf:RDF']
    ns_decls = [f'    xmlns:{prefix}="{uri}"' for prefix, uri in config.XMP_NAMESPACES.items() if prefix != 'x']
    ns_decls[-1] += '>'
    lines.extend(ns_decls)
    lines.append('    <rdf:Description rdf:about="">')

    for title, fields in SECTIONS:
        values = [(tag, getattr(record, attr)) for attr, tag, _ in fields]
        if all(v is None or v == "" for _, v in values):
            continue
        lines.append('')
        lines.append(f'      <!-- {title} -->')
        for tag, value in values:
            _tag(lines, 6, tag, value)

    if record.source_device:
        lines.append('')
        lines.append('      <!-- Import Source Device -->')
        for key, value in record.source_device.items():
            _tag(lines, 6, device_tag(key), value)

    if record.related_files:
        lines.append(f'      <{NS}:RelatedFiles>')
        lines.append('        <rdf:Bag>')
        for name in record.related_files:
            lines.append(f'          <rdf:li>{_fmt(name)}</rdf:li>')
        lines.append('        </rdf:Bag>')
        lines.append(f'      </{NS}:RelatedFiles>')

    for block in ('photo', 'video', 'audio', 'document'):
        data = record.metadata.get(block)
        if not data:
            continue
        lines.append('')
        lines.append(f'      <!-- {block.capitalize()} Metadata -->')
        for key, value in data.items():
            _tag(lines, 6, metadata_tag(block, key), value)

    if record.companions:
        lines.append('')
        lines.append('      <!-- Companion Files -->')
        lines.append(f'      <{NS}:Companions>')
        lines.append('        <rdf:Bag>')
        for comp in record.companions:
            lines.append('          <rdf:li rdf:parseType="Resource">')
            for attr, tag in COMPANION_TAGS:
                _tag(lines, 12, tag, getattr(comp, attr))
            lines.append('          </rdf:li>')
        lines.append('        </rdf:Bag>')
        lines.append(f'      </{NS}:Companions>')

    for tag, items in (('Warnings', record.warnings), ('Errors', record.errors)):
        if not items:
            continue
        lines.append(f'      <{NS}:{tag}>')
        lines.append('        <rdf:Bag>')
        for item in items:
            lines.append(f'          <rdf:li>{_fmt(item)}</rdf:li>')
        lines.append('        </rdf:Bag>')
        lines.append(f'      </{NS}:{tag}>')

    lines.append('')
    lines.append('      <!-- Chain of Custody -->')
    _tag(lines, 6, 'FirstSeen', record.first_seen)
    _tag(lines, 6, 'EventCount', record.event_count)
    lines.append(f'      <{NS}:CustodyChain>')
    lines.append('        <rdf:Seq>')
    for event in record.custody_chain:
        lines.append('          <rdf:li rdf:parseType="Resource">')
        for attr, tag in CUSTODY_TAGS:
            _tag(lines, 12, tag, getattr(event, attr))
        lines.append('          </rdf:li>')
    lines.append('        </rdf:Seq>')
    lines.append(f'      </{NS}:CustodyChain>')

    lines.append('')
    lines.append('    </rdf:Description>')
    lines.append('  </rdf:RDF>')
    lines.append('</x:xmpmeta>')
    return '\n'.join(lines)


def calculate_sidecar_hash(content: str) -> str:
    """Full BLAKE3 over the document with any SidecarHash line removed."""
    return ContentHasher.hash_string(_HASH_LINE.sub('', content), full=True)


def serialize_sidecar(record: SidecarRecord) -> str:
    content = render_sidecar(record)
    digest = calculate_sidecar_hash(content)
    return content.replace(
        f'</{NS}:SidecarCreated>',
        f'</{NS}:SidecarCreated>\n      <{NS}:SidecarHash>{digest}</{NS}:SidecarHash>',
        1,
    )


def sidecar_path_for(content_path: Path) -> Path:
    content_path = Path(content_path)
    return content_path.with_name(content_path.name + config.SIDECAR_SUFFIX)


def write_sidecar(content_path: Path, record: SidecarRecord, sidecar_path: Optional[Path] = None) -> Path:
    """
    Writes `<content_path>.xmp` (or sidecar_path) and returns its path.
    The file is replaced atomically so readers never see a half-written sidecar.
    """
    target = Path(sidecar_path) if sidecar_path else sidecar_path_for(content_path)
    tmp = target.with_name(target.name + ".tmp")
    tmp.write_text(serialize_sidecar(record), encoding="utf-8")
    tmp.replace(target)
    logging.debug(f"Wrote sidecar {target}")
    return target
