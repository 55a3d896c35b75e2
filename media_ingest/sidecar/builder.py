import getpass
import logging
import os
import platform
import socket
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional

from .. import config
from ..exceptions import SourceUnreadable
from ..hashing.hasher import ContentHasher
from ..models import (
    Algorithm, CustodyAction, CustodyEvent, DedupStatus, EventOutcome,
    ExtractedMetadata, FileRecord, ImportSession, RelationType, SourceInfo,
)
from .reader import ensure_intact, read_sidecar
from .record import SidecarRecord
from .writer import write_sidecar


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def _user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown")


def _iso_from_ts(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


def _device_fields(info: Optional[SourceInfo]) -> dict:
    if info is None or info.chain is None:
        return {}
    chain = info.chain
    fields = {}
    if chain.usb:
        fields.update(usb_vendor_id=chain.usb.vendor_id, usb_product_id=chain.usb.product_id,
                      usb_serial=chain.usb.serial, usb_device_name=chain.usb.device_name,
                      usb_manufacturer=chain.usb.manufacturer)
    if chain.card_reader:
        fields.update(card_reader_vendor=chain.card_reader.vendor, card_reader_model=chain.card_reader.model,
                      card_reader_serial=chain.card_reader.serial)
    if chain.media:
        fields.update(media_type=chain.media.type.value, media_serial=chain.media.serial,
                      media_manufacturer=chain.media.manufacturer, media_capacity=chain.media.capacity or None)
    if chain.camera_body_serial:
        fields['camera_body_serial'] = chain.camera_body_serial
    fields['filesystem'] = chain.volume.filesystem_type
    fields['connection'] = chain.connection_type
    return {k: v for k, v in fields.items() if v not in (None, "")}


class CustodySidecarBuilder:
    """
    Assembles the provenance record for one imported file.

    build() starts a chain with exactly one ingestion event (plus a
    metadata_modification event when the file was renamed). Later passes
    only ever append, through append_fixity_check().
    """

    def __init__(self, operator: Optional[str] = None, host: Optional[str] = None):
        self.operator = operator
        self.host = host or socket.gethostname()
        self.user = _user()
        self.tool = f"{config.TOOL_NAME}/{config.TOOL_VERSION}"

    def event(self, action: CustodyAction, outcome: EventOutcome = EventOutcome.SUCCESS,
              location: Optional[str] = None, content_hash: Optional[str] = None,
              algorithm: Optional[str] = None, notes: Optional[str] = None) -> CustodyEvent:
        return CustodyEvent(
            event_id=str(uuid.uuid4()),
            event_timestamp=now_iso(),
            event_action=action,
            event_outcome=outcome,
            event_location=location,
            event_host=self.host,
            event_user=self.operator or self.user,
            event_tool=self.tool,
            event_hash=content_hash,
            event_hash_algorithm=algorithm,
            event_notes=notes,
        )

    def build(self,
              record: FileRecord,
              session: ImportSession,
              source_info: Optional[SourceInfo] = None,
              metadata: Optional[ExtractedMetadata] = None,
              batch_sequence: Optional[int] = None) -> SidecarRecord:
        stamp = now_iso()
        src = Path(record.source_path)
        dest = Path(record.dest_path) if record.dest_path else None

        ctime = None
        try:
            ctime = src.stat().st_ctime
        except OSError:
            logging.debug(f"Source gone before sidecar build: {src}")

        chain = source_info.chain if source_info else None
        sidecar = SidecarRecord(
            content_hash=record.hash_short or "",
            content_hash_full=record.hash,
            source_path=str(src),
            import_timestamp=stamp,
            session_id=session.id,
            sidecar_created=stamp,
            sidecar_updated=stamp,
            hash_algorithm=Algorithm.BLAKE3.value,
            file_size=record.size,
            verified=record.verified,
            file_category=record.category or "other",
            detected_mime_type=record.mime_type or "application/octet-stream",
            declared_extension=src.suffix.lower(),
            extension_mismatch=record.extension_mismatch,
            source_filename=src.name,
            source_host=self.host,
            source_volume=chain.volume.volume_name if chain else session.source_volume,
            source_volume_serial=(chain.volume.volume_uuid if chain else None) or session.source_volume_serial,
            source_type=(record.source_type.value if record.source_type
                         else source_info.source_type.value if source_info else "unknown"),
            device_fingerprint=record.device_fingerprint or (source_info.fingerprint if source_info else None),
            original_mtime=_iso_from_ts(record.mtime),
            original_ctime=_iso_from_ts(ctime),
            tool_version=config.TOOL_VERSION,
            import_user=self.user,
            import_host=self.host,
            import_platform=platform.system().lower(),
            import_method="hardlink" if record.dedup_status == DedupStatus.HARDLINKED else "copy",
            operator=self.operator,
            batch_id=session.batch_id,
            batch_name=session.batch_name,
            batch_file_count=session.total_files if session.batch_id else None,
            batch_sequence=batch_sequence if session.batch_id else None,
            dedup_status=record.dedup_status.value if record.dedup_status else None,
            duplicate_of=record.duplicate_of,
            was_renamed=record.renamed or None,
            original_filename=record.original_name if record.renamed else None,
            dest_filename=dest.name if dest else None,
            rename_reason="hash_naming" if record.renamed else None,
            relation_type=record.relation_type.value if record.relation_type else None,
            is_primary_file=record.is_primary if record.relation_type else None,
            is_hidden=record.hidden or None,
            first_seen=stamp,
            source_device=_device_fields(source_info),
            related_files=list(record.related_files),
            companions=list(record.companions),
            warnings=list(record.warnings),
        )

        if record.relation_type == RelationType.LIVE_PHOTO:
            sidecar.is_live_photo = True
            sidecar.live_photo_role = "image" if record.is_primary else "video"

        if metadata is not None:
            for block in ('photo', 'video', 'audio', 'document'):
                data = getattr(metadata, block)
                if data:
                    sidecar.metadata[block] = dict(data)
            sidecar.errors = list(metadata.errors)

        sidecar.custody_chain.append(self.event(
            CustodyAction.INGESTION,
            location=str(dest) if dest else None,
            content_hash=record.hash,
            algorithm=Algorithm.BLAKE3_FULL.value,
            notes=f"Imported from {src}",
        ))
        if record.renamed:
            sidecar.custody_chain.append(self.event(
                CustodyAction.METADATA_MODIFICATION,
                location=str(dest) if dest else None,
                notes=f"Renamed {record.original_name} -> {record.final_name} (hash_naming)",
            ))
        return sidecar

    def write(self, sidecar: SidecarRecord, content_path: Path) -> Path:
        return write_sidecar(content_path, sidecar)

    def append_fixity_check(self,
                            sidecar_path: Path,
                            content_path: Optional[Path] = None,
                            hasher: Optional[ContentHasher] = None,
                            force: bool = False) -> SidecarRecord:
        """
        Re-hashes the content file and appends a fixity_check event.
        Refuses to re-sign a sidecar whose self-hash no longer matches unless force=True.
        """
        sidecar_path = Path(sidecar_path)
        result = read_sidecar(sidecar_path) if force else ensure_intact(sidecar_path)
        sidecar = result.data
        if content_path is None:
            content_path = sidecar_path.with_name(sidecar_path.name[:-len(config.SIDECAR_SUFFIX)])

        hasher = hasher or ContentHasher()
        expected = sidecar.content_hash_full or sidecar.content_hash
        algorithm = Algorithm.BLAKE3_FULL if len(expected) == config.FULL_HASH_LENGTH else Algorithm.BLAKE3
        try:
            actual = hasher.hash_file(Path(content_path), algorithm).hash
            outcome = EventOutcome.SUCCESS if actual == expected.lower() else EventOutcome.FAILURE
            notes = "Content matches recorded hash" if outcome == EventOutcome.SUCCESS \
                else f"Content hash mismatch: expected {expected}, got {actual}"
        except (SourceUnreadable, OSError) as e:
            actual = None
            outcome = EventOutcome.FAILURE
            notes = f"Content unreadable: {e}"

        sidecar.custody_chain.append(self.event(
            CustodyAction.FIXITY_CHECK,
            outcome=outcome,
            location=str(content_path),
            content_hash=actual,
            algorithm=algorithm.value,
            notes=notes,
        ))
        sidecar.sidecar_updated = now_iso()
        write_sidecar(Path(content_path), sidecar, sidecar_path=sidecar_path)
        logging.info(f"Fixity check on {content_path}: {outcome.value}")
        return sidecar
