"""
The custody sidecar record and the table that maps its scalar fields to XMP tags.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .. import config
from ..models import CompanionFile, CustodyEvent

REQUIRED_TAGS = ('ContentHash', 'SourcePath', 'ImportTimestamp', 'SessionID')
METADATA_BLOCKS = ('photo', 'video', 'audio', 'document')


@dataclass
class SidecarRecord:
    content_hash: str = ""
    source_path: str = ""
    import_timestamp: str = ""
    session_id: str = ""

    schema_version: int = config.SIDECAR_SCHEMA_VERSION
    sidecar_created: str = ""
    sidecar_updated: str = ""

    content_hash_full: Optional[str] = None
    hash_algorithm: str = "blake3"
    file_size: int = 0
    verified: bool = False

    file_category: str = "other"
    detected_mime_type: str = "application/octet-stream"
    declared_extension: str = ""
    extension_mismatch: Optional[bool] = None

    source_filename: str = ""
    source_host: str = ""
    source_volume: Optional[str] = None
    source_volume_serial: Optional[str] = None
    source_type: str = "unknown"
    device_fingerprint: Optional[str] = None

    original_mtime: Optional[str] = None
    original_ctime: Optional[str] = None

    tool_version: str = ""
    import_user: str = ""
    import_host: str = ""
    import_platform: str = ""
    import_method: Optional[str] = None
    operator: Optional[str] = None

    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    batch_file_count: Optional[int] = None
    batch_sequence: Optional[int] = None

    dedup_status: Optional[str] = None
    duplicate_of: Optional[str] = None

    was_renamed: Optional[bool] = None
    original_filename: Optional[str] = None
    dest_filename: Optional[str] = None
    rename_reason: Optional[str] = None

    relation_type: Optional[str] = None
    is_primary_file: Optional[bool] = None
    is_hidden: Optional[bool] = None
    is_live_photo: Optional[bool] = None
    live_photo_role: Optional[str] = None

    first_seen: str = ""

    source_device: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    related_files: List[str] = field(default_factory=list)
    companions: List[CompanionFile] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    custody_chain: List[CustodyEvent] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.custody_chain)


# (section comment, [(attribute, tag, type)]) in document order.
# SidecarHash is not listed: the writer inserts it after SidecarCreated.
SECTIONS = [
    ("Sidecar Self-Integrity", [
        ("schema_version", "SchemaVersion", int),
        ("sidecar_created", "SidecarCreated", str),
        ("sidecar_updated", "SidecarUpdated", str),
    ]),
    ("Core Identity", [
        ("content_hash", "ContentHash", str),
        ("content_hash_full", "ContentHashFull", str),
        ("hash_algorithm", "HashAlgorithm", str),
        ("file_size", "FileSize", int),
        ("verified", "Verified", bool),
    ]),
    ("File Classification", [
        ("file_category", "FileCategory", str),
        ("detected_mime_type", "DetectedMimeType", str),
        ("declared_extension", "DeclaredExtension", str),
        ("extension_mismatch", "ExtensionMismatch", bool),
    ]),
    ("Source Provenance", [
        ("source_path", "SourcePath", str),
        ("source_filename", "SourceFilename", str),
        ("source_host", "SourceHost", str),
        ("source_volume", "SourceVolume", str),
        ("source_volume_serial", "SourceVolumeSerial", str),
        ("source_type", "SourceType", str),
        ("device_fingerprint", "DeviceFingerprint", str),
    ]),
    ("Timestamps", [
        ("original_mtime", "OriginalMtime", str),
        ("original_ctime", "OriginalCtime", str),
    ]),
    ("Import Context", [
        ("import_timestamp", "ImportTimestamp", str),
        ("session_id", "SessionID", str),
        ("tool_version", "ToolVersion", str),
        ("import_user", "ImportUser", str),
        ("import_host", "ImportHost", str),
        ("import_platform", "ImportPlatform", str),
        ("import_method", "ImportMethod", str),
        ("operator", "Operator", str),
    ]),
    ("Batch Context", [
        ("batch_id", "BatchID", str),
        ("batch_name", "BatchName", str),
        ("batch_file_count", "BatchFileCount", int),
        ("batch_sequence", "BatchSequence", int),
    ]),
    ("Deduplication", [
        ("dedup_status", "DedupStatus", str),
        ("duplicate_of", "DuplicateOf", str),
    ]),
    ("File Renaming", [
        ("was_renamed", "WasRenamed", bool),
        ("original_filename", "OriginalFilename", str),
        ("dest_filename", "DestFilename", str),
        ("rename_reason", "RenameReason", str),
    ]),
    ("Related Files", [
        ("relation_type", "RelationType", str),
        ("is_primary_file", "IsPrimaryFile", bool),
        ("is_hidden", "IsHidden", bool),
        ("is_live_photo", "IsLivePhoto", bool),
        ("live_photo_role", "LivePhotoRole", str),
    ]),
]

SCALAR_TAGS = {tag: (attr, typ) for _, fields in SECTIONS for attr, tag, typ in fields}

CUSTODY_TAGS = [
    ("event_id", "EventID"),
    ("event_timestamp", "EventTimestamp"),
    ("event_action", "EventAction"),
    ("event_outcome", "EventOutcome"),
    ("event_location", "EventLocation"),
    ("event_host", "EventHost"),
    ("event_user", "EventUser"),
    ("event_tool", "EventTool"),
    ("event_hash", "EventHash"),
    ("event_hash_algorithm", "EventHashAlgorithm"),
    ("event_notes", "EventNotes"),
]

COMPANION_TAGS = [
    ("source_path", "CompanionSourcePath"),
    ("dest_path", "CompanionDestPath"),
    ("extension", "CompanionExtension"),
    ("hash", "CompanionHash"),
    ("size", "CompanionSize"),
    ("content_base64", "CompanionContent"),
]


def metadata_tag(block: str, key: str) -> str:
    """('photo', 'date_taken') -> 'PhotoDateTaken'"""
    return block.capitalize() + "".join(part.capitalize() for part in key.split("_"))


def split_metadata_tag(tag: str) -> Optional[tuple]:
    """Inverse of metadata_tag; None for tags outside the metadata blocks."""
    for block in METADATA_BLOCKS:
        prefix = block.capitalize()
        if tag.startswith(prefix) and len(tag) > len(prefix) and tag[len(prefix)].isupper():
            rest = tag[len(prefix):]
            return block, re.sub(r'(?<!^)(?=[A-Z])', '_', rest).lower()
    return None


def device_tag(key: str) -> str:
    return "Device" + "".join(part.capitalize() for part in key.split("_"))
