from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any


class Algorithm(str, Enum):
    BLAKE3 = "blake3"            # 16 hex chars, ids and dedup keys
    BLAKE3_FULL = "blake3-full"  # 64 hex chars, verification
    SHA256 = "sha256"
    SHA512 = "sha512"
    MD5 = "md5"
    XXHASH64 = "xxhash64"


class HasherMode(str, Enum):
    AUTO = "auto"
    NATIVE = "native"
    FORCED_FALLBACK = "forced-fallback"


class ImportStatus(str, Enum):
    """Per-file stage and coarse session status share one vocabulary."""
    PENDING = "pending"
    SCANNING = "scanning"
    DETECTING_DEVICE = "detecting-device"
    DETECTING_RELATED = "detecting-related"
    HASHING = "hashing"
    COPYING = "copying"
    RENAMING = "renaming"
    VALIDATING = "validating"
    EXTRACTING_METADATA = "extracting-metadata"
    GENERATING_SIDECARS = "generating-sidecars"
    GENERATING_MANIFEST = "generating-manifest"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    PAUSED = "paused"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.COMPLETED, ImportStatus.SKIPPED, ImportStatus.FAILED)


class DedupStatus(str, Enum):
    UNIQUE = "unique"
    DUPLICATE = "duplicate"
    HARDLINKED = "hardlinked"


class DedupMode(str, Enum):
    SKIP = "skip"
    HARDLINK = "hardlink"


class SourceType(str, Enum):
    MEMORY_CARD = "memory_card"
    CAMERA_DIRECT = "camera_direct"
    PHONE_DIRECT = "phone_direct"
    LOCAL_DISK = "local_disk"
    NETWORK_SHARE = "network_share"
    CLOUD_SYNC = "cloud_sync"
    UNKNOWN = "unknown"


class MediaType(str, Enum):
    SD = "sd"
    CF = "cf"
    CFEXPRESS = "cfexpress"
    SSD = "ssd"
    HDD = "hdd"
    NVME = "nvme"


class FileCategory(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    SIDECAR = "sidecar"
    OTHER = "other"


class RelationType(str, Enum):
    LIVE_PHOTO = "live_photo"
    RAW_JPEG_PAIR = "raw_jpeg_pair"
    RAW_SIDECAR = "raw_sidecar"
    BURST_SEQUENCE = "burst_sequence"
    SDR_HDR_PAIR = "sdr_hdr_pair"


class CustodyAction(str, Enum):
    """PREMIS-style event vocabulary for custody chains."""
    CREATION = "creation"
    INGESTION = "ingestion"
    MESSAGE_DIGEST_CALCULATION = "message_digest_calculation"
    FIXITY_CHECK = "fixity_check"
    FORMAT_IDENTIFICATION = "format_identification"
    MIGRATION = "migration"
    REPLICATION = "replication"
    DELETION = "deletion"
    MODIFICATION = "modification"
    METADATA_MODIFICATION = "metadata_modification"
    RECOVERY = "recovery"
    QUARANTINE = "quarantine"
    ACCESS = "access"


class EventOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


# ---------------------- DEVICE CHAIN ----------------------

@dataclass(frozen=True)
class MountedVolume:
    mount_point: str
    device: str = ""
    device_path: str = ""
    volume_name: str = ""
    volume_uuid: Optional[str] = None
    filesystem_type: str = "unknown"
    is_removable: bool = False
    is_external: bool = False
    is_network: bool = False
    total_size: int = 0
    free_space: int = 0


@dataclass(frozen=True)
class UsbDevice:
    vendor_id: str
    product_id: str
    serial: Optional[str] = None
    device_path: str = ""
    device_name: str = "Unknown"
    bus_location: Optional[str] = None
    manufacturer: Optional[str] = None


@dataclass(frozen=True)
class CardReader:
    vendor: str
    model: str
    serial: Optional[str] = None
    port: str = ""


@dataclass(frozen=True)
class PhysicalMedia:
    type: MediaType
    capacity: int = 0
    serial: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    volume_name: Optional[str] = None
    volume_uuid: Optional[str] = None
    filesystem_type: Optional[str] = None


@dataclass(frozen=True)
class DeviceChain:
    """
    Resolved hierarchy for one mounted source:
    volume -> USB device / card reader -> physical media -> camera or phone.
    Immutable; cached once per mount point for a session.
    """
    volume: MountedVolume
    usb: Optional[UsbDevice] = None
    card_reader: Optional[CardReader] = None
    media: Optional[PhysicalMedia] = None
    is_memory_card: bool = False
    is_camera_direct: bool = False
    is_phone_direct: bool = False
    connection_type: Optional[str] = None
    camera_body_serial: Optional[str] = None


@dataclass(frozen=True)
class SourceInfo:
    """What the pipeline records about where a file came from."""
    source_type: SourceType
    fingerprint: str
    chain: Optional[DeviceChain] = None


# ---------------------- CUSTODY ----------------------

@dataclass
class CustodyEvent:
    event_id: str
    event_timestamp: str
    event_action: CustodyAction
    event_outcome: EventOutcome = EventOutcome.SUCCESS
    event_location: Optional[str] = None
    event_host: Optional[str] = None
    event_user: Optional[str] = None
    event_tool: Optional[str] = None
    event_hash: Optional[str] = None
    event_hash_algorithm: Optional[str] = None
    event_notes: Optional[str] = None


@dataclass
class CompanionFile:
    """A co-located metadata file copied alongside its primary."""
    source_path: str
    dest_path: str
    extension: str
    hash: str
    size: int
    content_base64: Optional[str] = None


@dataclass
class RelatedGroup:
    type: RelationType
    primary_file: Path
    related_files: List[Path]

    @property
    def all_files(self) -> List[Path]:
        return [self.primary_file, *self.related_files]


@dataclass
class ExtractedMetadata:
    """Category-specific metadata returned by the metadata extractor."""
    photo: Dict[str, Any] = field(default_factory=dict)
    video: Dict[str, Any] = field(default_factory=dict)
    audio: Dict[str, Any] = field(default_factory=dict)
    document: Dict[str, Any] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def block_for(self, category: str) -> Dict[str, Any]:
        if category == FileCategory.IMAGE.value:
            return self.photo
        if category == FileCategory.VIDEO.value:
            return self.video
        if category == FileCategory.AUDIO.value:
            return self.audio
        if category == FileCategory.DOCUMENT.value:
            return self.document
        return {}


# ---------------------- PIPELINE STATE ----------------------

@dataclass
class FileRecord:
    """
    One file moving through the import pipeline.
    `hash` is the full BLAKE3 digest and is set once; `dest_path` changes only
    through an explicit rename, which is recorded on the record.
    """
    source_path: Path
    relative_path: str
    size: int = 0
    mtime: Optional[float] = None
    session_id: Optional[str] = None
    status: ImportStatus = ImportStatus.PENDING
    stage: ImportStatus = ImportStatus.PENDING

    # Hashing & copy
    hash: Optional[str] = None
    hash_short: Optional[str] = None
    dest_hash: Optional[str] = None
    dest_path: Optional[Path] = None
    verified: bool = False
    retries: int = 0

    # Classification
    category: Optional[str] = None
    mime_type: Optional[str] = None
    extension_mismatch: Optional[bool] = None
    source_type: Optional[SourceType] = None
    device_fingerprint: Optional[str] = None

    # Dedup & naming
    dedup_status: Optional[DedupStatus] = None
    duplicate_of: Optional[str] = None
    renamed: bool = False
    original_name: Optional[str] = None
    final_name: Optional[str] = None

    # Grouping
    related_files: List[str] = field(default_factory=list)
    relation_type: Optional[RelationType] = None
    is_primary: Optional[bool] = None
    hidden: bool = False
    companions: List[CompanionFile] = field(default_factory=list)

    # Outputs
    sidecar_path: Optional[Path] = None
    metadata: Optional[ExtractedMetadata] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ImportSession:
    id: str
    source: Path
    destination: Path
    status: ImportStatus = ImportStatus.PENDING
    total_files: int = 0
    processed_files: int = 0
    duplicate_files: int = 0
    renamed_files: int = 0
    sidecar_files: int = 0
    error_files: int = 0
    skipped_files: int = 0
    total_bytes: int = 0
    processed_bytes: int = 0
    started_at: str = ""
    completed_at: Optional[str] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    source_type: Optional[SourceType] = None
    source_volume: Optional[str] = None
    source_volume_serial: Optional[str] = None
    source_fingerprint: Optional[str] = None
    files: List[FileRecord] = field(default_factory=list)

    @property
    def successful_files(self) -> int:
        return self.processed_files

    @property
    def exit_code(self) -> int:
        """0 = clean, 1 = session failed, 4 = finished with per-file failures, 130 = interrupted."""
        if self.status == ImportStatus.FAILED:
            return 1
        if self.status == ImportStatus.PAUSED:
            return 130
        if self.error_files > 0:
            return 4
        return 0

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "status": self.status.value,
            "total": self.total_files,
            "successful": self.processed_files,
            "failed": self.error_files,
            "skipped": self.duplicate_files + self.skipped_files,
            "duplicates": self.duplicate_files,
            "renamed": self.renamed_files,
            "sidecars": self.sidecar_files,
            "total_bytes": self.total_bytes,
            "processed_bytes": self.processed_bytes,
            "exit_code": self.exit_code,
        }
