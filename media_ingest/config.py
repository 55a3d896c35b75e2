"""
Configuration constants for the media ingest pipeline.
"""
import os
from typing import Optional

TOOL_NAME = "media-ingest"
TOOL_VERSION = "0.3.0"

# --- File Type Definitions ---
RAW_EXTS = {
    '.dng', '.cr2', '.cr3', '.crw', '.nef', '.nrw', '.arw', '.arq', '.srf', '.sr2',
    '.raf', '.orf', '.ori', '.rw2', '.raw', '.rwl', '.pef', '.ptx', '.srw', '.x3f',
    '.3fr', '.fff', '.iiq', '.mef', '.mos', '.dcr', '.k25', '.kdc', '.mrw', '.erf',
    '.gpr', '.rwz',
}
JPEG_EXTS = {'.jpg', '.jpeg', '.jpe'}
HEIC_EXTS = {'.heic', '.heif', '.hif'}
IMAGE_EXTS = JPEG_EXTS | HEIC_EXTS | {'.png', '.gif', '.tif', '.tiff', '.bmp', '.webp', '.psd', '.psb'}
VIDEO_EXTS = {'.mp4', '.mov', '.m4v', '.avi', '.mts', '.m2ts', '.3gp', '.mpg', '.mpeg', '.tod', '.mkv', '.mxf', '.webm'}
AUDIO_EXTS = {'.wav', '.mp3', '.flac', '.aac', '.m4a', '.aiff', '.aif', '.ogg', '.opus', '.wma'}
DOCUMENT_EXTS = {'.pdf', '.txt', '.md', '.doc', '.docx', '.odt', '.rtf', '.xls', '.xlsx', '.ppt', '.pptx'}
ARCHIVE_EXTS = {'.zip', '.tar', '.gz', '.tgz', '.7z', '.rar', '.bz2', '.xz'}
SIDECAR_EXTS = {
    '.xmp', '.thm', '.lrf', '.lrv', '.aae', '.moi', '.cpi', '.bdm', '.mpl',
    '.rmd', '.ale', '.sidecar', '.nksc', '.srt',
}
LIVE_PHOTO_VIDEO_EXTS = {'.mov', '.mp4', '.m4v'}
# Companions that travel with a RAW file in related-file grouping
RAW_SIDECAR_EXTS = {'.xmp', '.thm', '.aae'}

# Extension to Category Mapping
EXT_TO_CATEGORY = {}
for ext in RAW_EXTS | IMAGE_EXTS: EXT_TO_CATEGORY[ext] = 'image'
for ext in VIDEO_EXTS: EXT_TO_CATEGORY[ext] = 'video'
for ext in AUDIO_EXTS: EXT_TO_CATEGORY[ext] = 'audio'
for ext in DOCUMENT_EXTS: EXT_TO_CATEGORY[ext] = 'document'
for ext in ARCHIVE_EXTS: EXT_TO_CATEGORY[ext] = 'archive'
for ext in SIDECAR_EXTS: EXT_TO_CATEGORY[ext] = 'sidecar'

# OS metadata files that are never imported
SKIP_PATTERNS = [
    r'^\._',
    r'^\.DS_Store$',
    r'(?i)^Thumbs\.db$',
    r'(?i)^desktop\.ini$',
    r'^\.Spotlight-',
    r'^\.fseventsd$',
    r'^\.Trashes$',
]
IGNORE_FILE_NAME = ".ingestignore"

# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# --- Hashing & Performance ---
LOCAL_BUFFER_SIZE = 64 * 1024  # 64 KB reads on local disks
NETWORK_BUFFER_SIZE = 1024 * 1024  # 1 MB reads over high-latency shares
SHORT_HASH_LENGTH = 16
FULL_HASH_LENGTH = 64
DEFAULT_WORKERS = 4
NETWORK_CONCURRENCY = 2
BATCH_COPY_CONCURRENCY = 4
METADATA_BATCH_SIZE = 4

NATIVE_B3SUM_ENV = "MEDIA_INGEST_NATIVE_B3SUM"
HASHER_MODE_ENV = "MEDIA_INGEST_HASHER_MODE"
NATIVE_B3SUM_PATHS = [
    '/opt/homebrew/bin/b3sum',
    '/usr/local/bin/b3sum',
    '/usr/bin/b3sum',
]
NATIVE_TIMEOUT_SEC = 600

# --- Copy Retry Policy ---
RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 10000
RETRYABLE_ERRNO_NAMES = {
    'EAGAIN', 'ECONNRESET', 'ETIMEDOUT', 'EBUSY', 'EIO', 'ENETUNREACH', 'EPIPE',
    'ENOTCONN', 'EHOSTDOWN', 'EHOSTUNREACH', 'ENETDOWN', 'ECONNABORTED', 'ESTALE',
}

NETWORK_PATH_PATTERNS = [
    r'^/Volumes/',
    r'^/mnt/',
    r'^/media/',
    r'^/run/user/[^/]+/gvfs',
    r'^/net/',
    r'^\\\\',
    r'^//[^/]+/',
]
NETWORK_FSTYPES = {'nfs', 'nfs4', 'cifs', 'smbfs', 'smb3', 'afpfs', 'webdav', 'fuse.sshfs'}

# --- Device Detection ---
CLOUD_SYNC_MARKERS = ['dropbox', 'google drive', 'onedrive', 'icloud']
DEVICE_PROBE_TIMEOUT_SEC = 10

# --- Checkpoint & Output ---
CATALOG_FILE_NAME = ".media_ingest_catalog.db"
MANIFEST_FILE_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"
LOG_FILE_NAME = "media_ingest.log"
INTERNAL_FILE_NAMES = {CATALOG_FILE_NAME, CATALOG_FILE_NAME + "-wal", CATALOG_FILE_NAME + "-shm",
                       MANIFEST_FILE_NAME, LOG_FILE_NAME}

# --- Sidecars ---
SIDECAR_SUFFIX = ".xmp"
SIDECAR_SCHEMA_VERSION = 2
SIDECAR_NS_PREFIX = "mi"
XMP_NAMESPACES = {
    'x': 'adobe:ns:meta/',
    'rdf': 'http://www.w3.org/1999/02/22-rdf-syntax-ns#',
    'dc': 'http://purl.org/dc/elements/1.1/',
    'xmp': 'http://ns.adobe.com/xap/1.0/',
    SIDECAR_NS_PREFIX: 'http://ns.media-ingest.org/xmp/1.0/',
}
# Companion bytes small enough to embed as base64 in the custody sidecar
COMPANION_EMBED_MAX_BYTES = 256 * 1024
COMPANION_NO_EMBED_EXTS = {'.lrf', '.lrv', '.thm'}

# --- Progress Channel ---
PROGRESS_SOCKET_ENV = "PROGRESS_SOCKET"
PROGRESS_SESSION_ENV = "PROGRESS_SESSION_ID"
PAUSE_POLL_INTERVAL_SEC = 0.1
PROGRESS_CONNECT_TIMEOUT_SEC = 5.0


def native_b3sum_override() -> Optional[str]:
    return os.environ.get(NATIVE_B3SUM_ENV) or None


def hasher_mode_override() -> Optional[str]:
    return os.environ.get(HASHER_MODE_ENV) or None
