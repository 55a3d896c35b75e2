"""
Custom exception hierarchy for the media ingest pipeline.

Per-file errors are caught at the file boundary by the importer; only
CheckpointWriteFailed (and an unusable destination root) end a session.
"""


class MediaIngestError(Exception):
    """Base exception for all media ingest errors."""
    pass


class SourceUnreadable(MediaIngestError):
    """Raised when a source file is missing, unreadable or vanished mid-operation."""
    pass


class DestinationExists(MediaIngestError):
    """Raised when a copy would overwrite an existing file without the overwrite flag."""
    pass


class VerificationFailed(MediaIngestError):
    """Raised when the destination hash does not match the source hash.

    The destination file has already been removed when this is raised.
    """

    def __init__(self, message: str, expected: str = "", actual: str = ""):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NetworkTransient(MediaIngestError):
    """Raised when a retryable I/O error persists after every retry attempt."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class DeviceDetectionFailed(MediaIngestError):
    """Raised when the source device chain cannot be resolved."""
    pass


class MetadataExtractionFailed(MediaIngestError):
    """Raised when metadata cannot be extracted from a file."""
    pass


class SidecarIntegrityMismatch(MediaIngestError):
    """Raised when a custody sidecar no longer matches its embedded self-hash."""
    pass


class SidecarParseError(MediaIngestError):
    """Raised when a custody sidecar is malformed or lacks a required field."""
    pass


class CheckpointWriteFailed(MediaIngestError):
    """Raised when resume state cannot be persisted. Fatal to the session."""
    pass


class NativeHasherUnavailable(MediaIngestError):
    """Raised in native hasher mode when no usable b3sum binary exists."""
    pass


class AmbiguousAlgorithm(MediaIngestError):
    """Raised when a digest length does not identify a hash algorithm."""
    pass
