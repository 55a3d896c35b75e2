"""
Import orchestration.

Each importable source file becomes a FileRecord that walks a fixed stage
sequence (scan, device, related files, hash, copy, rename, validate,
metadata, sidecar). A failure marks that one record failed and the batch
carries on; a checkpoint write failure ends the session.
"""
import base64
import logging
import os
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .. import config
from ..copying.copier import CopyResult, NetworkAwareCopier
from ..database.db import DBManager
from ..database.ops import CheckpointStore
from ..database.schema import init_schema
from ..dedup.deduplicator import EXTERNAL_ORIGIN, Deduplicator
from ..device.classifier import SourceClassifier, create_device_fingerprint, get_source_type
from ..exceptions import (
    CheckpointWriteFailed, DestinationExists, MediaIngestError,
    MetadataExtractionFailed, SourceUnreadable, VerificationFailed,
)
from ..hashing.hasher import ContentHasher
from ..hashing.pool import HashTask, HashWorkerPool
from ..metadata.extract import MetadataExtractor, camera_serial, extraction_warnings
from ..metadata.related import RelatedFileDetector, find_companions
from ..models import (
    Algorithm, CompanionFile, DedupMode, DedupStatus, ExtractedMetadata,
    FileRecord, HasherMode, ImportSession, ImportStatus, SourceInfo, SourceType,
)
from ..network import buffer_size_for, is_network_path
from ..progress.channel import NullProgressChannel, ProgressReporter
from ..reporting import ReportGenerator
from ..scanning.filesystem import SourceScanner
from ..scanning.filetype import detect_file_type
from ..sidecar.builder import CustodySidecarBuilder
from .control import SessionControl

PathBuilder = Callable[[FileRecord, Optional[str]], Path]

SESSION_STAGES = [
    (ImportStatus.SCANNING, "Scanning source"),
    (ImportStatus.DETECTING_DEVICE, "Detecting source device"),
    (ImportStatus.DETECTING_RELATED, "Detecting related files"),
    (ImportStatus.COPYING, "Importing files"),
    (ImportStatus.GENERATING_MANIFEST, "Writing manifest"),
]


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ImportOptions:
    dedup: bool = False
    dedup_mode: DedupMode = DedupMode.SKIP
    manifest: bool = False
    resume: bool = False
    retry_failed: bool = True
    dry_run: bool = False
    verify: bool = True
    overwrite: bool = False
    exclude_patterns: List[str] = field(default_factory=list)
    sidecar: bool = False
    detect_device: bool = False
    extract_meta: bool = False
    rename: bool = False
    batch: Optional[str] = None
    operator: Optional[str] = None
    path_builder: Optional[PathBuilder] = None
    # full hash -> path, or bare hashes known to exist elsewhere
    existing_hashes: Optional[Union[Dict[str, str], Iterable[str]]] = None
    scan_destination: bool = False
    skip_hidden: bool = False
    workers: int = config.DEFAULT_WORKERS
    sequential: bool = False
    hasher_mode: HasherMode = HasherMode.AUTO
    show_progress: bool = False
    report_csv: Optional[Path] = None


class ImportPipeline:
    """
    Orchestrates one import session from a source tree into a destination.

    Collaborators are injectable so tests (and embedding callers) can swap
    the copier, extractor, classifier or progress reporter.
    """

    def __init__(self,
                 options: Optional[ImportOptions] = None,
                 control: Optional[SessionControl] = None,
                 reporter: Optional[ProgressReporter] = None,
                 classifier: Optional[SourceClassifier] = None,
                 extractor: Optional[MetadataExtractor] = None,
                 hasher: Optional[ContentHasher] = None,
                 copier: Optional[NetworkAwareCopier] = None,
                 sidecar_builder: Optional[CustodySidecarBuilder] = None):
        self.options = options or ImportOptions()
        self.control = control or (reporter.control if reporter else SessionControl())
        self.reporter = reporter
        self._reporter: Optional[ProgressReporter] = reporter
        self.hasher = hasher or ContentHasher(mode=self.options.hasher_mode)
        self.copier = copier or NetworkAwareCopier(hasher=self.hasher)
        self.extractor = extractor or MetadataExtractor()
        self.sidecar_builder = sidecar_builder or CustodySidecarBuilder(operator=self.options.operator)
        self._classifier = classifier

        self._lock = threading.Lock()
        self._rename_lock = threading.Lock()
        self._store: Optional[CheckpointStore] = None
        self._dedup: Optional[Deduplicator] = None
        self._hash_pool: Optional[HashWorkerPool] = None
        self._source_info: Optional[SourceInfo] = None
        self._done = 0

    @property
    def classifier(self) -> SourceClassifier:
        if self._classifier is None:
            self._classifier = SourceClassifier()
        return self._classifier

    # ---------------------- SESSION ----------------------

    def run(self, source: Path, destination: Path) -> ImportSession:
        """
        Imports every file under `source` into `destination`.

        Returns the session in its final state (completed, paused or failed).
        Raises SourceUnreadable only when the source root itself is unusable.
        """
        source = Path(source).resolve()
        destination = Path(destination).resolve()
        if not source.is_dir():
            raise SourceUnreadable(f"Source is not a readable directory: {source}")

        session = ImportSession(id=str(uuid.uuid4()), source=source, destination=destination,
                                started_at=_now())
        own_reporter = self.reporter is None
        # the id is filled in once the session (new or resumed) is known
        reporter = self.reporter or NullProgressChannel("", self.control, show_progress=self.options.show_progress)
        self._reporter = reporter

        conn = None
        db = None
        try:
            try:
                db, conn = self._open_catalog(destination)
            except (OSError, CheckpointWriteFailed) as e:
                return self._fail(session, f"Destination not writable: {e}")
            self._store = CheckpointStore(conn, db.write_lock if db else None)
            return self._run_session(session)
        finally:
            if db is not None:
                db.close()
            elif conn is not None:
                conn.close()
            if own_reporter:
                reporter.close()

    def _open_catalog(self, destination: Path):
        if self.options.dry_run:
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            init_schema(conn)
            return None, conn
        destination.mkdir(parents=True, exist_ok=True)
        if not os.access(destination, os.W_OK):
            raise PermissionError(f"{destination} is not writable")
        db = DBManager(destination / config.CATALOG_FILE_NAME)
        return db, db.connect()

    def _run_session(self, session: ImportSession) -> ImportSession:
        opts = self.options
        store = self._store

        try:
            resumed = None
            if opts.resume and not opts.dry_run:
                resumed = store.find_resumable(session.source, session.destination)
            if resumed is not None:
                logging.info(f"Resuming session {resumed.id} ({resumed.status.value})")
                session = resumed
                self._prepare_resume(session)
            if not self._reporter.session_id:
                self._reporter.session_id = session.id
            self._reporter.reset_start_time()

            if resumed is None:
                self._plan(session)
            else:
                self._detect_session_device(session)
                store.save_session(session)

            self._dedup = self._build_deduplicator(session.destination)
            self._import_files(session)

            if self.control.cancelled:
                session.status = ImportStatus.PAUSED
                logging.info(f"Session {session.id} paused: {self.control.cancel_reason or 'cancelled'}")
            else:
                if opts.manifest and not opts.dry_run:
                    started = self._stage_started(session, ImportStatus.GENERATING_MANIFEST)
                    ReportGenerator(session.destination).write_manifest(session)
                    self._stage_completed(ImportStatus.GENERATING_MANIFEST, started, session.total_files)
                session.status = ImportStatus.COMPLETED
                session.completed_at = _now()
            store.save_session(session)
        except CheckpointWriteFailed as e:
            return self._fail(session, str(e))

        if opts.report_csv:
            ReportGenerator(session.destination).write_session_report(session, opts.report_csv)

        logging.info(f"Session {session.id}: {session.summary()}")
        self._reporter.complete(session.summary(), session.exit_code)
        return session

    def _fail(self, session: ImportSession, message: str) -> ImportSession:
        if not self._reporter.session_id:
            self._reporter.session_id = session.id
        session.status = ImportStatus.FAILED
        session.error = message
        logging.error(f"Session {session.id} failed: {message}")
        self._reporter.error("SESSION_FAILED", message, fatal=True)
        if self._store is not None:
            try:
                self._store.save_session(session)
            except CheckpointWriteFailed as e:
                logging.error(f"Could not record failed session state: {e}")
        self._reporter.complete(session.summary(), session.exit_code)
        return session

    def _stage_started(self, session: ImportSession, status: ImportStatus) -> float:
        number = next(i for i, (s, _) in enumerate(SESSION_STAGES, 1) if s == status)
        session.status = status
        self._reporter.stage_started(status.value, SESSION_STAGES[number - 1][1], number, len(SESSION_STAGES))
        return time.time()

    def _stage_completed(self, status: ImportStatus, started: float, items: int) -> None:
        number = next(i for i, (s, _) in enumerate(SESSION_STAGES, 1) if s == status)
        self._reporter.stage_completed(status.value, number, (time.time() - started) * 1000, items)

    # ---------------------- PLANNING ----------------------

    def _plan(self, session: ImportSession) -> None:
        """Scan, attach companions, group related files and persist the pending list."""
        opts = self.options

        started = self._stage_started(session, ImportStatus.SCANNING)
        scanner = SourceScanner(exclude_patterns=opts.exclude_patterns, skip_dirs={session.destination})
        scan = scanner.scan(session.source)
        for path, err in scan.errors:
            logging.warning(f"Unreadable during scan: {path}: {err}")

        companions = find_companions(scan.files)
        attached = {c for group in companions.values() for c in group}
        for path in scan.files:
            if path in attached:
                continue
            session.files.append(self._new_record(session, path, companions.get(path, [])))
        session.total_files = len(session.files)
        session.total_bytes = sum(r.size for r in session.files)
        self._stage_completed(ImportStatus.SCANNING, started, len(scan.files))
        logging.info(f"{session.total_files} files to import ({len(attached)} companion sidecars attached)")

        self._detect_session_device(session)

        started = self._stage_started(session, ImportStatus.DETECTING_RELATED)
        detector = RelatedFileDetector()
        groups = detector.find_groups(scan.files)
        for rec in session.files:
            path = Path(rec.source_path)
            group = detector.group_for(path)
            if group is None:
                continue
            rec.relation_type = group.type
            rec.is_primary = detector.is_primary(path)
            rec.hidden = detector.should_hide(path)
            rec.related_files = [self._relative(session, p) for p in group.all_files if p != path]
        self._stage_completed(ImportStatus.DETECTING_RELATED, started, len(groups))

        if opts.batch:
            session.batch_name = opts.batch
            session.batch_id = str(uuid.uuid4())

        self._store.create_session(session)

    def _new_record(self, session: ImportSession, path: Path, companions: List[Path]) -> FileRecord:
        size, mtime = 0, None
        try:
            st = path.stat()
            size, mtime = st.st_size, st.st_mtime
        except OSError as e:
            logging.warning(f"Cannot stat {path}: {e}")
        rec = FileRecord(
            source_path=path,
            relative_path=self._relative(session, path),
            size=size,
            mtime=mtime,
            session_id=session.id,
        )
        for comp in companions:
            try:
                comp_size = comp.stat().st_size
            except OSError:
                comp_size = 0
            rec.companions.append(CompanionFile(
                source_path=str(comp), dest_path="", extension=comp.suffix.lower(), hash="", size=comp_size,
            ))
        return rec

    @staticmethod
    def _relative(session: ImportSession, path: Path) -> str:
        return Path(path).relative_to(session.source).as_posix()

    def _detect_session_device(self, session: ImportSession) -> None:
        started = self._stage_started(session, ImportStatus.DETECTING_DEVICE)
        if self.options.detect_device:
            probe_path = Path(session.files[0].source_path) if session.files else session.source
            info = self.classifier.describe(probe_path)
            self._source_info = info
            session.source_type = info.source_type
            session.source_fingerprint = info.fingerprint
            if info.chain is not None:
                session.source_volume = info.chain.volume.volume_name or None
                session.source_volume_serial = info.chain.volume.volume_uuid
            logging.info(f"Source device: {info.source_type.value} ({info.fingerprint})")
        elif is_network_path(session.source):
            session.source_type = SourceType.NETWORK_SHARE
        self._stage_completed(ImportStatus.DETECTING_DEVICE, started, 1 if self._source_info else 0)

    def _prepare_resume(self, session: ImportSession) -> None:
        retried = 0
        for rec in session.files:
            if rec.status in (ImportStatus.COMPLETED, ImportStatus.SKIPPED):
                continue
            if rec.status == ImportStatus.FAILED and not self.options.retry_failed:
                continue
            self._reset_record(rec)
            retried += 1
        session.error = None
        session.completed_at = None
        self._recount(session)
        logging.info(f"{retried} files left to import in session {session.id}")

    @staticmethod
    def _reset_record(rec: FileRecord) -> None:
        rec.status = ImportStatus.PENDING
        rec.stage = ImportStatus.PENDING
        rec.hash = rec.hash_short = rec.dest_hash = None
        rec.dest_path = None
        rec.verified = False
        rec.retries = 0
        rec.dedup_status = None
        rec.duplicate_of = None
        rec.renamed = False
        rec.original_name = rec.final_name = None
        rec.sidecar_path = None
        rec.metadata = None
        rec.warnings = []
        rec.error = None
        for comp in rec.companions:
            comp.dest_path = ""
            comp.hash = ""
            comp.content_base64 = None

    def _build_deduplicator(self, destination: Path) -> Optional[Deduplicator]:
        opts = self.options
        if not opts.dedup:
            return None
        if opts.existing_hashes is not None:
            if isinstance(opts.existing_hashes, dict):
                dedup = Deduplicator(opts.existing_hashes)
            else:
                dedup = Deduplicator()
                dedup.load_hashes(opts.existing_hashes)
        else:
            known = (_read_only_known_content(destination / config.CATALOG_FILE_NAME)
                     if opts.dry_run else self._store.known_content())
            dedup = Deduplicator(known)
            dedup.load_manifest(destination / config.MANIFEST_FILE_NAME)
        if opts.scan_destination:
            n = dedup.index_directory(destination, self.hasher)
            logging.info(f"Indexed {n} existing destination files")
        logging.info(f"Dedup index seeded with {len(dedup)} known hashes")
        return dedup

    # ---------------------- FILES ----------------------

    def _worker_count(self, session: ImportSession) -> int:
        opts = self.options
        if opts.sequential:
            return 1
        n = max(1, opts.workers)
        if (is_network_path(session.source) or is_network_path(session.destination)
                or session.source_type == SourceType.NETWORK_SHARE):
            n = min(n, config.NETWORK_CONCURRENCY)
        return n

    def _import_files(self, session: ImportSession) -> None:
        started = self._stage_started(session, ImportStatus.COPYING)
        self._store.save_session(session)

        pending = [(seq, rec) for seq, rec in enumerate(session.files, 1) if not rec.status.is_terminal]
        self._done = session.total_files - len(pending)
        workers = self._worker_count(session)
        logging.info(f"Importing {len(pending)} files with {workers} worker(s)")

        fatal: Optional[CheckpointWriteFailed] = None
        with HashWorkerPool(max_workers=workers, hasher=self.hasher) as pool:
            self._hash_pool = pool
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self._process_file, session, rec, seq) for seq, rec in pending]
                for future in as_completed(futures):
                    try:
                        future.result()
                    except CheckpointWriteFailed as e:
                        if fatal is None:
                            fatal = e
            self._hash_pool = None

        if fatal is not None:
            raise fatal
        self._stage_completed(ImportStatus.COPYING, started, self._done)

    def _process_file(self, session: ImportSession, rec: FileRecord, seq: int) -> bool:
        """Runs one record through its stages. False when it never started (cancelled)."""
        if not self.control.wait_while_paused():
            return False

        started = time.time()
        try:
            self._import_file(session, rec, seq)
        except CheckpointWriteFailed:
            self.control.cancel("checkpoint write failed")
            raise
        except Exception as e:
            rec.status = ImportStatus.FAILED
            rec.error = str(e) or type(e).__name__
            logging.error(f"Failed to import {rec.relative_path} at {rec.stage.value}: {rec.error}")
            self._reporter.error(type(e).__name__, rec.error, item=str(rec.source_path))

        with self._lock:
            self._tally(session, rec)
            self._done += 1
            done = self._done
            try:
                self._store.checkpoint(session, rec)
            except CheckpointWriteFailed:
                # stop before any other worker picks up a file
                self.control.cancel("checkpoint write failed")
                raise
            failed = session.error_files
            skipped = session.skipped_files + session.duplicate_files
            bytes_done = session.processed_bytes

        self._reporter.item_completed(
            str(rec.source_path), rec.status.value, (time.time() - started) * 1000,
            bytes_processed=rec.size if rec.status == ImportStatus.COMPLETED else 0,
        )
        self._reporter.progress(ImportStatus.COPYING.value, done, session.total_files,
                                failed=failed, skipped=skipped, current_file=str(rec.source_path),
                                bytes_done=bytes_done, total_bytes=session.total_bytes)
        return True

    def _enter(self, rec: FileRecord, stage: ImportStatus) -> None:
        rec.stage = stage
        rec.status = stage
        logging.debug(f"{rec.relative_path}: {stage.value}")

    def _import_file(self, session: ImportSession, rec: FileRecord, seq: int) -> None:
        opts = self.options
        src = Path(rec.source_path)

        self._enter(rec, ImportStatus.SCANNING)
        try:
            st = src.stat()
        except OSError as e:
            raise SourceUnreadable(f"Cannot read {src}: {e}") from e
        rec.size = st.st_size
        rec.mtime = st.st_mtime
        ftype = detect_file_type(src)
        rec.category = ftype.category
        rec.mime_type = ftype.detected_mime or ftype.mime_type
        rec.extension_mismatch = ftype.extension_mismatch
        if ftype.extension_mismatch:
            rec.warnings.append(f"Extension {ftype.extension or '(none)'} does not match detected type {ftype.detected_mime}")

        self._enter(rec, ImportStatus.DETECTING_DEVICE)
        info = self.classifier.describe(src) if opts.detect_device else self._source_info
        if info is not None:
            rec.source_type = info.source_type
            rec.device_fingerprint = info.fingerprint
        elif session.source_type is not None:
            rec.source_type = session.source_type

        self._enter(rec, ImportStatus.DETECTING_RELATED)
        if rec.hidden and opts.skip_hidden:
            rec.warnings.append(f"Hidden {rec.relation_type.value} member not imported")
            rec.status = rec.stage = ImportStatus.SKIPPED
            return

        self._enter(rec, ImportStatus.HASHING)
        if opts.dedup or opts.path_builder is not None:
            task = HashTask(src, Algorithm.BLAKE3_FULL, buffer_size_for(src, session.destination))
            rec.hash = self._hash_pool.hash(task).hash
            rec.hash_short = rec.hash[:config.SHORT_HASH_LENGTH]
        dest = self._destination_for(session, rec)

        claimed = False
        if self._dedup is not None:
            existing = self._dedup.check_and_register(rec.hash, str(dest))
            if existing is None:
                rec.dedup_status = DedupStatus.UNIQUE
                claimed = True
            elif not (opts.dedup_mode == DedupMode.HARDLINK and self._hardlink(rec, existing, dest)):
                rec.dedup_status = DedupStatus.DUPLICATE
                rec.duplicate_of = existing
                rec.status = rec.stage = ImportStatus.COMPLETED
                logging.info(f"Duplicate of {existing}: {rec.relative_path}")
                return

        if rec.dedup_status != DedupStatus.HARDLINKED:
            copied = False
            try:
                self._enter(rec, ImportStatus.COPYING)
                self._copy_primary(rec, dest)
                if opts.rename:
                    self._rename_to_hash(rec)
                self._validate(rec)
                copied = True
            finally:
                # waiting duplicates of this hash are blocked until one of these runs
                if claimed and copied:
                    self._dedup.confirm(rec.hash, str(rec.dest_path))
                elif claimed:
                    self._dedup.release(rec.hash, str(rec.dest_path or dest))
            self._copy_companions(rec)

        metadata = None
        if opts.extract_meta:
            self._enter(rec, ImportStatus.EXTRACTING_METADATA)
            metadata, info = self._extract(rec, info)

        if opts.sidecar and not opts.dry_run:
            self._enter(rec, ImportStatus.GENERATING_SIDECARS)
            sidecar = self.sidecar_builder.build(rec, session, info, metadata, batch_sequence=seq)
            rec.sidecar_path = self.sidecar_builder.write(sidecar, Path(rec.dest_path))

        if not opts.dry_run and rec.dedup_status != DedupStatus.HARDLINKED:
            self._store.register_content(rec.hash, Path(rec.dest_path), session.id)
        rec.status = rec.stage = ImportStatus.COMPLETED

    def _destination_for(self, session: ImportSession, rec: FileRecord) -> Path:
        if self.options.path_builder is not None:
            built = Path(self.options.path_builder(rec, rec.hash_short))
            return built if built.is_absolute() else session.destination / built
        return session.destination / rec.relative_path

    def _hardlink(self, rec: FileRecord, existing: str, dest: Path) -> bool:
        """Links dest to the first copy. False when that copy is not linkable."""
        target = Path(existing)
        if existing == EXTERNAL_ORIGIN or not target.exists():
            rec.warnings.append(f"Cannot hardlink to {existing}; recorded as duplicate")
            return False
        if not self.options.dry_run:
            if dest.exists():
                if not os.path.samefile(dest, target):
                    raise DestinationExists(f"Destination already exists: {dest}")
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                try:
                    os.link(target, dest)
                except OSError as e:
                    rec.warnings.append(f"Hardlink to {existing} failed ({e}); recorded as duplicate")
                    return False
        rec.dest_path = dest
        rec.dest_hash = rec.hash
        rec.verified = not self.options.dry_run
        rec.dedup_status = DedupStatus.HARDLINKED
        rec.duplicate_of = existing
        logging.info(f"Hardlinked {rec.relative_path} -> {existing}")
        return True

    def _copy_primary(self, rec: FileRecord, dest: Path) -> None:
        opts = self.options
        if opts.dry_run:
            rec.dest_path = dest
            return
        src = Path(rec.source_path)
        try:
            result = self.copier.copy(src, dest, algorithm=Algorithm.BLAKE3_FULL, verify=opts.verify,
                                      overwrite=opts.overwrite, expected_hash=rec.hash)
        except DestinationExists:
            result = self._adopt_existing(src, dest, rec.hash)
        rec.hash = result.hash
        rec.hash_short = result.hash[:config.SHORT_HASH_LENGTH]
        rec.dest_path = dest
        rec.verified = result.verified
        rec.dest_hash = result.hash if result.verified else None
        rec.retries = result.retries
        if result.retries:
            rec.warnings.append(f"Copy needed {result.retries} retries")

    def _adopt_existing(self, src: Path, dest: Path, known_hash: Optional[str]) -> CopyResult:
        """
        A destination left by an interrupted run is kept when its bytes match
        the source; anything else is a real conflict.
        """
        start = time.perf_counter()
        src_hash = known_hash or self.hasher.hash_file(src, Algorithm.BLAKE3_FULL).hash
        dest_hash = self.hasher.hash_file(dest, Algorithm.BLAKE3_FULL).hash
        if dest_hash != src_hash:
            raise DestinationExists(f"Destination already exists with different content: {dest}")
        logging.info(f"Destination already holds identical content: {dest}")
        return CopyResult(
            source=src,
            destination=dest,
            hash=src_hash,
            algorithm=Algorithm.BLAKE3_FULL,
            size=dest.stat().st_size,
            duration_ms=(time.perf_counter() - start) * 1000.0,
            verified=True,
            retries=0,
        )

    def _rename_to_hash(self, rec: FileRecord) -> None:
        self._enter(rec, ImportStatus.RENAMING)
        current = Path(rec.dest_path)
        ext = current.suffix.lower()
        if rec.hash_short is None:
            rec.warnings.append("No hash available for hash naming; name kept")
            return

        with self._rename_lock:
            n = 0
            while True:
                name = f"{rec.hash_short}{ext}" if n == 0 else f"{rec.hash_short}_{n}{ext}"
                target = current.with_name(name)
                if target == current or not target.exists():
                    break
                if self._same_content(target, rec):
                    break
                n += 1

            if target == current:
                return
            if not self.options.dry_run:
                if target.exists():
                    # identical bytes already carry this name (earlier interrupted run)
                    current.unlink()
                else:
                    os.rename(current, target)

        if self._dedup is not None:
            self._dedup.update_path(rec.hash, str(current), str(target))
        rec.renamed = True
        rec.original_name = current.name
        rec.final_name = target.name
        rec.dest_path = target
        logging.debug(f"Renamed {current.name} -> {target.name}")

    def _same_content(self, path: Path, rec: FileRecord) -> bool:
        if self.options.dry_run or not rec.hash:
            return False
        try:
            if path.stat().st_size != rec.size:
                return False
            return self.hasher.hash_file(path, Algorithm.BLAKE3_FULL).hash == rec.hash
        except (SourceUnreadable, OSError):
            return False

    def _validate(self, rec: FileRecord) -> None:
        self._enter(rec, ImportStatus.VALIDATING)
        if self.options.dry_run or not self.options.verify:
            return
        dest = Path(rec.dest_path)
        try:
            size = dest.stat().st_size
        except OSError as e:
            raise VerificationFailed(f"Destination missing after copy: {dest}") from e
        if size != rec.size:
            raise VerificationFailed(f"Destination size {size} differs from source size {rec.size}: {dest}")

    def _copy_companions(self, rec: FileRecord) -> None:
        """Companions are best effort; a failure becomes a warning on the primary."""
        opts = self.options
        dest = Path(rec.dest_path)
        for comp in rec.companions:
            src = Path(comp.source_path)
            target = dest.with_name(dest.stem + src.suffix)
            if opts.dry_run:
                comp.dest_path = str(target)
                continue
            try:
                try:
                    result = self.copier.copy(src, target, algorithm=Algorithm.BLAKE3_FULL,
                                              verify=opts.verify, overwrite=opts.overwrite)
                except DestinationExists:
                    result = self._adopt_existing(src, target, None)
            except (MediaIngestError, OSError) as e:
                rec.warnings.append(f"Companion {src.name} not copied: {e}")
                logging.warning(f"Companion {src} not copied: {e}")
                continue
            comp.dest_path = str(target)
            comp.hash = result.hash
            comp.size = result.size
            if result.size <= config.COMPANION_EMBED_MAX_BYTES and comp.extension not in config.COMPANION_NO_EMBED_EXTS:
                comp.content_base64 = base64.b64encode(target.read_bytes()).decode("ascii")

    def _extract(self, rec: FileRecord, info: Optional[SourceInfo]):
        path = Path(rec.source_path) if self.options.dry_run else Path(rec.dest_path)
        try:
            metadata = self.extractor.extract(path, include_device_info=self.options.detect_device)
        except MetadataExtractionFailed as e:
            rec.warnings.append(f"metadata: {e}")
            return ExtractedMetadata(errors=[str(e)]), info
        rec.metadata = metadata
        rec.warnings.extend(extraction_warnings(metadata))

        serial = camera_serial(metadata)
        if serial and info is not None and info.chain is not None and not info.chain.camera_body_serial:
            chain = replace(info.chain, camera_body_serial=serial)
            info = SourceInfo(get_source_type(chain), create_device_fingerprint(chain), chain)
            rec.device_fingerprint = info.fingerprint
        return metadata, info

    # ---------------------- COUNTERS ----------------------

    @staticmethod
    def _tally(session: ImportSession, rec: FileRecord) -> None:
        if rec.status == ImportStatus.FAILED:
            session.error_files += 1
        elif rec.status == ImportStatus.SKIPPED:
            session.skipped_files += 1
        elif rec.status == ImportStatus.COMPLETED:
            if rec.dedup_status in (DedupStatus.DUPLICATE, DedupStatus.HARDLINKED):
                session.duplicate_files += 1
            else:
                session.processed_files += 1
                session.processed_bytes += rec.size
            if rec.renamed:
                session.renamed_files += 1
            if rec.sidecar_path:
                session.sidecar_files += 1

    def _recount(self, session: ImportSession) -> None:
        session.processed_files = session.duplicate_files = session.renamed_files = 0
        session.sidecar_files = session.error_files = session.skipped_files = 0
        session.processed_bytes = 0
        for rec in session.files:
            self._tally(session, rec)


def _read_only_known_content(catalog: Path) -> Dict[str, str]:
    """Content index of an existing catalog, opened read-only (dry runs write nothing)."""
    if not catalog.exists():
        return {}
    try:
        conn = sqlite3.connect(f"file:{catalog}?mode=ro", uri=True)
    except sqlite3.Error as e:
        logging.warning(f"Cannot open {catalog} read-only: {e}")
        return {}
    try:
        return CheckpointStore(conn).known_content()
    except sqlite3.Error as e:
        logging.warning(f"Cannot read content index from {catalog}: {e}")
        return {}
    finally:
        conn.close()
