import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from . import config
from .database.db import DBManager
from .database.ops import CheckpointStore
from .exceptions import AmbiguousAlgorithm, MediaIngestError, SidecarIntegrityMismatch, SidecarParseError
from .hashing.hasher import ContentHasher
from .models import Algorithm, DedupMode, HasherMode, ImportStatus
from .pipeline.control import SessionControl
from .pipeline.importer import ImportOptions, ImportPipeline
from .progress.channel import ProgressChannel
from .sidecar.builder import CustodySidecarBuilder
from .sidecar.reader import verify_sidecar

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def setup_logging(dest_root: Optional[Path], verbose: bool):
    """Sets up logging to the console and, when given, a file in the destination."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if dest_root is not None:
        dest_root.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(dest_root / config.LOG_FILE_NAME, encoding='utf-8'))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=config.TOOL_NAME,
                                description="Import camera and card media with hashes, provenance and custody sidecars")
    p.add_argument("--version", action="version", version=f"{config.TOOL_NAME} {config.TOOL_VERSION}")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a source tree into a destination")
    imp.add_argument("src", type=Path, help="Source directory (card, camera, folder)")
    imp.add_argument("dest", type=Path, help="Destination archive root")
    imp.add_argument("--dedup", action="store_true", help="Skip files whose content is already in the destination")
    imp.add_argument("--hardlink-duplicates", action="store_true",
                     help="With --dedup, hardlink duplicates to the first copy instead of skipping them")
    imp.add_argument("--manifest", action="store_true", help="Write/merge manifest.json in the destination")
    imp.add_argument("--resume", action="store_true", help="Resume the last unfinished session for SRC -> DEST")
    imp.add_argument("--dry-run", action="store_true", help="Plan the import without writing anything")
    imp.add_argument("--no-verify", action="store_true", help="Skip re-hashing the destination after copy")
    imp.add_argument("--overwrite", action="store_true", help="Replace existing destination files")
    imp.add_argument("--sidecar", action="store_true", help="Write a custody sidecar next to every imported file")
    imp.add_argument("--detect-device", action="store_true", help="Identify the source card/camera/USB chain")
    imp.add_argument("--extract-meta", action="store_true", help="Extract photo/video/audio metadata")
    imp.add_argument("--rename", action="store_true", help="Rename imported files to <hash><ext>")
    imp.add_argument("--skip-hidden", action="store_true",
                     help="Do not import hidden group members (SDR copies, Live Photo videos)")
    imp.add_argument("--batch", metavar="NAME", help="Batch name recorded in sidecars")
    imp.add_argument("--operator", metavar="NAME", help="Operator recorded in custody events")
    imp.add_argument("--exclude", metavar="PATTERN", nargs="+", default=[],
                     help="Glob patterns to skip (replaces .ingestignore)")
    imp.add_argument("--scan-destination", action="store_true",
                     help="With --dedup, hash files already in the destination first")
    imp.add_argument("--workers", type=int, default=config.DEFAULT_WORKERS, help="Parallel file workers")
    imp.add_argument("--sequential", action="store_true", help="One file at a time (spinning disks)")
    imp.add_argument("--hasher-mode", choices=[m.value for m in HasherMode], default=None,
                     help=f"BLAKE3 backend (default: ${config.HASHER_MODE_ENV} or auto)")
    imp.add_argument("--report-csv", type=Path, default=None, help="Write a per-file CSV report here")
    imp.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    imp.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    st = sub.add_parser("status", help="Show the latest session recorded in a destination")
    st.add_argument("dest", type=Path)
    st.add_argument("--all", action="store_true", help="List recent sessions")

    hs = sub.add_parser("hash", help="Hash a file")
    hs.add_argument("path", type=Path)
    hs.add_argument("--algorithm", choices=[a.value for a in Algorithm], default=Algorithm.BLAKE3.value)

    vf = sub.add_parser("verify", help="Check a file against a known digest")
    vf.add_argument("path", type=Path)
    vf.add_argument("hash")
    vf.add_argument("--algorithm", choices=[a.value for a in Algorithm], default=None,
                    help="Digest algorithm (guessed from length when omitted)")

    sv = sub.add_parser("sidecar-verify", help="Check a custody sidecar's self-hash")
    sv.add_argument("sidecar", type=Path)
    sv.add_argument("--content", type=Path, default=None, help="Content file (default: sidecar name minus .xmp)")
    sv.add_argument("--append-fixity", action="store_true", help="Re-hash the content and record a fixity check")
    sv.add_argument("--force", action="store_true", help="Append even when the sidecar self-hash does not match")

    for sp in (st, hs, vf, sv):
        sp.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return p


def _hasher_mode(flag: Optional[str]) -> HasherMode:
    return HasherMode(flag or config.hasher_mode_override() or HasherMode.AUTO.value)


def options_from_args(args) -> ImportOptions:
    return ImportOptions(
        dedup=args.dedup or args.hardlink_duplicates,
        dedup_mode=DedupMode.HARDLINK if args.hardlink_duplicates else DedupMode.SKIP,
        manifest=args.manifest,
        resume=args.resume,
        dry_run=args.dry_run,
        verify=not args.no_verify,
        overwrite=args.overwrite,
        exclude_patterns=args.exclude,
        sidecar=args.sidecar,
        detect_device=args.detect_device,
        extract_meta=args.extract_meta,
        rename=args.rename,
        skip_hidden=args.skip_hidden,
        batch=args.batch,
        operator=args.operator,
        scan_destination=args.scan_destination,
        workers=args.workers,
        sequential=args.sequential,
        hasher_mode=_hasher_mode(getattr(args, "hasher_mode", None)),
        show_progress=not args.no_progress,
        report_csv=args.report_csv,
    )


def cmd_import(args) -> int:
    dest_root = args.dest.resolve()
    src_root = args.src.resolve()
    setup_logging(None if args.dry_run else dest_root, args.verbose)

    logging.info(f"=== {config.TOOL_NAME} {config.TOOL_VERSION} ===")
    logging.info(f"Source: {src_root}")
    logging.info(f"Dest:   {dest_root}")

    options = options_from_args(args)
    control = SessionControl()
    reporter = ProgressChannel.from_env(control, show_progress=options.show_progress)

    def on_sigint(signum, frame):
        if control.cancelled:
            raise KeyboardInterrupt
        control.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        session = ImportPipeline(options, control=control, reporter=reporter).run(src_root, dest_root)
    except KeyboardInterrupt:
        logging.warning("Import interrupted.")
        return EXIT_INTERRUPTED
    except MediaIngestError as e:
        logging.error(str(e))
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous)
        reporter.close()

    summary = session.summary()
    logging.info(f"Total {summary['total']}, imported {summary['successful']}, failed {summary['failed']}, "
                 f"skipped {summary['skipped']} (duplicates {summary['duplicates']})")
    if session.status == ImportStatus.PAUSED:
        logging.warning(f"Session {session.id} paused; re-run with --resume to continue")
    for rec in session.files:
        if rec.status == ImportStatus.FAILED:
            logging.warning(f"FAILED {rec.relative_path}: {rec.error}")
    return session.exit_code


def cmd_status(args) -> int:
    setup_logging(None, args.verbose)
    catalog = args.dest.resolve() / config.CATALOG_FILE_NAME
    if not catalog.exists():
        logging.error(f"No catalog at {catalog}")
        return EXIT_FAILED
    with DBManager(catalog) as conn:
        store = CheckpointStore(conn)
        if args.all:
            for row in store.list_sessions():
                print(f"{row['id']}  {row['status']:<20} {row['successful']}/{row['total']} ok, "
                      f"{row['failed']} failed, {row['duplicates']} dup  {row['started_at']}  {row['source']}")
            return EXIT_OK
        session = store.latest_session()
    if session is None:
        print("No sessions recorded")
        return EXIT_OK
    print(f"Session:     {session.id}")
    print(f"Status:      {session.status.value}")
    print(f"Source:      {session.source}")
    print(f"Destination: {session.destination}")
    print(f"Started:     {session.started_at}")
    print(f"Completed:   {session.completed_at or '-'}")
    for key, value in session.summary().items():
        if key not in ("session_id", "status"):
            print(f"  {key:<16} {value}")
    if session.error:
        print(f"Error:       {session.error}")
    return EXIT_OK


def cmd_hash(args) -> int:
    setup_logging(None, args.verbose)
    result = ContentHasher(mode=_hasher_mode(None)).hash_file(args.path, Algorithm(args.algorithm))
    print(f"{result.hash}  {args.path}")
    return EXIT_OK


def cmd_verify(args) -> int:
    setup_logging(None, args.verbose)
    algorithm = Algorithm(args.algorithm) if args.algorithm else None
    try:
        result = ContentHasher(mode=_hasher_mode(None)).verify_file(args.path, args.hash, algorithm)
    except AmbiguousAlgorithm as e:
        logging.error(str(e))
        return EXIT_FAILED
    print(f"{'OK' if result.match else 'MISMATCH'}  {args.path}  ({result.algorithm.value} {result.actual})")
    return EXIT_OK if result.match else EXIT_FAILED


def cmd_sidecar_verify(args) -> int:
    setup_logging(None, args.verbose)
    result = verify_sidecar(args.sidecar)
    for warning in result.warnings:
        logging.warning(warning)
    for error in result.errors:
        logging.error(error)
    print(f"{'VALID' if result.is_valid else 'INVALID'}  {args.sidecar}  "
          f"(hash match: {result.hash_match}, events: {result.data.event_count})")

    if args.append_fixity:
        try:
            sidecar = CustodySidecarBuilder().append_fixity_check(args.sidecar, args.content, force=args.force)
        except (SidecarIntegrityMismatch, SidecarParseError) as e:
            logging.error(str(e))
            return EXIT_FAILED
        last = sidecar.custody_chain[-1]
        print(f"Fixity check: {last.event_outcome.value} ({last.event_notes})")
        return EXIT_OK if last.event_outcome.value == "success" else EXIT_FAILED
    return EXIT_OK if result.is_valid else EXIT_FAILED


COMMANDS = {
    "import": cmd_import,
    "status": cmd_status,
    "hash": cmd_hash,
    "verify": cmd_verify,
    "sidecar-verify": cmd_sidecar_verify,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        code = COMMANDS[args.command](args)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        code = EXIT_INTERRUPTED
    except MediaIngestError as e:
        logging.error(str(e))
        code = EXIT_FAILED
    except Exception:
        logging.exception("Fatal error.")
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
