import csv
import json
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .models import ImportSession, ImportStatus


class ReportGenerator:
    """Writes the destination manifest and per-session CSV reports."""

    def __init__(self, dest_root: Path):
        self.dest_root = Path(dest_root)

    @property
    def manifest_path(self) -> Path:
        return self.dest_root / config.MANIFEST_FILE_NAME

    def _load_existing_entries(self) -> Dict[str, dict]:
        if not self.manifest_path.exists():
            return {}
        try:
            data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logging.warning(f"Existing manifest unreadable, rewriting from scratch: {e}")
            return {}
        return {e["path"]: e for e in data.get("files", []) if "path" in e}

    def manifest_entries(self, session: ImportSession) -> List[dict]:
        """Entries for files this session placed in the destination."""
        entries = []
        for rec in session.files:
            if rec.status != ImportStatus.COMPLETED or rec.dest_path is None or not rec.hash:
                continue
            try:
                rel = Path(rec.dest_path).relative_to(self.dest_root).as_posix()
            except ValueError:
                rel = str(rec.dest_path)
            entries.append({
                "path": rel,
                "hash": rec.hash_short or rec.hash[:config.SHORT_HASH_LENGTH],
                "hash_full": rec.hash,
                "size": rec.size,
            })
        return entries

    def write_manifest(self, session: ImportSession) -> Path:
        """
        Merges this session's files into `<dest>/manifest.json`, sorted by path.
        """
        entries = self._load_existing_entries()
        for entry in self.manifest_entries(session):
            entries[entry["path"]] = entry

        files = [entries[k] for k in sorted(entries)]
        manifest = {
            "version": config.MANIFEST_VERSION,
            "generated": datetime.now(UTC).isoformat(),
            "tool": f"{config.TOOL_NAME}/{config.TOOL_VERSION}",
            "session_id": session.id,
            "algorithm": "blake3",
            "hashLength": config.SHORT_HASH_LENGTH,
            "root": str(self.dest_root),
            "fileCount": len(files),
            "totalBytes": sum(f.get("size", 0) for f in files),
            "files": files,
        }
        tmp = self.manifest_path.with_name(self.manifest_path.name + ".tmp")
        tmp.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        tmp.replace(self.manifest_path)
        logging.info(f"Manifest written: {self.manifest_path} ({len(files)} files)")
        return self.manifest_path

    def write_session_report(self, session: ImportSession, output_csv: Optional[Path] = None) -> Path:
        """One CSV row per file in the session."""
        output_csv = Path(output_csv) if output_csv else self.dest_root / f"import_{session.id}.csv"
        headers = [
            "source_path", "destination_path", "status", "size", "hash",
            "dedup_status", "duplicate_of", "renamed", "relation_type", "hidden",
            "sidecar_path", "error",
        ]
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=headers)
            writer.writeheader()
            for rec in session.files:
                writer.writerow({
                    "source_path": str(rec.source_path),
                    "destination_path": str(rec.dest_path) if rec.dest_path else "",
                    "status": rec.status.value,
                    "size": rec.size,
                    "hash": rec.hash or "",
                    "dedup_status": rec.dedup_status.value if rec.dedup_status else "",
                    "duplicate_of": rec.duplicate_of or "",
                    "renamed": "yes" if rec.renamed else "",
                    "relation_type": rec.relation_type.value if rec.relation_type else "",
                    "hidden": "yes" if rec.hidden else "",
                    "sidecar_path": str(rec.sidecar_path) if rec.sidecar_path else "",
                    "error": rec.error or "",
                })
        logging.info(f"Session report written: {output_csv}")
        return output_csv
