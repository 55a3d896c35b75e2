"""
Catalog schema: import sessions, per-file checkpoint rows and the content index.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the catalog schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. One row per import run
        conn.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id                   TEXT PRIMARY KEY,
            source               TEXT NOT NULL,
            destination          TEXT NOT NULL,
            status               TEXT NOT NULL,
            total_files          INTEGER NOT NULL DEFAULT 0,
            processed_files      INTEGER NOT NULL DEFAULT 0,
            duplicate_files      INTEGER NOT NULL DEFAULT 0,
            renamed_files        INTEGER NOT NULL DEFAULT 0,
            sidecar_files        INTEGER NOT NULL DEFAULT 0,
            error_files          INTEGER NOT NULL DEFAULT 0,
            skipped_files        INTEGER NOT NULL DEFAULT 0,
            total_bytes          INTEGER NOT NULL DEFAULT 0,
            processed_bytes      INTEGER NOT NULL DEFAULT 0,
            started_at           TEXT NOT NULL,
            completed_at         TEXT,
            error                TEXT,
            batch_id             TEXT,
            batch_name           TEXT,
            source_type          TEXT,
            source_volume        TEXT,
            source_volume_serial TEXT,
            source_fingerprint   TEXT,
            updated_at           TEXT NOT NULL
        );
        """)

        # 3. Checkpoint rows: one per source file per session
        conn.execute("""
        CREATE TABLE IF NOT EXISTS session_files (
            session_id         TEXT NOT NULL,
            source_path        TEXT NOT NULL,
            relative_path      TEXT NOT NULL,
            seq                INTEGER NOT NULL,
            size               INTEGER NOT NULL DEFAULT 0,
            mtime              REAL,
            status             TEXT NOT NULL,
            stage              TEXT NOT NULL,
            hash               TEXT,
            hash_short         TEXT,
            dest_hash          TEXT,
            dest_path          TEXT,
            verified           INTEGER NOT NULL DEFAULT 0,
            retries            INTEGER NOT NULL DEFAULT 0,
            category           TEXT,
            mime_type          TEXT,
            extension_mismatch INTEGER,
            source_type        TEXT,
            device_fingerprint TEXT,
            dedup_status       TEXT,
            duplicate_of       TEXT,
            renamed            INTEGER NOT NULL DEFAULT 0,
            original_name      TEXT,
            final_name         TEXT,
            related_json       TEXT,
            relation_type      TEXT,
            is_primary         INTEGER,
            hidden             INTEGER NOT NULL DEFAULT 0,
            companions_json    TEXT,
            sidecar_path       TEXT,
            warnings_json      TEXT,
            error              TEXT,
            updated_at         TEXT NOT NULL,
            PRIMARY KEY (session_id, source_path),
            FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
        );
        """)

        # 4. Content index for cross-run dedup
        conn.execute("""
        CREATE TABLE IF NOT EXISTS content_index (
            hash           TEXT PRIMARY KEY,
            dest_path      TEXT NOT NULL,
            session_id     TEXT,
            registered_at  TEXT NOT NULL
        );
        """)

        # 5. Indices
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_pair ON sessions(source, destination);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session_files_status ON session_files(session_id, status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session_files_hash ON session_files(hash);")

    logging.debug("Catalog schema initialized.")
