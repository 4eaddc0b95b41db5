"""SQLite schema for the record store.

One row per uploaded call. Transcript and analysis payloads are stored as
JSON text; the transcript column holds either an encryption envelope or the
plaintext transcript, never raw (unmasked) text.

Schema version: 1
"""

from __future__ import annotations

# Current schema version - increment when making breaking changes
SCHEMA_VERSION = 1

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', '1');

CREATE TABLE IF NOT EXISTS call_records (
    id TEXT PRIMARY KEY,
    -- Short human-facing id of the audio file (e.g. SKAMB-4F2A91)
    audio_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_format TEXT,
    file_size INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'transcribing', 'analyzing', 'completed', 'error')),
    -- JSON: encryption envelope or plaintext masked transcript
    transcription_json TEXT,
    -- JSON: analysis result with redacted summary
    analysis_json TEXT,
    error_message TEXT,
    storage_path TEXT,
    masking_method TEXT,
    content_hash TEXT,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_call_records_user ON call_records(user_id);
CREATE INDEX IF NOT EXISTS idx_call_records_created ON call_records(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_call_records_hash ON call_records(content_hash);
"""

CHECK_SCHEMA_VERSION_SQL = """
SELECT value FROM store_meta WHERE key = 'schema_version';
"""

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_V1",
    "CHECK_SCHEMA_VERSION_SQL",
]
