from __future__ import annotations

CREATE_KV_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv (
  key TEXT PRIMARY KEY,
  value BLOB,
  updated_ms BIGINT
);
"""

GET_KV_SQL = "SELECT value FROM kv WHERE key = ?"

UPSERT_KV_SQL = """
INSERT OR REPLACE INTO kv (key, value, updated_ms)
VALUES (?, ?, ?)
"""

DELETE_KV_SQL = "DELETE FROM kv WHERE key = ?"

LIST_KEYS_SQL = "SELECT key FROM kv WHERE key LIKE ? ORDER BY key"
