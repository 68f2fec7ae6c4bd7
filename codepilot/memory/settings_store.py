"""
Persisted settings store — SQLite-backed key-value strings plus a history of
finished agent runs.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from codepilot.config import DEFAULT_SETTINGS_DB

logger = logging.getLogger(__name__)


class SettingsStore:
    def __init__(self, db_path: Path | str = DEFAULT_SETTINGS_DB):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS agent_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                agent_type TEXT NOT NULL,
                task TEXT NOT NULL,
                success INTEGER NOT NULL,
                summary TEXT,
                result TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );
        """)
        self.conn.commit()

    def get(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str):
        now = datetime.now(timezone.utc).isoformat()
        self.conn.execute(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, now)
        )
        self.conn.commit()

    def record_agent_run(self, agent_id: str, agent_type: str, task: dict, result: dict):
        """Store a finished agent run."""
        self.conn.execute(
            "INSERT INTO agent_runs (agent_id, agent_type, task, success, summary, result) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                agent_id,
                agent_type,
                json.dumps(task),
                1 if result.get("success") else 0,
                result.get("summary"),
                json.dumps(result, default=str),
            )
        )
        self.conn.commit()
        logger.debug("Recorded agent run %s", agent_id)

    def recent_agent_runs(self, limit: int = 20) -> list[dict]:
        rows = self.conn.execute(
            "SELECT agent_id, agent_type, task, success, summary, created_at "
            "FROM agent_runs ORDER BY id DESC LIMIT ?",
            (limit,)
        ).fetchall()
        return [
            {
                "agent_id": r[0],
                "agent_type": r[1],
                "task": json.loads(r[2]),
                "success": bool(r[3]),
                "summary": r[4],
                "created_at": r[5],
            }
            for r in rows
        ]

    def close(self):
        self.conn.close()
