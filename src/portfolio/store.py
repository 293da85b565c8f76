"""SQLite persistence for per-conversation session state."""

import json
from datetime import datetime, timezone
from pathlib import Path

import structlog

from db import wal_connect

from .models import SessionState

logger = structlog.get_logger()


class SessionStore:
    """One JSON blob of SessionState per session id."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS session_state (
                    session_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

    def load_session_state(self, session_id: str) -> SessionState | None:
        with wal_connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT state FROM session_state WHERE session_id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        try:
            return SessionState.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            # Unreadable state is treated as a new conversation
            logger.warning("session_store.corrupt_state", session_id=session_id, error=str(e))
            return None

    def save_session_state(self, session_id: str, state: SessionState) -> None:
        payload = json.dumps(state.to_dict())
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO session_state (session_id, state, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at
                """,
                (session_id, payload, datetime.now(timezone.utc).isoformat()),
            )
        logger.debug("session_store.saved", session_id=session_id, bytes=len(payload))

    def delete(self, session_id: str) -> bool:
        with wal_connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM session_state WHERE session_id = ?", (session_id,))
        return cursor.rowcount > 0

    def list_sessions(self) -> list[tuple[str, str]]:
        with wal_connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT session_id, updated_at FROM session_state ORDER BY updated_at DESC"
            ).fetchall()
        return [(r[0], r[1]) for r in rows]
