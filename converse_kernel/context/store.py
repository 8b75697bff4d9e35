"""
Context Store — persistence for UnifiedContext between turns.

Behavioral Contract:
- load() returns the context exactly as last saved, or None
- save() rewrites the whole context (load-modify-store, single writer per session)
- Contexts idle longer than the TTL are treated as absent and purged on load
"""

import sqlite3
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

import structlog

from converse_kernel.models.context import UnifiedContext


logger = structlog.get_logger(__name__)


class ContextStore(Protocol):
    def load(self, session_id: str) -> Optional[UnifiedContext]:
        ...

    def save(self, context: UnifiedContext) -> None:
        ...

    def delete(self, session_id: str) -> bool:
        ...


def _serialize(context: UnifiedContext) -> str:
    return context.model_dump_json()


class InMemoryContextStore:
    """Keeps serialized snapshots, so callers never share a live object."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def load(self, session_id: str) -> Optional[UnifiedContext]:
        raw = self._data.get(session_id)
        if raw is None:
            return None
        return UnifiedContext.model_validate_json(raw)

    def save(self, context: UnifiedContext) -> None:
        self._data[context.session_id] = _serialize(context)

    def delete(self, session_id: str) -> bool:
        return self._data.pop(session_id, None) is not None

    def sessions(self) -> List[str]:
        return list(self._data)


class SQLiteContextStore:
    """
    One row per session.
    Prototype: SQLite. Production: whatever key/value store the host runs.
    """

    def __init__(self, db_path: str = ":memory:", ttl_hours: int = 24):
        self.db_path = db_path
        self.ttl = timedelta(hours=ttl_hours)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS contexts (
                session_id TEXT PRIMARY KEY,
                user_id TEXT,
                current_workflow TEXT,
                context_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_contexts_updated_at ON contexts(updated_at)
        """)
        self._conn.commit()

    def load(self, session_id: str) -> Optional[UnifiedContext]:
        row = self._conn.execute(
            "SELECT context_json, updated_at FROM contexts WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        if datetime.fromisoformat(row["updated_at"]) < datetime.utcnow() - self.ttl:
            logger.info("Context expired", session_id=session_id)
            self.delete(session_id)
            return None
        return UnifiedContext.model_validate_json(row["context_json"])

    def save(self, context: UnifiedContext) -> None:
        self._conn.execute(
            """
            INSERT INTO contexts (session_id, user_id, current_workflow, context_json, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                user_id = excluded.user_id,
                current_workflow = excluded.current_workflow,
                context_json = excluded.context_json,
                updated_at = excluded.updated_at
            """,
            (
                context.session_id,
                None if context.user_id is None else str(context.user_id),
                context.current_workflow,
                _serialize(context),
                datetime.utcnow().isoformat(),
            ),
        )
        self._conn.commit()

    def delete(self, session_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM contexts WHERE session_id = ?", (session_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def purge_expired(self) -> int:
        cutoff = (datetime.utcnow() - self.ttl).isoformat()
        cur = self._conn.execute("DELETE FROM contexts WHERE updated_at < ?", (cutoff,))
        self._conn.commit()
        return cur.rowcount

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM contexts").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
