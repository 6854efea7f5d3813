"""Session snapshots with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from shipwright.config import get_config
from shipwright.exceptions import SessionError
from shipwright.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Session:
    """Persisted conversation snapshot: history plus turn metrics."""

    id: str
    name: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    pending_patch: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "messages": self.messages,
            "metrics": self.metrics,
            "pending_patch": self.pending_patch,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            messages=data.get("messages", []),
            metrics=data.get("metrics", {}),
            pending_patch=data.get("pending_patch"),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
        )


_COLUMNS = "id, name, messages, metrics, pending_patch, created_at, updated_at"


def _row_to_session(row: Any) -> Session:
    try:
        return Session.from_dict({
            "id": row[0],
            "name": row[1],
            "messages": json.loads(row[2]),
            "metrics": json.loads(row[3]),
            "pending_patch": row[4],
            "created_at": row[5],
            "updated_at": row[6],
        })
    except (TypeError, ValueError) as e:
        raise SessionError(f"Corrupt session row {row[0]}: {e}") from e


class SessionStore:
    """Stores session snapshots in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    metrics TEXT NOT NULL DEFAULT '{}',
                    pending_patch TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_name_updated_at ON sessions(name, updated_at DESC)"
            )
            await self._db.commit()
        return self._db

    async def create_session(self, name: str = "default") -> Session:
        """Create and persist a new session."""
        session = Session(id=str(uuid.uuid4()), name=name)
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID.

        Args:
            session_id: Session ID

        Returns:
            Session or None if not found
        """
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_session(row)

    async def load_session_by_name(self, name: str) -> Session | None:
        """Load the most recently updated session by name."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE name = ? ORDER BY updated_at DESC LIMIT 1",
            (name,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_session(row)

    async def get_or_create_session(self, name: str = "default") -> Session:
        session = await self.load_session_by_name(name)
        if session:
            return session
        return await self.create_session(name=name)

    async def save_session(self, session: Session) -> None:
        """Save a session."""
        db = await self._ensure_db()
        session.updated_at = _utcnow_iso()
        await db.execute(
            f"INSERT OR REPLACE INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.name,
                json.dumps(session.messages),
                json.dumps(session.metrics),
                session.pending_patch,
                session.created_at,
                session.updated_at,
            ),
        )
        await db.commit()

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions, newest first."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
