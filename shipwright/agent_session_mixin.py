"""Session snapshot save/restore for Orchestrator."""

import aiosqlite

from shipwright.exceptions import SessionError, SessionNotFoundError
from shipwright.llm import Message
from shipwright.logging import get_logger
from shipwright.session import Session

log = get_logger(__name__)


class AgentSessionMixin:
    """Persist and restore history, metrics and the pending patch."""

    async def save_session(self) -> Session:
        """Write the current conversation to the session store."""
        if self.session_store is None:
            raise SessionError("No session store configured")
        if self.session is None:
            self.session = await self.session_store.create_session(name=self.session_name)
        self.session.messages = [msg.to_dict() for msg in self._history]
        self.session.metrics = self._metrics.to_dict()
        self.session.pending_patch = self._pending_patch
        await self.session_store.save_session(self.session)
        log.debug("Session saved", session_id=self.session.id, messages=len(self._history))
        return self.session

    async def restore_session(self, session_id: str) -> Session:
        """Replace history, metrics and pending patch with a stored snapshot."""
        if self.session_store is None:
            raise SessionError("No session store configured")
        self._ensure_not_busy()
        session = await self.session_store.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._history = [Message.from_dict(item) for item in session.messages if isinstance(item, dict)]
        self._metrics = type(self._metrics).from_dict(session.metrics)
        self._pending_patch = session.pending_patch
        self.session = session
        log.info("Session restored", session_id=session.id, messages=len(self._history))
        return session

    async def _auto_save(self) -> None:
        if self.session_store is None or not self.config.session.auto_save:
            return
        try:
            await self.save_session()
        except (SessionError, aiosqlite.Error) as e:
            log.warning("Session auto-save failed", error=str(e))
