"""In-memory session store.

Sessions live in a plain dict keyed by id for the lifetime of the process.
There is no persistence and no expiry: whoever embeds the store is
responsible for eviction if it needs one.

Every read hands out a copy, so the only way to change a session is through
the store's methods. Nothing here is async and nothing is locked; a
read-modify-write spanning several calls is only safe while the caller has
the session to itself (see FlowRegistry(serialize_sessions=True)).
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any

from storyflow.models import ChatMessage, Role, Session, utcnow

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, session_id: str | None = None) -> str:
        """Create (or replace) a session and return its id."""
        sid = session_id or uuid.uuid4().hex
        self._sessions[sid] = Session(id=sid)
        logger.info("Created session: %s", sid)
        return sid

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def clear_session(self, session_id: str) -> None:
        """Wipe messages and state; the id stays registered."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.messages = []
        session.state = {}
        session.updated_at = utcnow()
        logger.info("Cleared session: %s", session_id)

    def delete_session(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("Deleted session: %s", session_id)
        return removed

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

    def _lookup(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Ignoring write to unknown session %s", session_id)
        return session

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def add_message(self, session_id: str, role: Role, content: str) -> None:
        session = self._lookup(session_id)
        if session is None:
            return
        session.messages.append(ChatMessage(role=role, content=content))
        session.updated_at = utcnow()

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return [m.model_copy() for m in session.messages]

    # ------------------------------------------------------------------
    # Keyed state
    # ------------------------------------------------------------------

    def set_state(self, session_id: str, key: str, value: Any) -> None:
        session = self._lookup(session_id)
        if session is None:
            return
        session.state[key] = copy.deepcopy(value)
        session.updated_at = utcnow()

    def get_state(self, session_id: str, key: str, default: Any = None) -> Any:
        session = self._sessions.get(session_id)
        if session is None:
            return default
        return copy.deepcopy(session.state.get(key, default))

    # ------------------------------------------------------------------
    # Chat handles
    # ------------------------------------------------------------------

    def chat(self, session_id: str) -> Chat:
        """Return a handle bound to one session, creating it if needed."""
        if session_id not in self._sessions:
            self.create_session(session_id)
        return Chat(self, session_id)


class Chat:
    """Convenience view over one session's history."""

    def __init__(self, store: SessionStore, session_id: str) -> None:
        self.store = store
        self.session_id = session_id

    def add_message(self, role: Role, content: str) -> None:
        self.store.add_message(self.session_id, role, content)

    def get_messages(self) -> list[ChatMessage]:
        return self.store.get_messages(self.session_id)
