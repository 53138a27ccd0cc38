"""
Conversation session storage.

This module keeps per-user multi-turn state: the turns of each
conversation, the last known intent and entities used to resolve follow-up
questions, and eviction by idle time and per-owner session cap.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from nycdb_insights.core.models import (
    ConversationSession,
    ConversationTurn,
    Intent,
    StructuredQuery,
)

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Interface for conversation session storage."""

    @abstractmethod
    def get_or_create(self, owner: str, session_id: Optional[str] = None) -> ConversationSession:
        """Return the owner's session with this id, or a new session."""
        pass

    @abstractmethod
    def record(self, session: ConversationSession, query: StructuredQuery,
               response_ref: Optional[str]) -> ConversationSession:
        """Commit a completed turn to the session."""
        pass

    @abstractmethod
    def list_for_owner(self, owner: str) -> List[ConversationSession]:
        """List the owner's live sessions, most recently touched first."""
        pass

    @abstractmethod
    def get(self, owner: str, session_id: str) -> Optional[ConversationSession]:
        """Return the owner's session with this id, or None."""
        pass

    @abstractmethod
    def evict(self, owner: str) -> int:
        """Drop expired sessions of every owner and the owner's over-cap sessions; returns the number dropped."""
        pass


class InMemoryConversationStore(SessionStore):
    """
    Process-local session store.

    Sessions are kept in an OrderedDict keyed by ``owner:session_id`` in
    least-recently-touched order. All access goes through one re-entrant lock.
    """

    def __init__(self, ttl_minutes: int = 30, max_sessions_per_owner: int = 5,
                 max_history: int = 20, clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the store.

        Args:
            ttl_minutes: Idle time after which a session expires
            max_sessions_per_owner: Maximum live sessions per owner
            max_history: Maximum turns kept per session
            clock: Returns the current time
        """
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_sessions_per_owner = max_sessions_per_owner
        self.max_history = max_history
        self.clock = clock
        self._sessions: "OrderedDict[str, ConversationSession]" = OrderedDict()
        self._lock = threading.RLock()
        logger.info(
            f"InMemoryConversationStore initialized (ttl={ttl_minutes}m, "
            f"max_sessions={max_sessions_per_owner}, max_history={max_history})"
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @staticmethod
    def _key(owner: str, session_id: str) -> str:
        return f"{owner}:{session_id}"

    def get_or_create(self, owner: str, session_id: Optional[str] = None) -> ConversationSession:
        with self._lock:
            self.evict(owner)

            if session_id:
                key = self._key(owner, session_id)
                session = self._sessions.get(key)
                if session is not None:
                    session.last_active = self.clock()
                    self._sessions.move_to_end(key)
                    return session
                logger.info("Requested session not found for owner, starting a new one")

            now = self.clock()
            session = ConversationSession(
                session_id=f"conv_{uuid.uuid4().hex}",
                owner=owner,
                created_at=now,
                last_active=now,
            )
            self._sessions[self._key(owner, session.session_id)] = session
            logger.info(f"Created session {session.session_id} for owner {owner}")

            self._enforce_cap(owner)
            return session

    def record(self, session: ConversationSession, query: StructuredQuery,
               response_ref: Optional[str]) -> ConversationSession:
        with self._lock:
            now = self.clock()
            session.history.append(
                ConversationTurn(query=query, response_ref=response_ref, timestamp=now)
            )
            if len(session.history) > self.max_history:
                del session.history[:len(session.history) - self.max_history]

            if query.intent != Intent.UNKNOWN:
                session.active_intent = query.intent

            for kind, values in query.entities.items():
                if values:
                    session.active_entities[kind] = list(values)

            session.message_count += 1
            session.last_active = now

            key = self._key(session.owner, session.session_id)
            if key not in self._sessions:
                self._sessions[key] = session
            self._sessions.move_to_end(key)

            logger.debug(f"Recorded turn {session.message_count} in session {session.session_id}")
            return session

    def list_for_owner(self, owner: str) -> List[ConversationSession]:
        with self._lock:
            self.evict(owner)
            sessions = [s for s in self._sessions.values() if s.owner == owner]
            sessions.reverse()
            return sessions

    def get(self, owner: str, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            self.evict(owner)
            return self._sessions.get(self._key(owner, session_id))

    def evict(self, owner: str) -> int:
        with self._lock:
            dropped = self._purge_expired() + self._enforce_cap(owner)
            if dropped:
                logger.info(f"Evicted {dropped} session(s) on access by owner {owner}")
            return dropped

    def _purge_expired(self) -> int:
        """Drop sessions of every owner idle past the TTL."""
        cutoff = self.clock() - self.ttl
        purged = 0
        # Sessions are in last_active order, so expired ones sit at the front
        while self._sessions:
            key, session = next(iter(self._sessions.items()))
            if session.last_active >= cutoff:
                break
            del self._sessions[key]
            purged += 1
        return purged

    def _enforce_cap(self, owner: str) -> int:
        """Drop the owner's least recently touched sessions beyond the cap."""
        owned = [key for key, session in self._sessions.items() if session.owner == owner]
        overflow = len(owned) - self.max_sessions_per_owner
        for key in owned[:max(overflow, 0)]:
            del self._sessions[key]
        return max(overflow, 0)
