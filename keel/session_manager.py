"""
Session manager for KEEL

Sessions move from Active to either Expired or Revoked. Only an Active
session validates. Expired sessions are removed lazily, the first time a
validation notices them; revoked sessions are removed at once, which makes
them indistinguishable from tokens that never existed.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from credential_store import CredentialStore
from panel_errors import SessionExpired, SessionNotFound
from panel_models import Session, User, utcnow

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits of entropy
TOKEN_BYTES = 32
DEFAULT_TTL = timedelta(hours=24)


def _short(token: str) -> str:
    return token[:8] + "..."


class SessionStore:
    """Thread-safe token -> Session map shared by the whole process"""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def put(self, session: Session):
        with self._lock:
            self._sessions[session.token] = session

    def get(self, token: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(token)

    def pop(self, token: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(token, None)

    def remove_if(self, predicate: Callable[[Session], bool]) -> int:
        with self._lock:
            doomed = [t for t, s in self._sessions.items() if predicate(s)]
            for token in doomed:
                del self._sessions[token]
            return len(doomed)

    def for_user(self, user_id: int) -> List[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == user_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionManager:
    """
    Issues, validates and revokes session tokens.

    Args:
        store: Shared SessionStore
        credentials: CredentialStore used to resolve the owning user
        ttl: Session lifetime
        clock: Callable returning the current aware UTC datetime
    """

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialStore,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow
    ):
        if ttl <= timedelta(0):
            raise ValueError("session ttl must be positive")
        self.store = store
        self.credentials = credentials
        self.ttl = ttl
        self._clock = clock

    def create(self, user_id: int) -> Session:
        now = self._clock()
        session = Session(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(session)
        logger.info(f"Session created for user {user_id}, expires {session.expires_at.isoformat()}")
        logger.debug(f"Session token {_short(session.token)}")
        return session

    def validate(self, token: str) -> User:
        """
        Resolve a token to its user.

        Raises:
            SessionNotFound: Unknown, revoked, or owner no longer exists
            SessionExpired: Past ``expires_at``; the session is dropped
        """
        session = self.store.get(token) if token else None
        if session is None:
            raise SessionNotFound("unknown token")

        if session.is_expired(self._clock()):
            self.store.pop(token)
            logger.info(f"Session for user {session.user_id} expired")
            raise SessionExpired(f"token {_short(token)} expired at {session.expires_at.isoformat()}")

        user = self.credentials.get(session.user_id)
        if user is None:
            self.store.pop(token)
            logger.warning(f"Session owner {session.user_id} no longer exists")
            raise SessionNotFound("session owner vanished")

        return user

    def get(self, token: str) -> Optional[Session]:
        return self.store.get(token)

    def revoke(self, token: str):
        """Revoke a session; unknown tokens are ignored"""
        session = self.store.pop(token)
        if session is not None:
            logger.info(f"Session revoked for user {session.user_id}")

    def revoke_all(self, user_id: int) -> int:
        count = self.store.remove_if(lambda s: s.user_id == user_id)
        if count:
            logger.info(f"Revoked {count} sessions for user {user_id}")
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        count = self.store.remove_if(lambda s: s.is_expired(now))
        if count:
            logger.info(f"Purged {count} expired sessions")
        return count

    def active_count(self) -> int:
        return len(self.store)
