"""
Credential store for KEEL

Keeps user records (identifier, bcrypt hash, role) and verifies login
attempts. Records live in memory and, when a users file is configured, are
mirrored to a JSON file that is rewritten atomically after every change.

Verification is uniform: an unknown identifier costs one full
bcrypt verification against a throwaway hash, and both failure branches
raise the same ``InvalidCredentials``.
"""

import json
import logging
import os
import secrets
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from passlib.context import CryptContext

from panel_errors import InvalidCredentials, UserExists, UserNotFound
from panel_models import Role, User, utcnow

logger = logging.getLogger(__name__)

FailureCallback = Callable[[str], None]


def make_password_context(rounds: int = 12) -> CryptContext:
    """Password context for hashing"""
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


class CredentialStore:
    """
    User records and password verification.

    Args:
        pwd_context: passlib context used for hashing and verification
        users_file: Optional JSON file used to persist the records
    """

    def __init__(self, pwd_context: Optional[CryptContext] = None, users_file: Optional[str] = None):
        self._context = pwd_context or make_password_context()
        self._users_file = Path(users_file) if users_file else None
        self._lock = threading.Lock()
        self._by_id: Dict[int, User] = {}
        self._by_identifier: Dict[str, int] = {}
        self._next_id = 1
        # Hash of a random secret, verified against when the identifier is unknown
        self._dummy_hash = self._context.hash(secrets.token_hex(16))

        if self._users_file is not None and self._users_file.exists():
            self._load()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        identifier: str,
        candidate_password: str,
        on_failure: Optional[FailureCallback] = None
    ) -> User:
        """
        Verify a login attempt.

        Args:
            identifier: Exact identifier (email or username)
            candidate_password: Plaintext password supplied by the client
            on_failure: Optional attempt counter, called with the identifier
                on every failed attempt

        Returns:
            The matching User

        Raises:
            InvalidCredentials: Unknown identifier or wrong password
        """
        user = self.get_by_identifier(identifier)

        if user is None:
            self._context.verify(candidate_password, self._dummy_hash)
            reason = "unknown identifier"
            ok = False
        else:
            ok = self._context.verify(candidate_password, user.password_hash)
            reason = "password mismatch"

        if not ok:
            logger.info(f"Login failed for {identifier!r}: {reason}")
            if on_failure is not None:
                on_failure(identifier)
            raise InvalidCredentials(f"{reason} for {identifier!r}")

        logger.info(f"Login verified for user {user.id}")
        return user

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._by_id.get(user_id)

    def get_by_identifier(self, identifier: str) -> Optional[User]:
        with self._lock:
            user_id = self._by_identifier.get(identifier)
            return self._by_id.get(user_id) if user_id is not None else None

    def list_users(self) -> List[User]:
        with self._lock:
            return sorted(self._by_id.values(), key=lambda u: u.id)

    def has_admin(self) -> bool:
        with self._lock:
            return any(u.role == Role.ADMIN for u in self._by_id.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, identifier: str, password: str, role: Role = Role.USER) -> User:
        """Create a user; identifiers are unique"""
        if not identifier:
            raise ValueError("identifier must not be empty")

        password_hash = self._context.hash(password)

        with self._lock:
            if identifier in self._by_identifier:
                raise UserExists(f"identifier {identifier!r} already taken")
            user = User(
                id=self._next_id,
                identifier=identifier,
                password_hash=password_hash,
                role=role,
                created_at=utcnow(),
            )
            self._next_id += 1
            self._by_id[user.id] = user
            self._by_identifier[identifier] = user.id
            self._save_locked()

        logger.info(f"Created user {user.id} ({user.role.value})")
        return user

    def ensure_admin(self, identifier: str, password: Optional[str]) -> Optional[User]:
        """
        Create the first admin if there is none.

        Nothing is created without a password; a taken identifier gets a
        numeric suffix.
        """
        if self.has_admin():
            return None
        if not password:
            logger.warning("No admin present, but no admin password configured -> skip creating default admin")
            return None

        candidate = identifier
        suffix = 1
        while self.get_by_identifier(candidate) is not None:
            suffix += 1
            candidate = f"{identifier}{suffix}"

        user = self.create_user(candidate, password, Role.ADMIN)
        logger.warning(f"Created default admin -> identifier={user.identifier} id={user.id}")
        return user

    def set_password(self, user_id: int, new_password: str) -> User:
        password_hash = self._context.hash(new_password)
        with self._lock:
            user = self._require_locked(user_id)
            updated = user.model_copy(update={"password_hash": password_hash})
            self._by_id[user_id] = updated
            self._save_locked()
        logger.info(f"Password changed for user {user_id}")
        return updated

    def set_role(self, user_id: int, role: Role) -> User:
        with self._lock:
            user = self._require_locked(user_id)
            updated = user.model_copy(update={"role": role})
            self._by_id[user_id] = updated
            self._save_locked()
        logger.info(f"Role of user {user_id} set to {role.value}")
        return updated

    def check_password(self, user_id: int, password: str) -> bool:
        user = self.get(user_id)
        if user is None:
            return False
        return self._context.verify(password, user.password_hash)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _require_locked(self, user_id: int) -> User:
        user = self._by_id.get(user_id)
        if user is None:
            raise UserNotFound(f"user {user_id} does not exist")
        return user

    def _load(self):
        with open(self._users_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        for record in data.get("users", []):
            user = User.model_validate(record)
            self._by_id[user.id] = user
            self._by_identifier[user.identifier] = user.id

        self._next_id = max(self._by_id, default=0) + 1
        logger.info(f"Loaded {len(self._by_id)} users from {self._users_file}")

    def _save_locked(self):
        if self._users_file is None:
            return

        payload = {
            "users": [u.model_dump(mode="json") for u in sorted(self._by_id.values(), key=lambda u: u.id)]
        }
        directory = self._users_file.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".users.", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._users_file)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
