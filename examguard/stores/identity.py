import hashlib
import hmac
import os
import uuid
from typing import Dict, Optional

from examguard.errors import DuplicateUsernameError
from examguard.models.schemas import Identity, Role


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)


class IdentityStore:
    """In-memory teacher/student accounts keyed by username."""

    def __init__(self):
        self._identities: Dict[str, Identity] = {}
        self._credentials: Dict[str, tuple] = {}  # username -> (salt, hash)

    def create(self, username: str, password: str, role: Role) -> Identity:
        if username in self._credentials:
            raise DuplicateUsernameError(f"Username {username!r} already exists")
        identity = Identity(id=uuid.uuid4().hex, username=username, role=Role(role))
        salt = os.urandom(16)
        self._credentials[username] = (salt, _hash_password(password, salt))
        self._identities[identity.id] = identity
        return identity

    def find_by_credentials(self, username: str, password: str) -> Optional[Identity]:
        stored = self._credentials.get(username)
        if stored is None:
            return None
        salt, expected = stored
        if not hmac.compare_digest(_hash_password(password, salt), expected):
            return None
        return next(i for i in self._identities.values() if i.username == username)

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)
