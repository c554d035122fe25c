"""
Login identities and session tokens.

Each identity document is keyed by role and public login id, and names the
record it is linked to (the student record key for students). Session tokens live in their own collection.
"""
import logging
import re
import threading
import uuid
from typing import NamedTuple, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from database import DocumentStore
from errors import IdentityExists, IdentityNotFound, InvalidIdentityInput, WrongSecret

logger = logging.getLogger(__name__)

TEACHER = "teacher"
STUDENT = "student"
ROLES = (TEACHER, STUDENT)

SECRET_PATTERN = re.compile(r"^[a-zA-Z0-9]+$")


class Identity(NamedTuple):
    login_id: str
    role: str
    record_key: Optional[str] = None
    display_name: Optional[str] = None


def validate_secret(secret: str) -> None:
    if not secret or not SECRET_PATTERN.match(secret):
        raise InvalidIdentityInput("Password must contain only letters and numbers.")


class IdentityProvider:
    """
    Teacher and student identities live in separate namespaces: the same
    login id can exist once per role.
    """

    def __init__(self, identities: DocumentStore, sessions: DocumentStore):
        self._identities = identities
        self._sessions = sessions
        self._create_lock = threading.Lock()

    @staticmethod
    def _key(role: str, login_id: str) -> str:
        return f"{role}:{login_id}"

    def _issue_token(self, identity: Identity) -> str:
        token = uuid.uuid4().hex
        self._sessions.put_by_key(token, {"identity_key": self._key(identity.role, identity.login_id)})
        return token

    def _load(self, role: str, login_id: str) -> Optional[dict]:
        return self._identities.get_by_key(self._key(role, login_id))

    def create_identity(
        self,
        login_id: str,
        secret: str,
        role: str,
        record_key: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> str:
        if not login_id or not login_id.strip():
            raise InvalidIdentityInput("Login id must not be empty.")
        if role not in ROLES:
            raise InvalidIdentityInput(f"Unknown role: {role}")
        validate_secret(secret)

        identity = Identity(login_id=login_id, role=role, record_key=record_key, display_name=display_name)
        with self._create_lock:
            if self._load(role, login_id) is not None:
                raise IdentityExists(f"{role.capitalize()} login id already registered: {login_id}")
            self._identities.put_by_key(self._key(role, login_id), {
                "login_id": login_id,
                "role": role,
                "record_key": record_key,
                "display_name": display_name,
                "secret_hash": generate_password_hash(secret),
            })
        logger.info(f"Created {role} identity {login_id}")
        return self._issue_token(identity)

    def authenticate(self, login_id: str, secret: str, role: str) -> str:
        doc = self._load(role, login_id)
        if doc is None:
            raise IdentityNotFound(f"No {role} identity for {login_id}")
        if not check_password_hash(doc.get("secret_hash", ""), secret or ""):
            raise WrongSecret("Incorrect password")
        return self._issue_token(self._identity_from(doc))

    def resolve(self, token: str) -> Optional[Identity]:
        if not token:
            return None
        session = self._sessions.get_by_key(token)
        if session is None:
            return None
        doc = self._identities.get_by_key(session["identity_key"])
        return self._identity_from(doc) if doc else None

    def revoke(self, token: str) -> bool:
        return self._sessions.delete_by_key(token)

    @staticmethod
    def _identity_from(doc: dict) -> Identity:
        return Identity(
            login_id=doc["login_id"],
            role=doc["role"],
            record_key=doc.get("record_key"),
            display_name=doc.get("display_name"),
        )
