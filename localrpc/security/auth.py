"""
Authentication
--------------
In-memory users, API keys and signed bearer tokens.

Rules:
- Passwords are stored as HMAC-SHA256 digests keyed by the service secret
- All signature comparisons are constant-time
- Tokens carry an expiry and are rejected once it passes
"""

from dataclasses import dataclass
from typing import Dict, Optional
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid

from .access_control import Role, UserRole


@dataclass
class User:
    """A user known to the auth service."""
    id: str
    username: str
    password_hash: str
    role: str
    api_key: Optional[str] = None


class AuthService:
    """
    Authentication service.

    Disabled by default; adapters consult `enabled` before requiring
    credentials.
    """

    def __init__(
        self,
        enabled: bool = False,
        secret_key: Optional[str] = None,
        token_expiration_seconds: int = 3600,
    ):
        self.enabled = enabled
        self._secret_key = (secret_key or secrets.token_hex(32)).encode("utf-8")
        self.token_expiration_seconds = token_expiration_seconds
        self._users: Dict[str, User] = {}
        self._api_keys: Dict[str, str] = {}  # api_key -> user_id
        self._logger = logging.getLogger("localrpc.security.auth")

    def create_user(self, username: str, password: str, role: Role = UserRole.USER) -> User:
        """Create a user with a fresh API key."""
        if self.get_user_by_username(username):
            raise ValueError(f"User {username} already exists")

        user = User(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=self._hash_password(password),
            role=role.value if isinstance(role, UserRole) else str(role),
            api_key=secrets.token_hex(32),
        )
        self._users[user.id] = user
        self._api_keys[user.api_key] = user.id
        self._logger.info(f"Created user {username} ({user.role})")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self._users.values():
            if user.username == username:
                return user
        return None

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        user_id = self._api_keys.get(api_key)
        if user_id is None:
            return None
        return self.get_user(user_id)

    def authenticate(self, username: str, password: str) -> Optional[User]:
        """Return the user if the password matches."""
        user = self.get_user_by_username(username)
        if user is None:
            return None

        if not hmac.compare_digest(self._hash_password(password), user.password_hash):
            self._logger.warning(f"Failed login for {username}")
            return None

        return user

    def authenticate_with_api_key(self, api_key: str) -> Optional[User]:
        return self.get_user_by_api_key(api_key)

    def generate_token(self, user: User) -> str:
        """Signed token: base64(json payload) + '.' + hex signature."""
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "exp": int(time.time()) + self.token_expiration_seconds,
        }
        payload_b64 = base64.urlsafe_b64encode(
            json.dumps(payload, sort_keys=True).encode("utf-8")
        ).decode("ascii")
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def verify_token(self, token: str) -> Optional[User]:
        """Return the token's user if the signature and expiry check out."""
        if not token or token.count(".") != 1:
            return None

        payload_b64, signature = token.split(".")
        if not hmac.compare_digest(signature, self._sign(payload_b64)):
            return None

        try:
            payload = json.loads(base64.urlsafe_b64decode(payload_b64.encode("ascii")))
        except (ValueError, TypeError):
            return None

        if payload.get("exp") is not None and payload["exp"] < int(time.time()):
            return None

        return self.get_user(payload.get("user_id", ""))

    def _hash_password(self, password: str) -> str:
        return hmac.new(self._secret_key, password.encode("utf-8"), hashlib.sha256).hexdigest()

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret_key, payload.encode("utf-8"), hashlib.sha256).hexdigest()
