import hmac
import secrets
import uuid
from datetime import timedelta
from typing import Any, Optional

from ..utils.helpers import parse_timestamp, utc_now, utc_now_iso
from ..utils.logger import logger
from .activity_log import ActivityLog
from .defaults import hash_password
from .errors import AuthError, ConflictError, ValidationError
from .state_store import StateStore


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user.get("id"),
        "email": user.get("email"),
        "username": user.get("username"),
        "role": user.get("role"),
    }


class AuthService:
    def __init__(
        self,
        store: StateStore,
        activity: ActivityLog,
        session_ttl_days: int = 7,
        admin_email: str = "admin@profitcruiser.gg",
        admin_password: str = "ChangeMe123!",
        admin_username: str = "Admin",
    ):
        self.store = store
        self.activity = activity
        self.session_ttl = timedelta(days=session_ttl_days)
        self.admin_email = admin_email.lower()
        self.admin_password = admin_password
        self.admin_username = admin_username

    @property
    def users(self) -> list[dict[str, Any]]:
        return self.store.state.setdefault("users", [])

    @property
    def sessions(self) -> list[dict[str, Any]]:
        return self.store.state.setdefault("sessions", [])

    def find_by_email(self, email: str) -> Optional[dict[str, Any]]:
        email = email.strip().lower()
        for user in self.users:
            if str(user.get("email") or "").lower() == email:
                return user
        return None

    def ensure_admin_user(self) -> bool:
        if any(user.get("role") == "admin" for user in self.users):
            return False
        self.users.append(
            {
                "id": str(uuid.uuid4()),
                "email": self.admin_email,
                "username": self.admin_username,
                "passwordHash": hash_password(self.admin_password),
                "role": "admin",
                "createdAt": utc_now_iso(),
                "lastLoginAt": None,
            }
        )
        logger.warning(f"No admin user found; created default admin {self.admin_email}")
        return True

    def authenticate(self, authorization: Optional[str]) -> Optional[dict[str, Any]]:
        """Resolve an ``Authorization: Bearer`` header to a user.

        Expired sessions are dropped from memory on lookup; they reach disk
        with the next save.
        """
        header = (authorization or "").strip()
        if not header.lower().startswith("bearer "):
            return None
        token = header[7:].strip()
        if not token:
            return None

        session = next((item for item in self.sessions if item.get("token") == token), None)
        if session is None:
            return None

        expires_at = parse_timestamp(session.get("expiresAt"))
        if expires_at is not None and expires_at < utc_now():
            self.store.state["sessions"] = [item for item in self.sessions if item.get("token") != token]
            return None

        return next((user for user in self.users if user.get("id") == session.get("userId")), None)

    def create_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(48)
        now = utc_now()
        self.sessions.append(
            {
                "token": token,
                "userId": user_id,
                "createdAt": now.isoformat(),
                "expiresAt": (now + self.session_ttl).isoformat(),
            }
        )
        return token

    async def register(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        email = str(payload.get("email") or "").strip().lower()
        username = str(payload.get("username") or "").strip()
        password = str(payload.get("password") or "")
        if not email or not username or not password:
            raise ValidationError("Missing email, username or password")

        async with self.store.lock:
            if self.find_by_email(email) is not None:
                raise ConflictError("Email already registered")

            user = {
                "id": str(uuid.uuid4()),
                "email": email,
                "username": username,
                "passwordHash": hash_password(password),
                "role": "user",
                "createdAt": utc_now_iso(),
                "lastLoginAt": None,
            }
            self.users.append(user)
            token = self.create_session(user["id"])
            self.activity.append(f"User {username} registered")
            await self.store.save()
        return token, user

    async def login(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        if not email or not password:
            raise ValidationError("Missing credentials")

        async with self.store.lock:
            user = self.find_by_email(email)
            if user is None or not hmac.compare_digest(
                str(user.get("passwordHash") or ""), hash_password(password)
            ):
                raise AuthError("Invalid email or password")

            token = self.create_session(user["id"])
            user["lastLoginAt"] = utc_now_iso()
            self.activity.append(f"User {user.get('username')} logged in")
            await self.store.save()
        return token, user
