import hmac
import secrets
import time
from typing import Any, Dict, Optional

from passlib.context import CryptContext

from .cache import MemoryCache, cache_admin_session, count_admin_sessions, drop_admin_session, get_admin_session
from .config import Settings
from .logging_utils import get_logger

logger = get_logger("twotruths.auth")

# new hashes use pbkdf2; bcrypt hashes supplied through ADMIN_PASSWORD_HASH still verify
pwd = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


def generate_session_token() -> str:
    return secrets.token_hex(32)


def bearer_from_header(value: Optional[str]) -> Optional[str]:
    if value and value.lower().startswith("bearer "):
        token = value.split(" ", 1)[1].strip()
        return token or None
    return None


class AdminAuthenticator:
    """Authenticate the single admin account and hand out bearer sessions.

    The rest of the service only asks "does this token belong to an admin";
    swapping this class for another identity provider needs no core changes.
    """

    def __init__(self, settings: Settings, cache: Optional[MemoryCache] = None):
        self.username = settings.admin_username
        self.password_hash = settings.admin_password_hash or pwd.hash(settings.admin_password)
        self.ttl_seconds = settings.admin_session_ttl_seconds
        self.cache = cache or MemoryCache()

    def login(self, username: str, password: str) -> Optional[str]:
        if not hmac.compare_digest(username.encode(), self.username.encode()):
            logger.warning("admin_login_failed")
            return None
        if not pwd.verify(password, self.password_hash):
            logger.warning("admin_login_failed")
            return None
        token = generate_session_token()
        now = time.time()
        cache_admin_session(self.cache, token, {"username": username, "created_at": now}, self.ttl_seconds)
        logger.info("admin_login")
        return token

    def authenticate(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the admin identity for a live token, None otherwise."""
        if not token:
            return None
        return get_admin_session(self.cache, token)

    def logout(self, token: Optional[str]) -> bool:
        dropped = drop_admin_session(self.cache, token or "")
        if dropped:
            logger.info("admin_logout")
        return dropped

    def purge_expired(self) -> int:
        return self.cache.cleanup_expired()

    def info(self) -> Dict[str, Any]:
        return {
            "authSystemActive": True,
            "sessionStore": {
                "activeSessions": count_admin_sessions(self.cache),
                "timeout": self.ttl_seconds,
            },
        }
