"""
Environment driven settings for the Two Truths service.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional


TIMER_MODE_REVEAL = "reveal"
TIMER_MODE_HALT = "halt"

_DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


@dataclass
class Settings:
    database_url: str = "sqlite:///./twotruths.db"
    admin_username: str = "admin"
    admin_password: str = "secure_password_123"
    admin_password_hash: Optional[str] = None
    admin_session_ttl_seconds: int = 24 * 60 * 60
    timer_expiry_mode: str = TIMER_MODE_REVEAL
    retention_hours: int = 24
    sweep_interval_seconds: int = 30 * 60
    cors_origins: List[str] = field(default_factory=lambda: list(_DEFAULT_ORIGINS))
    nats_url: Optional[str] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @classmethod
    def from_env(cls) -> "Settings":
        origins = list(_DEFAULT_ORIGINS)
        frontend = os.getenv("FRONTEND_URL")
        if frontend:
            origins.insert(0, frontend)
        extra = os.getenv("CORS_ORIGINS", "")
        origins.extend(o.strip() for o in extra.split(",") if o.strip())

        mode = os.getenv("TIMER_EXPIRY_MODE", TIMER_MODE_REVEAL).strip().lower()
        if mode not in (TIMER_MODE_REVEAL, TIMER_MODE_HALT):
            mode = TIMER_MODE_REVEAL

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./twotruths.db"),
            admin_username=os.getenv("ADMIN_USERNAME", "admin"),
            admin_password=os.getenv("ADMIN_PASSWORD", "secure_password_123"),
            admin_password_hash=os.getenv("ADMIN_PASSWORD_HASH") or None,
            admin_session_ttl_seconds=_int_env("ADMIN_SESSION_TTL_SECONDS", 24 * 60 * 60),
            timer_expiry_mode=mode,
            retention_hours=_int_env("RETENTION_HOURS", 24),
            sweep_interval_seconds=_int_env("SWEEP_INTERVAL_SECONDS", 30 * 60),
            cors_origins=origins,
            nats_url=os.getenv("NATS_URL") or None,
        )
