"""
Password hashing for protected links and secret generation for webhooks.
"""

import secrets
from datetime import datetime, timedelta
from typing import Optional

import bcrypt

EXPIRATION_PRESETS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "never": None,
}


def hash_password(password: str) -> str:
    """Hash a link password for storage."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a stored bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage
        return False


def calculate_expiration(duration: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Translate an expiry preset ("1h", "24h", "7d", "30d", "never") into a timestamp."""
    delta = EXPIRATION_PRESETS.get(duration or "never")
    if delta is None:
        return None
    return (now or datetime.utcnow()) + delta


def generate_webhook_secret() -> str:
    """Generate a 32-byte hex secret for signing webhook payloads."""
    return secrets.token_hex(32)
