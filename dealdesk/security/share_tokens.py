from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone


def generate_share_token() -> tuple[str, str]:
    """Return ``(raw_token, token_hash)``. Only the hash is ever persisted."""
    token = secrets.token_urlsafe(32)
    return token, hash_share_token(token)


def hash_share_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def token_matches(token: str, stored_hash: str | None) -> bool:
    if not token or not stored_hash:
        return False
    return hmac.compare_digest(hash_share_token(token), stored_hash)


def share_expiry(days: int, *, now: datetime | None = None) -> datetime:
    return (now or datetime.now(tz=timezone.utc)) + timedelta(days=days)


def is_expired(expires_at: datetime | None, *, now: datetime | None = None) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= (now or datetime.now(tz=timezone.utc))
