# Overview: Service-layer operations for session; encapsulates business logic and database work.

"""
Session Token Management Service

Tokens are random, handed to the client once, and stored only as a
SHA-256 hash. Each session has an absolute expiry and can be revoked.
"""

import hashlib
import secrets
from datetime import timedelta

from sqlalchemy.orm import Session

from ..models import SessionToken, User
from ..time_utils import utcnow


def generate_token() -> str:
    """64-character hex token (32 bytes of entropy)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    session: Session,
    user_id: int,
    *,
    ttl_hours: int = 12,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Create a session for the user.

    Returns (session_record, plaintext_token). Only the hash is persisted.
    """
    token = generate_token()
    record = SessionToken(
        user_id=user_id,
        token_hash=hash_token(token),
        expires_at=utcnow() + timedelta(hours=ttl_hours),
        user_agent=user_agent[:255] if user_agent else None,
        ip_address=ip_address,
    )
    session.add(record)
    session.commit()
    return record, token


def validate_session(session: Session, token: str) -> User | None:
    """
    Resolve a bearer token to its active user.

    Returns None for unknown, revoked or expired tokens and for
    deactivated users.
    """
    record = session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if record is None or record.is_revoked:
        return None
    if record.expires_at <= utcnow():
        return None

    user = record.user
    if user is None or not user.is_active:
        return None
    return user


def revoke_session(session: Session, token: str) -> bool:
    record = session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if record is None or record.is_revoked:
        return False
    record.is_revoked = True
    record.revoked_at = utcnow()
    session.commit()
    return True
