# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every action must be attributable. Passwords are hashed with bcrypt;
session tokens are handled separately (see session_service.py).
"""

import bcrypt
from sqlalchemy.orm import Session

from ..models import User
from ..models.auth import ROLES
from ..time_utils import utcnow


MIN_PASSWORD_LENGTH = 8


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )


def hash_password(password: str, *, rounds: int = 12) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt comparison. Malformed hashes never verify."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    session: Session,
    username: str,
    password: str,
    role: str,
    *,
    full_name: str | None = None,
    email: str | None = None,
    rounds: int = 12,
) -> User:
    """
    Create a user with a bcrypt password hash.

    Raises ValueError for an unknown role or duplicate username and
    PasswordValidationError for a weak password.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if session.query(User).filter_by(username=username).first():
        raise ValueError(f"Username already exists: {username}")

    user = User(
        username=username,
        full_name=full_name,
        email=email,
        password_hash=hash_password(password, rounds=rounds),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    return user


def authenticate(session: Session, username: str, password: str) -> User | None:
    """Return the active user matching the credentials, else None."""
    user = session.query(User).filter_by(username=username).first()
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    session.commit()
    return user
