# Overview: Service-layer operations for request attribution; resolves the per-tenant system actor.

"""
Actor Service

WHY: Every replenishment request must be attributable to a User. Button
presses have no human requester, so they are attributed to a per-tenant
"system" user that cannot log in.

SECURITY NOTES:
- The system user's password hash is bcrypt over 32 random bytes that are
  never stored or returned, so no password can ever match it
- is_system=True lets UIs and reports tell machine requests apart
"""

import secrets

import bcrypt
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User


SYSTEM_USERNAME = "system"


def hash_password(password: str, *, rounds: int = 12) -> str:
    """Hash password using bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def get_or_create_system_user(owner_id: int) -> User:
    """
    Resolve the tenant's system actor, creating it on first use.

    Two overlapping invocations may both try to create it; the loser's
    IntegrityError is absorbed and the winner's row returned.
    """
    user = db.session.query(User).filter_by(org_id=owner_id, username=SYSTEM_USERNAME).first()
    if user:
        return user

    user = User(
        org_id=owner_id,
        username=SYSTEM_USERNAME,
        password_hash=hash_password(secrets.token_hex(32), rounds=4),
        is_active=True,
        is_system=True,
    )
    try:
        with db.session.begin_nested():
            db.session.add(user)
    except IntegrityError:
        user = db.session.query(User).filter_by(org_id=owner_id, username=SYSTEM_USERNAME).one()
    return user
