# Overview: User account creation and lookup.

from __future__ import annotations

import re

from ..extensions import db
from ..models import User


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserError(Exception):
    """Raised when user operations fail."""
    pass


def normalize_email(email: str | None) -> str:
    if not isinstance(email, str):
        return ""
    return email.strip().lower()


def is_valid_email(email: str | None) -> bool:
    return bool(EMAIL_PATTERN.match(normalize_email(email)))


def create_user(email: str, display_name: str | None = None, *, is_staff: bool = False) -> User:
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise UserError(f"Invalid email: {email!r}")
    if db.session.query(User).filter_by(email=normalized).first():
        raise UserError(f"User {normalized} already exists")

    user = User(email=normalized, display_name=display_name, is_staff=is_staff, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


def get_user_by_email(email: str) -> User | None:
    return db.session.query(User).filter_by(email=normalize_email(email)).first()
