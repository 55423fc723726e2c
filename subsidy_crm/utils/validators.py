"""
Input validation utilities
"""
from enum import Enum
from typing import Optional, Type

from subsidy_crm.exceptions import ValidationError

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_password(password: str, confirm: Optional[str] = None) -> str:
    """Validate a new password and its confirmation"""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if confirm is not None and password != confirm:
        raise ValidationError("Password confirmation does not match")
    return password


def parse_enum(enum_cls: Type[Enum], value, message: str):
    """Resolve a user-supplied string to an enum member or raise ValidationError"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except (ValueError, AttributeError):
        raise ValidationError(message)


def require_text(value: Optional[str], message: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(message)
    return text
