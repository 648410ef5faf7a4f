from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional

from fanauth.service.errors import ValidationError

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
FULL_NAME_MIN_LENGTH = 2
FULL_NAME_MAX_LENGTH = 100


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


def email_error(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return "Valid email address is required"
    normalized = normalize_email(value)
    if len(normalized) > 254 or len(normalized) < 3:
        return "Valid email address is required"
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return "Valid email address is required"
    if not _EMAIL_LOCAL_PART.match(local):
        return "Valid email address is required"
    labels = domain.split(".")
    if len(labels) < 2 or any(
        len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        return "Valid email address is required"
    return None


def normalize_email(value: str) -> str:
    return _normalize_unicode(value).strip().lower()


def username_error(value: Optional[str]) -> Optional[str]:
    if not value:
        return "Username is required"
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        return f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
    if not _USERNAME_PATTERN.match(value):
        return "Username can only contain letters, numbers, and underscores"
    return None


def password_error(value: Optional[str]) -> Optional[str]:
    if not value:
        return "Password is required"
    if len(value) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(value) > PASSWORD_MAX_LENGTH:
        return f"Password must be at most {PASSWORD_MAX_LENGTH} characters"
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(not c.isalnum() and not c.isspace() for c in value)
    ):
        return (
            "Password must contain uppercase, lowercase, number, and special character"
        )
    return None


def full_name_error(value: Optional[str]) -> Optional[str]:
    cleaned = " ".join((value or "").split())
    if not cleaned:
        return "Full name is required"
    if not FULL_NAME_MIN_LENGTH <= len(cleaned) <= FULL_NAME_MAX_LENGTH:
        return f"Full name must be {FULL_NAME_MIN_LENGTH}-{FULL_NAME_MAX_LENGTH} characters"
    if any(unicodedata.category(ch).startswith("C") for ch in cleaned):
        return "Full name contains invalid characters"
    return None


@dataclass(frozen=True)
class Registration:
    email: str
    username: str
    full_name: str
    password: str


def validate_registration(
    email: Optional[str],
    password: Optional[str],
    username: Optional[str],
    full_name: Optional[str],
) -> Registration:
    """Check every field and raise one ``ValidationError`` listing all problems."""
    errors: List[str] = [
        message
        for message in (
            email_error(email),
            password_error(password),
            username_error(username),
            full_name_error(full_name),
        )
        if message
    ]
    if errors:
        raise ValidationError(errors[0], detail={"errors": errors})
    return Registration(
        email=normalize_email(email),
        username=username.lower(),
        full_name=" ".join(full_name.split()),
        password=password,
    )


def validate_login(email: Optional[str], password: Optional[str]) -> str:
    """Return the normalized email or raise ``ValidationError``."""
    errors: List[str] = []
    if email_error(email):
        errors.append("Valid email address is required")
    if not password:
        errors.append("Password is required")
    if errors:
        raise ValidationError(errors[0], detail={"errors": errors})
    return normalize_email(email)


__all__ = [
    "Registration",
    "email_error",
    "full_name_error",
    "normalize_email",
    "password_error",
    "username_error",
    "validate_login",
    "validate_registration",
]
