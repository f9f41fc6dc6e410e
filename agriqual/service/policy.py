from __future__ import annotations

import re
from typing import Optional

from agriqual.config import AccountRole
from agriqual.service.errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_PASSWORD_LENGTH = 8

COMMON_PASSWORDS = frozenset({"password", "12345678", "qwerty", "letmein", "agriqual"})


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def validate_email(email: Optional[str]) -> str:
    """Return the canonical form of ``email`` or raise ``ValidationError``."""

    normalized = normalize_email(email)
    if not normalized or not EMAIL_RE.match(normalized):
        raise ValidationError("Valid email is required")
    return normalized


def validate_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    return cleaned


def validate_role(role: Optional[str]) -> str:
    if not role:
        return AccountRole.FARMER.value
    try:
        return AccountRole(role.strip().lower()).value
    except ValueError:
        raise ValidationError(
            "Role must be one of: " + ", ".join(r.value for r in AccountRole)
        ) from None


def _category_count(password: str) -> int:
    return sum(
        (
            any(c.isupper() for c in password),
            any(c.islower() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        )
    )


def validate_password(
    password: Optional[str], email: Optional[str] = None, *, label: str = "Password"
) -> None:
    """Enforce the password policy; the first failing rule is reported.

    ``label`` lets the change-password flow say "New password ..." in its
    messages while registration says "Password ...".
    """

    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"{label} must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if any(c.isspace() for c in password):
        raise ValidationError(f"{label} cannot contain spaces")
    if password.lower() in COMMON_PASSWORDS:
        raise ValidationError(f"{label} is too common. Choose something harder to guess")
    if _category_count(password) < 3:
        raise ValidationError(
            f"{label} must include at least three of: uppercase letters, "
            "lowercase letters, numbers, and symbols"
        )
    local_part = normalize_email(email).split("@", 1)[0]
    if local_part and local_part in password.lower():
        raise ValidationError(f"{label} must not contain your email username")


__all__ = [
    "COMMON_PASSWORDS",
    "EMAIL_RE",
    "normalize_email",
    "validate_email",
    "validate_name",
    "validate_password",
    "validate_role",
]
