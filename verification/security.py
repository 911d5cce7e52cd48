"""Security utilities for verification codes and email input."""

from __future__ import annotations

import re
import secrets

DEFAULT_CODE_LENGTH = 6
DEFAULT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MAX_EMAIL_LENGTH = 254

_EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_EMAIL_DISALLOWED = re.compile(r"[^a-z0-9@.+_-]")
_WHITESPACE = re.compile(r"\s+")


def generate_verification_code(
    length: int = DEFAULT_CODE_LENGTH, alphabet: str = DEFAULT_CODE_ALPHABET
) -> str:
    """Generate a human-enterable code, uniformly random over ``alphabet``."""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def is_well_formed(
    code: str | None, length: int = DEFAULT_CODE_LENGTH, alphabet: str = DEFAULT_CODE_ALPHABET
) -> bool:
    """Check length and alphabet membership only.

    Says nothing about whether the code exists, is current, or matches.
    """
    if not code or len(code) != length:
        return False
    return all(char in alphabet for char in code)


def sanitize_code_input(
    raw: str | None, length: int = DEFAULT_CODE_LENGTH, alphabet: str = DEFAULT_CODE_ALPHABET
) -> str:
    """Normalize a typed code: uppercase, no whitespace, alphabet characters only.

    "  k3x9 p4 " becomes "K3X9P4". Output is truncated to ``length``.
    """
    if not raw or not isinstance(raw, str):
        return ""
    collapsed = _WHITESPACE.sub("", raw).upper()
    return "".join(char for char in collapsed if char in alphabet)[:length]


def sanitize_email(raw: str | None) -> str:
    """Trim, lowercase and strip characters that never appear in our addresses."""
    if not raw or not isinstance(raw, str):
        return ""
    sanitized = _EMAIL_DISALLOWED.sub("", raw.strip().lower())
    return sanitized[:MAX_EMAIL_LENGTH]


def validate_email(email: str) -> tuple[bool, str | None]:
    if not email:
        return False, "required"
    if len(email) > MAX_EMAIL_LENGTH:
        return False, "too long"
    if not _EMAIL_PATTERN.match(email):
        return False, "invalid format"
    return True, None


def mask_email(email: str) -> str:
    """Show the first two characters of the local part: ``jo***@example.com``."""
    local, sep, domain = email.partition("@")
    if not sep:
        return email
    masked_local = f"{local[:2]}***" if len(local) > 2 else "***"
    return f"{masked_local}@{domain}"
