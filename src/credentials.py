"""Derive student login emails and default passwords from dataset fields."""

import re
import secrets
import string

DEFAULT_EMAIL_DOMAIN = "student.pnl.ac.id"
DEFAULT_PASSWORD_SUFFIX = "pnl"
MIN_PASSWORD_LENGTH = 6

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9_]")
_PASSWORD_ALPHABET = string.ascii_lowercase + string.digits


def derive_email(display_name: str, id_number, domain: str = DEFAULT_EMAIL_DOMAIN) -> str:
    """Build the login email for a student.

    ``"Budi  Santoso", "2023007"`` becomes ``budi_santoso007@student.pnl.ac.id``.
    The suffix is the last three characters of the ID number, left-padded
    with zeros when the ID is shorter.
    """
    name = _WHITESPACE.sub("_", (display_name or "").strip().lower())
    name = _DISALLOWED.sub("", name)
    suffix = str(id_number if id_number is not None else "").strip()[-3:].rjust(3, "0")
    return f"{name}{suffix}@{domain}"


def derive_default_password(id_number) -> str:
    """Default password for a new student account.

    The ID number itself when it is long enough; shorter IDs get the fixed
    suffix and random characters until the minimum length is met. Students
    are expected to change it after the first login.
    """
    password = str(id_number if id_number is not None else "").strip()
    if len(password) >= MIN_PASSWORD_LENGTH:
        return password
    password += DEFAULT_PASSWORD_SUFFIX
    while len(password) < MIN_PASSWORD_LENGTH:
        password += secrets.choice(_PASSWORD_ALPHABET)
    return password
