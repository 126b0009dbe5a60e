from __future__ import annotations

import base64
import hashlib
import hmac
import os

from flexicrm.core.config import get_settings

_ALGORITHM = "pbkdf2_sha256"


def _b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64u_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def hash_password(password: str, *, iterations: int | None = None) -> str:
    rounds = iterations or get_settings().password_hash_iterations
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds, dklen=32)
    return f"{_ALGORITHM}${rounds}${_b64u_encode(salt)}${_b64u_encode(digest)}"


def verify_password(password: str, password_hash: str) -> bool:
    parts = (password_hash or "").split("$", 3)
    if len(parts) != 4 or parts[0] != _ALGORITHM:
        return False
    try:
        rounds = int(parts[1])
        salt = _b64u_decode(parts[2])
        expected = _b64u_decode(parts[3])
    except ValueError:
        return False
    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds, dklen=len(expected))
    return hmac.compare_digest(actual, expected)


def login_email(username: str) -> str:
    """Usernames map onto a synthetic mailbox in the configured login domain."""

    return f"{username.lower().strip()}@{get_settings().login_email_domain}"


def login_secret(password: str) -> str:
    return f"{password}{get_settings().login_password_suffix}"
