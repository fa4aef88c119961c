"""Salted scrypt hashing for admin credentials.

Plaintext credentials are never stored or compared directly. The encoded
form is ``scrypt$<n>$<r>$<p>$<salt b64>$<digest b64>`` so parameters can
be raised later without invalidating existing hashes.
"""

from __future__ import annotations

import base64
import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SCHEME = "scrypt"
_SALT_BYTES = 16
_KEY_LENGTH = 32
DEFAULT_N = 2**14
DEFAULT_R = 8
DEFAULT_P = 1


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def hash_credential(secret: str, *, n: int = DEFAULT_N, r: int = DEFAULT_R, p: int = DEFAULT_P) -> str:
    """Derive an encoded scrypt hash of *secret* with a fresh random salt.

    Parameters
    ----------
    secret : str
        The plaintext credential. Must be non-empty.

    Returns
    -------
    str
        Self-describing encoded hash.
    """
    if not secret:
        raise ValueError("credential must be non-empty")
    salt = secrets.token_bytes(_SALT_BYTES)
    kdf = Scrypt(salt=salt, length=_KEY_LENGTH, n=n, r=r, p=p)
    digest = kdf.derive(secret.encode("utf-8"))
    return f"{_SCHEME}${n}${r}${p}${_b64encode(salt)}${_b64encode(digest)}"


def verify_credential(secret: str, encoded: str) -> bool:
    """Check *secret* against an encoded hash in constant time.

    Malformed hashes verify as ``False``.
    """
    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != _SCHEME:
        return False
    try:
        n, r, p = (int(part) for part in parts[1:4])
        salt = _b64decode(parts[4])
        expected = _b64decode(parts[5])
    except ValueError:
        return False
    try:
        kdf = Scrypt(salt=salt, length=len(expected), n=n, r=r, p=p)
        kdf.verify(secret.encode("utf-8"), expected)
    except (InvalidKey, ValueError):
        return False
    return True
