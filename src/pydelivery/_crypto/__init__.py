"""Credential hashing for admin records."""

from pydelivery._crypto.hashing import hash_credential, verify_credential

__all__ = ["hash_credential", "verify_credential"]
