from __future__ import annotations

import pytest

from pydelivery._crypto.hashing import hash_credential, verify_credential

# Low cost parameters keep the suite fast; production uses the defaults.
_FAST = {"n": 2**4, "r": 1, "p": 1}


def test_hash_is_salted_and_self_describing() -> None:
    first = hash_credential("hunter2", **_FAST)
    second = hash_credential("hunter2", **_FAST)

    assert first != second
    assert first.startswith("scrypt$16$1$1$")
    assert "hunter2" not in first


def test_verify_accepts_matching_secret() -> None:
    encoded = hash_credential("hunter2", **_FAST)
    assert verify_credential("hunter2", encoded) is True
    assert verify_credential("hunter3", encoded) is False


@pytest.mark.parametrize(
    "encoded",
    ["", "plaintext", "bcrypt$1$2$3$4$5", "scrypt$x$1$1$AAAA$AAAA", "scrypt$16$1$1$!!$AAAA"],
)
def test_malformed_hash_never_verifies(encoded: str) -> None:
    assert verify_credential("anything", encoded) is False


def test_empty_secret_rejected() -> None:
    with pytest.raises(ValueError):
        hash_credential("")
