from __future__ import annotations

from functools import lru_cache

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


_password_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    # Treat malformed stored hashes the same as a mismatch.
    try:
        return _password_hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def needs_rehash(password_hash: str) -> bool:
    return _password_hasher.check_needs_rehash(password_hash)


@lru_cache
def _dummy_hash() -> str:
    return _password_hasher.hash("teamauth-timing-equalizer")


def burn_verification(password: str) -> None:
    # Spend one argon2 verify so unknown accounts cost the same as wrong passwords.
    verify_password(password, _dummy_hash())
