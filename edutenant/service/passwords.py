from __future__ import annotations

import re

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from edutenant.logging import get_logger
from edutenant.service.errors import ValidationError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 8
MAX_SECRET_LENGTH = 128

_STRENGTH_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one digit"),
)


class PasswordHasher:
    """Salted argon2id hashing; every ``hash`` call draws a fresh salt."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, secret_hash: str) -> bool:
        try:
            return self._hasher.verify(secret_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, secret_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(secret_hash)
        except InvalidHash:
            return True


def validate_strength(secret: str) -> None:
    """Raise ``ValidationError`` unless ``secret`` meets the account password policy."""
    if not isinstance(secret, str) or len(secret) < MIN_SECRET_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_SECRET_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(secret) > MAX_SECRET_LENGTH:
        raise ValidationError(
            f"password must be at most {MAX_SECRET_LENGTH} characters",
            detail={"field": "password"},
        )
    missing = [label for pattern, label in _STRENGTH_RULES if not pattern.search(secret)]
    if missing:
        raise ValidationError(
            "password must contain " + ", ".join(missing),
            detail={"field": "password"},
        )
