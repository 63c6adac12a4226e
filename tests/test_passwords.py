"""Tests for password hashing and the password strength policy."""

import pytest

from edutenant.service.errors import ValidationError
from edutenant.service.passwords import PasswordHasher, validate_strength


@pytest.fixture
def hasher():
    return PasswordHasher()


class TestPasswordHasher:
    def test_hash_is_salted(self, hasher):
        """Hashing the same secret twice yields different hashes."""
        first = hasher.hash("Senha1234")
        second = hasher.hash("Senha1234")
        assert first != second
        assert first.startswith("$argon2id$")

    def test_verify_accepts_correct_secret(self, hasher):
        secret_hash = hasher.hash("Senha1234")
        assert hasher.verify("Senha1234", secret_hash) is True

    def test_verify_rejects_wrong_secret(self, hasher):
        secret_hash = hasher.hash("Senha1234")
        assert hasher.verify("Senha12345", secret_hash) is False

    def test_verify_unreadable_hash_is_false(self, hasher):
        assert hasher.verify("Senha1234", "not-a-hash") is False

    def test_needs_rehash_for_garbage(self, hasher):
        assert hasher.needs_rehash("garbage") is True
        assert hasher.needs_rehash(hasher.hash("Senha1234")) is False


class TestValidateStrength:
    @pytest.mark.parametrize("secret", ["Senha123", "Abcdefg1", "ÇãoAbc12"])
    def test_accepts_strong_secrets(self, secret):
        validate_strength(secret)

    @pytest.mark.parametrize(
        "secret",
        [
            "Ab1",  # too short
            "abcdefgh1",  # no uppercase
            "ABCDEFGH1",  # no lowercase
            "Abcdefghi",  # no digit
            "A1" + "a" * 127,  # too long
        ],
    )
    def test_rejects_weak_secrets(self, secret):
        with pytest.raises(ValidationError) as exc_info:
            validate_strength(secret)
        assert exc_info.value.detail == {"field": "password"}
        assert exc_info.value.status_code == 400

    def test_rejects_non_string(self):
        with pytest.raises(ValidationError):
            validate_strength(None)
