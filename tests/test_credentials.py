"""Unit tests for auth/credentials.py -- hashing, API keys, input validation."""

from auth.credentials import (
    generate_api_key,
    hash_password,
    validate_email,
    validate_password,
    validate_username,
    verify_password,
)
from core.config import get_settings


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("same-password") != hash_password("same-password")

    def test_verify_rejects_empty_and_garbage(self) -> None:
        hashed = hash_password("secret-pass")
        assert not verify_password("", hashed)
        assert not verify_password("secret-pass", None)
        assert not verify_password("secret-pass", "not-a-bcrypt-hash")

    def test_long_passwords_are_accepted(self) -> None:
        long_password = "x" * 200
        assert verify_password(long_password, hash_password(long_password))


class TestApiKeys:
    def test_prefix_and_uniqueness(self) -> None:
        keys = {generate_api_key() for _ in range(50)}
        assert len(keys) == 50
        assert all(k.startswith("wk_") for k in keys)
        assert all(len(k) > 40 for k in keys)


class TestValidation:
    def test_username_rules(self) -> None:
        assert validate_username("alice_01-x") is None
        assert validate_username("") == "Username is required"
        assert validate_username(None) == "Username is required"
        assert validate_username("ab") is not None
        assert validate_username("a" * 33) is not None
        assert validate_username("bad name") is not None
        assert validate_username("bad@name") is not None

    def test_email_rules(self) -> None:
        assert validate_email("alice@example.com") is None
        assert validate_email("") == "Email is required"
        assert validate_email("alice") == "Invalid email format"
        assert validate_email("alice@example") == "Invalid email format"
        assert validate_email("al ice@example.com") == "Invalid email format"

    def test_password_rules(self) -> None:
        min_length = get_settings().password_min_length
        assert validate_password("p" * min_length) is None
        assert validate_password("p" * (min_length - 1)) == f"Password must be at least {min_length} characters"
        assert validate_password(None) is not None
