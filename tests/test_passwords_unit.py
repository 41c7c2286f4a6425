"""Unit tests for the argon2id credential hasher."""

import pytest

from apiguard.service.passwords import CredentialHasher


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestCredentialHasher:
    """Hashing, verification and rehash detection."""

    def test_hash_is_salted_argon2id(self, hasher):
        first = hasher.hash("Str0ng!Pass")
        second = hasher.hash("Str0ng!Pass")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "Str0ng!Pass" not in first

    def test_verify_accepts_matching_password(self, hasher):
        digest = hasher.hash("Str0ng!Pass")

        assert hasher.verify("Str0ng!Pass", digest) is True

    def test_verify_rejects_wrong_password_without_raising(self, hasher):
        digest = hasher.hash("Str0ng!Pass")

        assert hasher.verify("Wr0ng!Pass", digest) is False

    def test_verify_without_digest_returns_false(self, hasher):
        """Unknown accounts still pay for a verification but never match."""
        assert hasher.verify("Str0ng!Pass", None) is False
        assert hasher.verify("apiguard-timing-equalizer", None) is False

    def test_verify_garbage_digest_returns_false(self, hasher):
        assert hasher.verify("Str0ng!Pass", "not-a-hash") is False

    def test_needs_rehash_when_cost_changes(self, hasher):
        digest = hasher.hash("Str0ng!Pass")
        stronger = CredentialHasher(time_cost=2, memory_cost=1024, parallelism=1)

        assert hasher.needs_rehash(digest) is False
        assert stronger.needs_rehash(digest) is True
