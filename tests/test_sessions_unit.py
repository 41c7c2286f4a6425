"""Unit tests for refresh-token sessions.

Covers:
- single-use rotation
- reuse detection revoking every session of the user
- expiry, logout and inactive users
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from apiguard.service.errors import AuthenticationError
from apiguard.service.sessions import REUSE_MESSAGE, SessionLedger, hash_token
from apiguard.service.tokens import ACCESS, REFRESH, TokenCodec
from apiguard.storage.memory import MemoryStore
from apiguard.storage.models import SessionState, UserStatus, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def codec():
    return TokenCodec("access-secret-for-tests-0123456789", "refresh-secret-for-tests-0123456789")


@pytest.fixture
def ledger(store, codec):
    return SessionLedger(store, codec)


@pytest.fixture
def user(store):
    return store.create_user("owner@example.com", "Olive Owner", "digest")


def _active(store, user_id):
    now = utcnow()
    return [s for s in store.list_sessions(user_id) if s.state(now) == SessionState.ACTIVE]


class TestOpen:
    def test_open_persists_only_the_hash(self, ledger, store, user):
        session, tokens = ledger.open(user, ip_addr="10.0.0.1", user_agent="pytest")

        stored = store.get_session(session.id)
        assert stored.token_hash == hash_token(tokens.refresh_token)
        assert stored.token_hash != tokens.refresh_token
        assert stored.ip_addr == "10.0.0.1"
        assert tokens.token_type == "Bearer"
        assert tokens.expires_in == 900

    def test_tokens_name_the_session(self, ledger, codec, user):
        session, tokens = ledger.open(user)

        assert codec.verify(tokens.access_token, ACCESS)["sid"] == session.id
        assert codec.verify(tokens.refresh_token, REFRESH)["sid"] == session.id

    def test_remember_me_extends_session(self, ledger, user):
        short, _ = ledger.open(user)
        long, _ = ledger.open(user, remember_me=True)

        assert short.expires_at - short.created_at == timedelta(days=7)
        assert long.expires_at - long.created_at == timedelta(days=30)


class TestRedeem:
    def test_rotation_revokes_old_and_opens_new(self, ledger, store, user):
        first, tokens = ledger.open(user)

        second, rotated = ledger.redeem(tokens.refresh_token)

        assert second.id != first.id
        assert rotated.refresh_token != tokens.refresh_token
        assert store.get_session(first.id).revoked_at is not None
        assert second.token_family == first.token_family
        assert [s.id for s in _active(store, user.id)] == [second.id]

    def test_rotation_keeps_remember_me(self, ledger, user):
        _, tokens = ledger.open(user, remember_me=True)

        session, _ = ledger.redeem(tokens.refresh_token)

        assert session.remember_me is True
        assert session.expires_at - session.created_at == timedelta(days=30)

    def test_second_use_revokes_every_session(self, ledger, store, user):
        _, stolen = ledger.open(user)
        _, other_device = ledger.open(user)
        ledger.redeem(stolen.refresh_token)

        with pytest.raises(AuthenticationError) as excinfo:
            ledger.redeem(stolen.refresh_token)

        assert excinfo.value.message == REUSE_MESSAGE
        assert _active(store, user.id) == []
        # the untouched device is collateral; it has to log in again
        with pytest.raises(AuthenticationError):
            ledger.redeem(other_device.refresh_token)

    def test_unknown_signed_token_revokes_subject_sessions(self, ledger, codec, store, user):
        ledger.open(user)
        orphan = codec.issue_refresh(user.id, user.email, "never-stored")

        with pytest.raises(AuthenticationError, match="all sessions revoked"):
            ledger.redeem(orphan)

        assert _active(store, user.id) == []

    def test_reuse_does_not_touch_other_users(self, ledger, store, user):
        bystander = store.create_user("bystander@example.com", "Bea Bystander", "digest")
        ledger.open(bystander)
        _, tokens = ledger.open(user)
        ledger.redeem(tokens.refresh_token)

        with pytest.raises(AuthenticationError):
            ledger.redeem(tokens.refresh_token)

        assert len(_active(store, bystander.id)) == 1

    def test_expired_session_is_rejected_without_mass_revoke(self, ledger, store, user):
        expired, tokens = ledger.open(user)
        ledger.open(user)
        store.sessions[expired.id] = replace(expired, expires_at=utcnow() - timedelta(seconds=1))

        with pytest.raises(AuthenticationError, match="session expired"):
            ledger.redeem(tokens.refresh_token)

        assert len(_active(store, user.id)) == 1

    def test_access_token_cannot_refresh(self, ledger, user):
        _, tokens = ledger.open(user)

        with pytest.raises(AuthenticationError, match="invalid refresh token"):
            ledger.redeem(tokens.access_token)

    def test_garbage_token_is_invalid(self, ledger):
        with pytest.raises(AuthenticationError, match="invalid refresh token"):
            ledger.redeem("not-a-jwt")

    def test_deactivated_user_cannot_refresh(self, ledger, store, user):
        _, tokens = ledger.open(user)
        store.update_user(user.id, status=UserStatus.DEACTIVATED)

        with pytest.raises(AuthenticationError, match="invalid refresh token"):
            ledger.redeem(tokens.refresh_token)

    def test_ip_change_does_not_block_rotation(self, ledger, user):
        _, tokens = ledger.open(user, ip_addr="10.0.0.1")

        session, _ = ledger.redeem(tokens.refresh_token, ip_addr="192.168.1.9")

        assert session.ip_addr == "192.168.1.9"

    def test_concurrent_redeem_has_one_winner(self, ledger, store, user):
        _, tokens = ledger.open(user)
        results = []
        barrier = threading.Barrier(2)

        def _attempt():
            barrier.wait()
            try:
                ledger.redeem(tokens.refresh_token)
                results.append("ok")
            except AuthenticationError as exc:
                results.append(exc.message)

        threads = [threading.Thread(target=_attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == sorted(["ok", REUSE_MESSAGE])
        # the loser's theft response also revoked the winner's new session
        assert _active(store, user.id) == []


class TestRevoke:
    def test_revoke_one_checks_owner(self, ledger, store, user):
        session, _ = ledger.open(user)
        intruder = store.create_user("intruder@example.com", "Ivan Intruder", "digest")

        assert ledger.revoke_one(session.id, user_id=intruder.id) is False
        assert ledger.revoke_one(session.id, user_id=user.id) is True
        assert ledger.revoke_one(session.id, user_id=user.id) is False

    def test_revoked_token_cannot_refresh_after_logout(self, ledger, store, user):
        session, tokens = ledger.open(user)
        ledger.revoke_one(session.id, user_id=user.id)

        with pytest.raises(AuthenticationError, match="all sessions revoked"):
            ledger.redeem(tokens.refresh_token)

    def test_revoke_all_counts_only_active(self, ledger, store, user):
        expired, _ = ledger.open(user)
        store.sessions[expired.id] = replace(expired, expires_at=utcnow() - timedelta(seconds=1))
        ledger.open(user)
        ledger.open(user)

        assert ledger.revoke_all(user.id) == 2
        assert ledger.active_sessions(user.id) == []
