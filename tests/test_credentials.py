"""Tests for password verification and login stage selection."""

from datetime import timedelta

import pytest

from clinauth.service.credentials import (
    STAGE_AUTHENTICATED,
    STAGE_PENDING_2FA,
    CredentialVerifier,
)
from clinauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    MissingFieldsError,
)
from clinauth.storage.memory import MemoryStore

PASSWORD = "Correct-Horse-9"


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def verifier(store, events, clock):
    return CredentialVerifier(store, events, mfa_enabled=True, clock=clock)


@pytest.fixture
def alice(store, verifier):
    user = store.create_user("alice", "alice@example.org")
    verifier.set_password(user.id, PASSWORD)
    return user


def test_password_stored_as_argon2id(store, alice):
    credential = store.get_credential(alice.id)
    assert credential.password_algo == "argon2id"
    assert credential.password_hash.startswith("$argon2id$")
    assert PASSWORD not in credential.password_hash


def test_correct_password_with_second_factor(verifier, alice):
    check = verifier.verify("alice", PASSWORD)
    assert check.stage == STAGE_PENDING_2FA
    assert check.user_id == alice.id


def test_username_is_case_insensitive(verifier, alice):
    assert verifier.verify("  Alice ", PASSWORD).user_id == alice.id


def test_without_second_factor_goes_straight_to_session(store, verifier):
    user = store.create_user("bob", "bob@example.org", two_factor_enabled=False)
    verifier.set_password(user.id, PASSWORD)

    assert verifier.verify("bob", PASSWORD).stage == STAGE_AUTHENTICATED


def test_global_mfa_switch(store, events, alice):
    relaxed = CredentialVerifier(store, events, mfa_enabled=False)
    assert relaxed.verify("alice", PASSWORD).stage == STAGE_AUTHENTICATED


def test_missing_fields_reported_per_field(verifier):
    with pytest.raises(MissingFieldsError) as excinfo:
        verifier.verify("", None)

    assert set(excinfo.value.errors) == {"username", "password"}
    assert excinfo.value.status_code == 422


def test_wrong_password_and_unknown_user_share_message(verifier, alice, events):
    with pytest.raises(AuthenticationError) as wrong:
        verifier.verify("alice", "nope")
    with pytest.raises(AuthenticationError) as unknown:
        verifier.verify("mallory", "nope")

    assert wrong.value.message == unknown.value.message == "Invalid username or password"
    assert events.names().count("login_failed") == 2


def test_locked_account(store, verifier, alice, clock):
    store.set_account_lockout(alice.id, clock.now + timedelta(minutes=15))

    with pytest.raises(AccountLockedError) as excinfo:
        verifier.verify("alice", PASSWORD)
    assert excinfo.value.status_code == 401
    assert "locked_until" in excinfo.value.detail

    clock.advance(16 * 60)
    assert verifier.verify("alice", PASSWORD).user_id == alice.id


def test_locked_status_without_deadline(store, verifier, alice):
    store.set_account_lockout(alice.id, None, status="locked")
    with pytest.raises(AccountLockedError):
        verifier.verify("alice", PASSWORD)


def test_inactive_account_rejected_like_bad_credentials(store, verifier):
    user = store.create_user("carol", "carol@example.org", is_active=False)
    verifier.set_password(user.id, PASSWORD)

    with pytest.raises(AuthenticationError) as excinfo:
        verifier.verify("carol", PASSWORD)
    assert excinfo.value.message == "Invalid username or password"
