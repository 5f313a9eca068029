from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterator

import pytest

from authcore.auth.errors import ConflictError, NotFoundError, ReplayDetectedError
from authcore.auth.models import PasskeyStatus
from authcore.auth.repository import CredentialStore
from authcore.core.security import hash_password
from authcore.core.state_db import StateDatabase
from tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[CredentialStore]:
    db = StateDatabase(tmp_path / "state.db")
    yield CredentialStore(db, clock=clock)
    db.close()


def _add_passkey(store: CredentialStore, user_id: str, credential_id: str = "cred-1", sign_count: int = 5):
    return store.add_passkey_credential(
        user_id=user_id,
        credential_id=credential_id,
        public_key="pk",
        algorithm=-7,
        sign_count=sign_count,
        transports=["internal"],
    )


def test_credential_store_create_and_get_user_case_insensitive(store: CredentialStore) -> None:
    user = store.create_user("User@Test.Local", hash_password("secret-pass"))
    found = store.get_user_by_email("user@test.local")

    assert store.backend == "sqlite"
    assert found is not None
    assert found.user_id == user.user_id
    assert found.email == "user@test.local"


def test_credential_store_rejects_duplicate_email(store: CredentialStore) -> None:
    store.create_user("a@example.com")

    with pytest.raises(ConflictError):
        store.create_user("A@example.com")


def test_credential_store_verify_password(store: CredentialStore) -> None:
    user = store.create_user("a@example.com", hash_password("correct horse"))
    no_password = store.create_user("b@example.com")

    assert store.verify_password(user, "correct horse")
    assert not store.verify_password(user, "wrong horse")
    assert not store.verify_password(no_password, "anything")
    assert not store.verify_password(None, "anything")


def test_credential_store_update_user_fields(store: CredentialStore, clock: FakeClock) -> None:
    user = store.create_user("a@example.com")
    clock.advance(5)

    updated = store.update_user(user.user_id, email_verified=True, last_login_method="email")

    assert updated.email_verified is True
    assert updated.last_login_method == "email"
    assert updated.updated_at == user.updated_at + 5


def test_credential_store_update_rejects_unknown_fields_and_users(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")

    with pytest.raises(ValueError):
        store.update_user(user.user_id, email="other@example.com")
    with pytest.raises(NotFoundError):
        store.update_user("missing", name="x")


def test_credential_store_phone_is_unique(store: CredentialStore) -> None:
    store.create_user("a@example.com", phone="+15551234567")
    other = store.create_user("b@example.com")

    with pytest.raises(ConflictError):
        store.update_user(other.user_id, phone="+15551234567")
    found = store.get_user_by_phone("+15551234567")

    assert found is not None
    assert found.email == "a@example.com"


def test_credential_store_soft_delete_frees_email(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")

    store.soft_delete_user(user.user_id)
    recreated = store.create_user("a@example.com")

    assert store.get_user(user.user_id) is None
    assert recreated.user_id != user.user_id


def test_credential_store_links_provider_accounts(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")

    store.link_account(user.user_id, "github", "42")
    with pytest.raises(ConflictError):
        store.link_account(user.user_id, "github", "42")

    assert store.find_account("github", "42") == user.user_id
    assert store.find_account("github", "43") is None


def test_credential_store_sign_counter_must_increase(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")
    _add_passkey(store, user.user_id, sign_count=5)

    with pytest.raises(ReplayDetectedError):
        store.update_sign_counter("cred-1", 5)
    with pytest.raises(ReplayDetectedError):
        store.update_sign_counter("cred-1", 3)
    store.update_sign_counter("cred-1", 6)
    stored = store.find_passkey_by_credential_id("cred-1")

    assert stored is not None
    assert stored.sign_count == 6
    assert stored.last_used_at is not None


def test_credential_store_duplicate_credential_id_conflicts(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")
    _add_passkey(store, user.user_id)

    with pytest.raises(ConflictError):
        _add_passkey(store, user.user_id)


def test_credential_store_revoked_passkey_cannot_advance_counter(store: CredentialStore) -> None:
    user = store.create_user("a@example.com")
    passkey = _add_passkey(store, user.user_id)

    store.revoke_passkey(user.user_id, passkey.passkey_id)
    with pytest.raises(NotFoundError):
        store.update_sign_counter("cred-1", 10)
    with pytest.raises(NotFoundError):
        store.revoke_passkey("someone-else", passkey.passkey_id)

    assert store.list_passkeys(user.user_id) == []
    revoked = store.list_passkeys(user.user_id, include_revoked=True)
    assert [item.status for item in revoked] == [PasskeyStatus.REVOKED]
    assert revoked[0].transports == ["internal"]


def test_credential_store_revokes_inactive_passkeys(
    store: CredentialStore, clock: FakeClock
) -> None:
    user = store.create_user("a@example.com")
    _add_passkey(store, user.user_id, "old")
    clock.advance(1000)
    _add_passkey(store, user.user_id, "fresh")

    revoked = store.revoke_inactive_passkeys(idle_before=clock.now - 500)

    assert revoked == 1
    assert [item.credential_id for item in store.list_passkeys(user.user_id)] == ["fresh"]


def test_concurrent_sign_counter_updates_accept_exactly_one(
    tmp_path: Path, store: CredentialStore, clock: FakeClock
) -> None:
    other_db = StateDatabase(tmp_path / "state.db")
    stores = [store, CredentialStore(other_db, clock=clock)]
    user = store.create_user("a@example.com")
    _add_passkey(store, user.user_id, sign_count=5)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def attempt(target: CredentialStore) -> None:
        barrier.wait()
        try:
            target.update_sign_counter("cred-1", 6)
            result = "ok"
        except ReplayDetectedError:
            result = "ReplayDetectedError"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(target,)) for target in stores]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    stored = store.find_passkey_by_credential_id("cred-1")
    other_db.close()

    assert sorted(outcomes) == ["ReplayDetectedError", "ok"]
    assert stored is not None
    assert stored.sign_count == 6
