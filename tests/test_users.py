"""
Unit tests for the credential store.

Covers registration validation, authentication, hash storage and
concurrent registration of the same username.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from gbbsd import (
    CredentialStore,
    InvalidPassword,
    InvalidUsername,
    StoreError,
    UserExists,
    hash_password,
    verify_password,
)


def test_register_then_authenticate(users):
    users.create_user("alice", "password1")

    assert users.authenticate("alice", "password1") is True
    assert users.authenticate("alice", "password2") is False


def test_unknown_user_does_not_authenticate(users):
    assert users.authenticate("nobody", "password1") is False


def test_password_is_stored_hashed(users):
    users.create_user("alice", "password1")

    row = users.get_user("alice")
    assert row["password"] != "password1"
    assert row["password"].startswith("$2")
    assert verify_password("password1", row["password"])


@pytest.mark.parametrize("name", ["ab", "a" * 21, "", "bad\x07name"])
def test_invalid_usernames_rejected(users, name):
    with pytest.raises(InvalidUsername):
        users.create_user(name, "password1")
    assert users.get_user(name) is None


@pytest.mark.parametrize("name", ["abc", "a" * 20])
def test_username_length_boundaries_accepted(users, name):
    users.create_user(name, "password1")
    assert users.authenticate(name, "password1")


def test_short_password_rejected(users):
    with pytest.raises(InvalidPassword):
        users.create_user("alice", "short")


def test_password_over_bcrypt_limit_rejected(users):
    with pytest.raises(InvalidPassword):
        users.create_user("alice", "x" * 73)


def test_password_at_bcrypt_limit_accepted(users):
    users.create_user("alice", "x" * 72)
    assert users.authenticate("alice", "x" * 72)


def test_duplicate_username_rejected(users):
    users.create_user("alice", "password1")

    with pytest.raises(UserExists):
        users.create_user("alice", "different1")
    # The first account is untouched
    assert users.authenticate("alice", "password1")


def test_concurrent_registration_has_one_winner(users):
    def attempt():
        try:
            users.create_user("racer", "password1")
            return "created"
        except UserExists:
            return "exists"

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: attempt(), range(8)))

    assert results.count("created") == 1
    assert results.count("exists") == 7


def test_accounts_survive_reopen(tmp_path):
    path = str(tmp_path / "bbs.db")
    store = CredentialStore(path, rounds=4)
    store.create_user("alice", "password1")
    store.close()

    reopened = CredentialStore(path, rounds=4)
    try:
        assert reopened.authenticate("alice", "password1")
    finally:
        reopened.close()


def test_unusable_database_path_raises_store_error(tmp_path):
    with pytest.raises(StoreError):
        CredentialStore(str(tmp_path / "missing" / "dir" / "bbs.db"), rounds=4)


def test_verify_password_rejects_malformed_hash():
    assert verify_password("password1", "not-a-bcrypt-hash") is False
    assert verify_password("password1", hash_password("password1", rounds=4)) is True
