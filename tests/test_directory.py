import sqlite3

import pytest

from vpnsync.directory import Directory, eligibility_problem
from vpnsync.errors import DirectoryUnavailable, ValidationError


def test_create_and_read_users(directory):
    alice = directory.create_user(
        " Alice@Example.com ", "Alice", username="alice", email_verified=True, role="admin"
    )

    loaded = directory.get_by_id(alice.id)

    assert loaded == alice
    assert loaded.email == "alice@example.com"
    assert loaded.is_admin is True
    assert eligibility_problem(loaded) is None


def test_list_eligible_users_filters_unverified_and_anonymous(directory):
    directory.create_user("alice@example.com", "Alice", username="alice", email_verified=True)
    directory.create_user("bob@example.com", "Bob", username="bob")
    directory.create_user("carol@example.com", "Carol", email_verified=True)

    assert [user.username for user in directory.list_users()] == ["alice", "bob", None]
    assert [user.username for user in directory.list_eligible_users()] == ["alice"]


def test_duplicate_email_or_username_is_rejected(directory):
    directory.create_user("alice@example.com", "Alice", username="alice")

    with pytest.raises(ValidationError):
        directory.create_user("ALICE@example.com", "Other")
    with pytest.raises(ValidationError):
        directory.create_user("other@example.com", "Other", username="alice")


def test_username_and_verification_updates(directory):
    carol = directory.create_user("carol@example.com", "Carol")
    directory.create_user("alice@example.com", "Alice", username="alice")

    assert eligibility_problem(carol) == "no-username"
    updated = directory.set_username(carol.id, "carol")
    assert updated.username == "carol"
    assert eligibility_problem(updated) == "not-verified"
    assert eligibility_problem(directory.mark_email_verified(carol.id)) is None

    with pytest.raises(ValidationError):
        directory.set_username(carol.id, "alice")
    assert directory.set_username(999, "nobody") is None
    assert directory.mark_email_verified(999) is None


def test_passwords_are_hashed(directory, tmp_path):
    user = directory.create_user("alice@example.com", "Alice", password="first-password")

    assert directory.verify_password(user.id, "first-password") is True
    assert directory.set_password(user.id, "second-password") is True
    assert directory.verify_password(user.id, "first-password") is False
    assert directory.verify_password(user.id, "second-password") is True

    with sqlite3.connect(tmp_path / "directory.sqlite3") as conn:
        stored = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user.id,)).fetchone()[0]
    assert "second-password" not in stored
    assert stored.startswith("$pbkdf2-sha256$")


def test_soft_deleted_users_disappear(directory):
    user = directory.create_user("alice@example.com", "Alice", username="alice", email_verified=True)

    assert directory.soft_delete(user.id) is True
    assert directory.soft_delete(user.id) is False
    assert directory.get_by_id(user.id) is None
    assert directory.list_users() == []


def test_missing_table_surfaces_as_directory_unavailable(tmp_path):
    uninitialised = Directory(tmp_path / "empty.sqlite3")

    with pytest.raises(DirectoryUnavailable):
        uninitialised.list_users()
