"""
tests/test_credential_store.py -- CredentialStore repository tests.

Uses the `store` fixture from conftest.py (isolated shared-memory SQLite,
seeded with ALICE as subject 1).
"""

from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

ALICE = "alice@example.com"


def test_find_by_identifier(store):
    credential = store.find_credential_by_identifier(ALICE)
    assert credential.id == 1
    assert credential.identifier == ALICE
    assert credential.password_hash.startswith("$2")
    assert credential.is_active is True
    datetime.fromisoformat(credential.created_at)


def test_identifier_lookup_is_exact(store):
    assert store.find_credential_by_identifier(ALICE.upper()) is None
    assert store.find_credential_by_identifier("nobody") is None


def test_create_returns_new_id(store):
    subject_id = store.create_subject("bob", "$2b$12$" + "a" * 53)
    assert subject_id == 2
    assert store.get_by_id(subject_id).identifier == "bob"
    assert store.count() == 2


def test_duplicate_identifier_raises(store):
    with pytest.raises(IntegrityError):
        store.create_subject(ALICE, "$2b$12$" + "b" * 53)
    assert store.count() == 1


def test_get_by_id_missing(store):
    assert store.get_by_id(999) is None


def test_update_password(store):
    new_hash = "$2b$12$" + "c" * 53
    assert store.update_password(1, new_hash) is True
    assert store.get_by_id(1).password_hash == new_hash


def test_update_password_unknown_subject(store):
    assert store.update_password(999, "$2b$12$" + "c" * 53) is False


def test_create_inactive_subject(store):
    subject_id = store.create_subject("carol@example.com", "$2b$12$" + "d" * 53, is_active=False)
    assert store.get_by_id(subject_id).is_active is False
    assert store.get_by_id(1).is_active is True
