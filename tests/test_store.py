"""Unit tests for auth/store.py -- standard and guest user persistence.

Covers:
- upsert() creates an account with the default role on first login
- upsert() with an unchanged profile writes nothing (updated_at stays put)
- upsert() with a changed profile refreshes it and keeps the roles
- set_roles() replaces primary and other roles in order; False for unknown ids
- guest ids are allocated and looked up
- SQLAlchemy failures surface as PersistenceError
- Concurrent first logins for one ORCID iD create exactly one account
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.models import GuestId, OrcidProfile, StandardId, StandardRole, StandardRoleKind
from auth.store import PersistenceError, UserStore

JANE = OrcidProfile("0000-0001-2345-6789", credit_name="Jane Doe")
ADMIN = StandardRole(StandardRoleKind.ADMIN)


def test_first_upsert_creates_account_with_default_role(store):
    record = store.upsert(JANE, default_role=StandardRole(StandardRoleKind.STANDARD, "gemini-north"))
    assert record.profile == JANE
    assert record.role == StandardRole(StandardRoleKind.STANDARD, "gemini-north")
    assert record.other_roles == ()
    assert store.find_by_external_id(JANE.orcid_id) == record
    assert store.get_standard(record.id) == record


def test_upsert_unchanged_profile_is_idempotent(store):
    first = store.upsert(JANE)
    second = store.upsert(JANE)
    assert second.id == first.id
    assert second.updated_at == first.updated_at
    assert second == first


def test_upsert_refreshes_changed_profile_and_keeps_roles(store):
    first = store.upsert(JANE)
    store.set_roles(first.id, ADMIN, [StandardRole()])
    renamed = OrcidProfile(JANE.orcid_id, credit_name="Dr Jane Doe", primary_email="jane@example.org")
    second = store.upsert(renamed)
    assert second.id == first.id
    assert second.profile == renamed
    assert second.role == ADMIN
    assert second.other_roles == (StandardRole(),)
    assert second.created_at == first.created_at


def test_distinct_orcid_ids_get_distinct_accounts(store):
    a = store.upsert(JANE)
    b = store.upsert(OrcidProfile("0000-0002-1825-0097", given_name="Bob"))
    assert a.id != b.id


def test_set_roles_replaces_roles_in_order(store):
    record = store.upsert(JANE)
    scoped = StandardRole(StandardRoleKind.STANDARD, "gemini-south")
    assert store.set_roles(record.id, ADMIN, [scoped, StandardRole()]) is True
    assert store.get_standard(record.id).other_roles == (scoped, StandardRole())
    assert store.set_roles(record.id, StandardRole(), []) is True
    updated = store.get_standard(record.id)
    assert updated.role == StandardRole()
    assert updated.other_roles == ()


def test_set_roles_unknown_user(store):
    assert store.set_roles(StandardId(999), ADMIN, []) is False


def test_lookups_for_missing_users(store):
    assert store.find_by_external_id("0000-0003-0000-0000") is None
    assert store.get_standard(StandardId(42)) is None
    assert store.guest_exists(GuestId(42)) is False


def test_guests(store):
    a = store.create_guest()
    b = store.create_guest()
    assert isinstance(a, GuestId)
    assert a != b
    assert store.guest_exists(a)
    assert store.guest_exists(b)


def test_ping(store):
    assert store.ping() is True


def test_database_failure_is_persistence_error(store):
    with patch.object(store, "_upsert_once", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))):
        with pytest.raises(PersistenceError):
            store.upsert(JANE)


def test_integrity_error_on_insert_retries_as_lookup(store, caplog):
    real_upsert_once = store._upsert_once
    calls = []

    def lose_the_race(profile, default_role):
        calls.append(profile)
        if len(calls) == 1:
            # Another login commits the row between our SELECT and INSERT.
            real_upsert_once(profile, default_role)
            raise IntegrityError("INSERT INTO standard_users", {}, Exception("UNIQUE constraint failed"))
        return real_upsert_once(profile, default_role)

    with caplog.at_level(logging.INFO, logger="sso.auth.store"):
        with patch.object(store, "_upsert_once", side_effect=lose_the_race):
            record = store.upsert(JANE)

    assert len(calls) == 2
    assert record.profile == JANE
    assert "retrying as lookup" in caplog.text
    assert _count_standard_users(store) == 1


def test_concurrent_first_logins_create_one_account(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'sso.db'}"
    workers = 8
    stores = [UserStore(db_url) for _ in range(workers)]
    barrier = threading.Barrier(workers)

    def first_login(s: UserStore) -> StandardId:
        barrier.wait()
        return s.upsert(JANE).id

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            ids = list(pool.map(first_login, stores))
        assert len(set(ids)) == 1
        assert _count_standard_users(stores[0]) == 1
    finally:
        for s in stores:
            s.close()


def _count_standard_users(s: UserStore) -> int:
    with s.engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM standard_users")).scalar_one()
