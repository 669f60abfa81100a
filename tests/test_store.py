"""Unit tests for auth/store.py -- account and session persistence.

Covers:
- insert/find round trip by id, email and display name
- exists_by_email / exists_by_display_name
- UNIQUE constraints on email and display name raise IntegrityError
- update() writes mutable fields and reports unknown ids
- upsert_session() creates, then replaces the single session per account
- delete_session() is idempotent
- transaction() rolls back every write when the block raises
"""

import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Account, AccountStatus, SessionRecord
from auth.store import AccountStore


@pytest.fixture
def store():
    s = AccountStore(f"sqlite:///file:test_store_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


def _account(email="alice@example.com", display_name="alice") -> Account:
    return Account(
        email=email,
        display_name=display_name,
        password_hash="$2b$04$" + "x" * 53,
        password_salt="0" * 32,
        country="NZ",
        gender=2,
    )


def test_insert_and_find(store):
    with store.transaction() as repo:
        account_id = repo.insert(_account())
    with store.transaction() as repo:
        by_id = repo.find_by_id(account_id)
        by_email = repo.find_by_email("alice@example.com")
        by_name = repo.find_by_display_name("alice")
    assert by_id == by_email == by_name
    assert by_id.id == account_id
    assert by_id.country == "NZ"
    assert by_id.gender == 2
    assert by_id.status == AccountStatus.ACTIVE
    assert by_id.created_at is not None


def test_lookups_are_exact_match(store):
    with store.transaction() as repo:
        repo.insert(_account())
        assert repo.find_by_email("ALICE@example.com") is None
        assert repo.find_by_display_name("Alice") is None
        assert repo.find_by_id(9999) is None


def test_exists(store):
    with store.transaction() as repo:
        repo.insert(_account())
        assert repo.exists_by_email("alice@example.com")
        assert repo.exists_by_display_name("alice")
        assert not repo.exists_by_email("bob@example.com")
        assert not repo.exists_by_display_name("bob")


@pytest.mark.parametrize(
    "email, display_name",
    [("alice@example.com", "someone-else"), ("other@example.com", "alice")],
)
def test_unique_constraints(store, email, display_name):
    with store.transaction() as repo:
        repo.insert(_account())
    with pytest.raises(IntegrityError):
        with store.transaction() as repo:
            repo.insert(_account(email=email, display_name=display_name))


def test_update(store):
    with store.transaction() as repo:
        account_id = repo.insert(_account())
        account = repo.find_by_id(account_id)
        account.password_salt = "f" * 32
        account.status = AccountStatus.INACTIVE
        assert repo.update(account) is True
    with store.transaction() as repo:
        reloaded = repo.find_by_id(account_id)
    assert reloaded.password_salt == "f" * 32
    assert not reloaded.is_active


def test_update_unknown_id(store):
    account = _account()
    account.id = 424242
    with store.transaction() as repo:
        assert repo.update(account) is False


def test_upsert_session_replaces_wholesale(store):
    with store.transaction() as repo:
        repo.upsert_session(SessionRecord(account_id=5, secret="first", expires_at="2030-01-01T00:00:00+00:00"))
    with store.transaction() as repo:
        first = repo.find_session(5)
        repo.upsert_session(SessionRecord(account_id=5, secret="second", expires_at="2031-01-01T00:00:00+00:00"))
    with store.transaction() as repo:
        second = repo.find_session(5)
    assert first.secret == "first"
    assert second.secret == "second"
    assert second.expires_at == "2031-01-01T00:00:00+00:00"
    assert second.id == first.id


def test_delete_session_idempotent(store):
    with store.transaction() as repo:
        repo.upsert_session(SessionRecord(account_id=5, secret="s", expires_at="2030-01-01T00:00:00+00:00"))
        assert repo.delete_session(5) is True
        assert repo.delete_session(5) is False
        assert repo.find_session(5) is None


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as repo:
            account_id = repo.insert(_account())
            repo.upsert_session(SessionRecord(account_id=account_id, secret="s", expires_at="2030-01-01T00:00:00+00:00"))
            raise RuntimeError("boom")
    with store.transaction() as repo:
        assert repo.find_by_email("alice@example.com") is None
        assert repo.find_session(account_id) is None


def test_ping(store):
    assert store.ping() is True
