"""Shared pytest fixtures for the reconciliation tests."""

from collections.abc import Callable, Iterator

import pytest

from db_models import Contact, LinkPrecedence
from db_setup import ContactStore
from reconciliation import ContactReconciler


@pytest.fixture
def store(tmp_path) -> ContactStore:
    """A fresh sqlite-backed store per test."""
    contact_store = ContactStore(str(tmp_path / "contacts.db"), timeout=1.0)
    contact_store.init_schema()
    return contact_store


@pytest.fixture
def reconciler(store: ContactStore) -> ContactReconciler:
    return ContactReconciler(store)


MakeContact = Callable[..., Contact]


@pytest.fixture
def make_contact(store: ContactStore) -> MakeContact:
    """Factory fixture inserting a contact directly, bypassing reconciliation."""

    def _make(
        *,
        email: str | None = None,
        phone: str | None = None,
        linked_id: int | None = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    ) -> Contact:
        with store.transaction() as repo:
            return repo.create(email, phone, linked_id=linked_id, precedence=precedence)

    return _make


@pytest.fixture
def all_contacts(store: ContactStore) -> Callable[[], list[Contact]]:
    """Every row in the table, soft-deleted ones included, in id order."""

    def _all() -> list[Contact]:
        with store.transaction() as repo:
            rows = repo.conn.execute("SELECT * FROM Contact ORDER BY id").fetchall()
        return [Contact(**dict(row)) for row in rows]

    return _all


@pytest.fixture
def soft_delete(store: ContactStore) -> Callable[[int], None]:
    def _delete(contact_id: int) -> None:
        with store.transaction() as repo:
            repo.conn.execute(
                "UPDATE Contact SET deletedAt = createdAt WHERE id = ?", (contact_id,)
            )

    return _delete


@pytest.fixture
def client_store(tmp_path, monkeypatch) -> Iterator[str]:
    """Points application settings at a throwaway database file."""
    from config import settings

    path = str(tmp_path / "api.db")
    monkeypatch.setattr(settings, "database_path", path)
    yield path
