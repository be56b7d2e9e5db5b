import os

# Cheap hashes and no database for the whole test session.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("STORAGE_BACKEND", "memory")

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from circulation.ledger import InventoryLedger
from circulation.loans import LoanService
from circulation.models import Book, Role, User
from circulation.policy import DEFAULT_POLICY
from library_api.auth import hash_password
from library_api.main import app
from library_api.memory import MemoryRepository

PATRON_EMAIL = "reader@example.com"
ADMIN_EMAIL = "admin@example.com"
PASSWORD = "secret123"


@pytest.fixture(scope="function")
def repository():
    return MemoryRepository()


@pytest.fixture(scope="function")
def ledger(repository):
    return InventoryLedger(repository)


@pytest.fixture(scope="function")
def loan_service(repository, ledger):
    return LoanService(repository, ledger=ledger, policy=DEFAULT_POLICY)


@pytest.fixture(scope="function")
def make_book(repository):
    """Store a book directly in the in-memory repository."""

    def _make_book(**fields) -> Book:
        fields.setdefault("title", "Test Book")
        fields.setdefault("author", "Test Author")
        fields.setdefault("genre", "Fiction")
        book = Book(id=str(ObjectId()), **fields)
        repository.books[book.id] = book
        return book

    return _make_book


@pytest.fixture(scope="function")
def make_user(repository):
    def _make_user(email: str, role: Role = Role.USER, password: str = PASSWORD) -> User:
        user = User(
            id=str(ObjectId()),
            name=email.split("@")[0].title(),
            email=email,
            password_hash=hash_password(password),
            role=role,
        )
        repository.users[user.id] = user
        return user

    return _make_user


@pytest.fixture(scope="function")
def patron(make_user):
    return make_user(PATRON_EMAIL)


@pytest.fixture(scope="function")
def admin(make_user):
    return make_user(ADMIN_EMAIL, role=Role.ADMIN)


@pytest.fixture(scope="function")
def patron_auth(patron):
    return (PATRON_EMAIL, PASSWORD)


@pytest.fixture(scope="function")
def admin_auth(admin):
    return (ADMIN_EMAIL, PASSWORD)


@pytest.fixture(scope="function")
def client(repository):
    app.state.testing = True
    app.state.repository = repository
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    del app.state.repository
