import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from library_lending.core.database import make_engine, init_db, get_db
from library_lending.main import create_app
from library_lending.models.models import MemberRole
from library_lending.services.catalog import CatalogService
from library_lending.services.members import MemberService


@pytest.fixture
def engine(tmp_path):
    # one database file per test; in-memory SQLite cannot be shared across threads
    engine = make_engine(f"sqlite:///{tmp_path / 'lending.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    app = create_app(create_tables=False)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def make_member(session_factory):
    """Register a member in its own short-lived session and return id and token."""
    def _make(full_name="Alice Reader", email=None, role=MemberRole.MEMBER):
        with session_factory() as session:
            member = MemberService(session).register(
                full_name, email or f"{uuid.uuid4().hex[:10]}@example.com", role)
            return {"id": member.id, "token": member.api_token}
    return _make


@pytest.fixture
def make_book(session_factory):
    def _make(title="Dune", author="Frank Herbert", total_copies=3, **extra):
        with session_factory() as session:
            book = CatalogService(session).create_book(
                dict(title=title, author=author, total_copies=total_copies, **extra))
            return book.id
    return _make


@pytest.fixture
def admin(make_member):
    return make_member("Library Admin", "admin@example.com", MemberRole.ADMIN)


@pytest.fixture
def member(make_member):
    return make_member("Alice Reader", "alice@example.com")