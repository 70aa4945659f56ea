from circulation import models
from circulation.endpoints import app
from circulation.config import AUTH_KEY
from circulation.database import Base, get_db

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    FastAPI's dependency injection will call this instead during tests.
    """
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """
    Fixture to set up and tear down the database for each test.

    Before yield: create all tables. After yield: drop them so every test
    starts from an empty library.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


def _headers(user_id, role):
    return {"X-API-Key": AUTH_KEY, "X-User-Id": str(user_id), "X-User-Role": role}


@pytest.fixture
def staff_headers():
    return _headers(1000, "ADMIN")


@pytest.fixture
def superadmin_headers():
    return _headers(1001, "SUPERADMIN")


@pytest.fixture
def member_headers():
    """Headers for a MEMBER caller; call with the member's id."""
    return lambda member_id: _headers(member_id, "MEMBER")


@pytest.fixture
def make_policy(db):
    """
    Create the policy row directly in the database.

    Defaults follow the reference scenario: 5 concurrent borrows, 2 renewals,
    14 day loans and a 7 day re-borrow cool-down.
    """

    def create(**overrides):
        values = {
            "max_borrow_limit": 5,
            "max_renewal_limit": 2,
            "expiry_date_days": 14,
            "consecutive_borrow_limit_days": 7,
            "categories": ["FICTION", "SCIENCE"],
        }
        values.update(overrides)
        policy = models.Policy(id=1, **values)
        db.add(policy)
        db.commit()
        return policy

    return create


@pytest.fixture
def make_member(db):
    counter = {"n": 0}

    def create(role=models.Role.MEMBER, name=None):
        counter["n"] += 1
        member = models.Member(
            name=name or f"Member {counter['n']}",
            username=f"member{counter['n']}",
            email=f"member{counter['n']}@example.com",
            role=role,
        )
        db.add(member)
        db.commit()
        return member.id

    return create


@pytest.fixture
def make_copies(db):
    """Create `count` copies of one title and return their ids."""
    counter = {"n": 0}

    def create(count=1, name=None, category="FICTION", available=True):
        counter["n"] += 1
        copies = [
            models.Copy(
                book_code=f"code-{counter['n']}",
                name=name or f"Title {counter['n']}",
                authors=["Some Author"],
                publisher="Some Publisher",
                published_year=2001,
                pages=320,
                cost=500,
                category=category,
                available=available,
            )
            for _ in range(count)
        ]
        db.add_all(copies)
        db.commit()
        return [copy.id for copy in copies]

    return create
