# =============================================================================
# tests/conftest.py - Pytest Configuration
# =============================================================================
# Fixtures shared by all tests:
# - an in-memory Store backed by mongomock
# - fake identity verifier and media uploader
# - a TestClient wired to a ServiceContext built from the fakes
# =============================================================================

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Principal
from context import ServiceContext
from database import Store
from errors import ForbiddenError
from main import create_app


class FakeVerifier:
    """Accepts tokens of the form ``token:<email>``."""

    def verify(self, token: str) -> Principal:
        if not token.startswith("token:"):
            raise ForbiddenError("Invalid token")
        email = token.split(":", 1)[1]
        return Principal(email=email, uid=f"uid-{email}", claims={"email": email})


class FakeMedia:
    def __init__(self):
        self.uploads = []

    def upload(self, filename, content, content_type=None):
        self.uploads.append((filename, content, content_type))
        return {"secure_url": f"https://media.test/{filename}", "public_id": f"apporbit/{filename}"}


def auth(email: str) -> dict:
    return {"Authorization": f"Bearer token:{email}"}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    s = Store(mongomock.MongoClient()["apporbit_test"])
    s.ensure_indexes()
    return s


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def client(store, media):
    context = ServiceContext(store=store, verifier=FakeVerifier(), media=media)
    app = create_app(context=context, cors_origins=[])
    with TestClient(app) as c:
        yield c


@pytest.fixture
def base_time():
    return datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_app(store, base_time):
    """Insert an application owned by ``owner`` and return its id string."""
    counter = {"n": 0}

    def _make(owner="a@x.com", tags=None, status="pending", voters=None, featured=False, name=None):
        counter["n"] += 1
        voters = voters or []
        doc = {
            "name": name or f"App {counter['n']}",
            "title": "A useful app",
            "website": "https://app.example.org",
            "description": "Does things",
            "tags": tags or [],
            "image": None,
            "owner": {"name": "Owner", "email": owner, "image": None},
            "upvotes": len(voters),
            "voters": list(voters),
            "status": status,
            "isFeatured": featured,
            "createdAt": base_time + timedelta(minutes=counter["n"]),
        }
        return str(store.apps.insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_user(store, base_time):
    def _make(email, role="user"):
        res = store.users.insert_one({
            "email": email,
            "role": role,
            "created_at": base_time,
            "last_loggedIn": base_time,
        })
        return str(res.inserted_id)

    return _make
