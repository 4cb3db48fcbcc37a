# =============================================================================
# tests/test_api.py - HTTP Surface
# =============================================================================
# Exercises routing, the auth header contract, the role gate and the JSON
# error shape through FastAPI's TestClient.
# =============================================================================

from datetime import datetime, timedelta, timezone

import mongomock
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from context import ServiceContext
from database import Store
from main import create_app
from tests.conftest import FakeMedia, FakeVerifier, auth


# =============================================================================
# Auth header contract
# =============================================================================

class TestAuthContract:

    def test_missing_header_is_401(self, client, make_app):
        app_id = make_app()
        res = client.patch(f"/apps/upvote/{app_id}")
        assert res.status_code == 401
        assert "message" in res.json()

    def test_malformed_header_is_401(self, client, make_app):
        app_id = make_app()
        res = client.patch(f"/apps/upvote/{app_id}", headers={"Authorization": "Token abc"})
        assert res.status_code == 401

    def test_bad_token_is_403(self, client, make_app):
        app_id = make_app()
        res = client.patch(f"/apps/upvote/{app_id}", headers={"Authorization": "Bearer garbage"})
        assert res.status_code == 403
        assert res.json()["message"] == "Invalid token"


# =============================================================================
# Applications and voting
# =============================================================================

class TestApplications:

    def test_add_app_forces_owner_to_caller(self, client, store):
        res = client.post(
            "/add-apps",
            json={
                "name": "Notely",
                "tags": ["notes", "notes", "Productivity"],
                "owner": {"name": "Someone", "email": "other@x.com"},
            },
            headers=auth("a@x.com"),
        )

        assert res.status_code == 201
        body = res.json()
        assert body["owner"]["email"] == "a@x.com"
        assert body["owner"]["name"] == "Someone"
        assert body["tags"] == ["notes", "Productivity"]
        assert body["status"] == "pending"
        assert body["upvotes"] == 0
        assert body["voters"] == []
        assert store.apps.count_documents({}) == 1

    def test_details_and_not_found(self, client, make_app):
        app_id = make_app()
        assert client.get(f"/appsDetails/{app_id}").json()["id"] == app_id

        res = client.get(f"/appsDetails/{ObjectId()}")
        assert res.status_code == 404
        assert res.json()["message"] == "Application not found"

    def test_invalid_id_is_400(self, client):
        res = client.get("/appsDetails/nope")
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid id"

    def test_upvote_flow(self, client, make_app):
        app_id = make_app(owner="a@x.com")

        res = client.patch(f"/apps/upvote/{app_id}", headers=auth("b@x.com"))
        assert res.status_code == 200
        assert res.json()["upvotes"] == 1

        res = client.patch(f"/apps/upvote/{app_id}", headers=auth("b@x.com"))
        assert res.status_code == 409

        res = client.patch(f"/apps/upvote/{app_id}", headers=auth("a@x.com"))
        assert res.status_code == 403

        res = client.patch(f"/apps/undo-upvote/{app_id}", headers=auth("b@x.com"))
        assert res.status_code == 200
        assert res.json()["voters"] == []

        res = client.patch(f"/apps/undo-upvote/{app_id}", headers=auth("b@x.com"))
        assert res.status_code == 409

    def test_owner_listing_requires_matching_email(self, client, make_app):
        make_app(owner="a@x.com")
        make_app(owner="b@x.com")

        res = client.get("/apps/user", params={"email": "a@x.com"}, headers=auth("a@x.com"))
        assert res.status_code == 200
        assert res.json()["total"] == 1

        res = client.get("/apps/user", params={"email": "a@x.com"}, headers=auth("b@x.com"))
        assert res.status_code == 403

    def test_paginated_listing(self, client, make_app):
        make_app(tags=["AI"])
        make_app(tags=["games"])

        body = client.get("/apps/paginated", params={"search": "ai", "limit": 5}).json()

        assert body["total"] == 1
        assert body["limit"] == 5

    def test_update_ignores_vote_fields(self, client, make_app, store):
        app_id = make_app(voters=["b@x.com"])

        res = client.patch(
            f"/apps/{app_id}",
            json={"title": "New title", "upvotes": 99, "voters": []},
            headers=auth("a@x.com"),
        )

        assert res.status_code == 200
        doc = store.apps.find_one({"_id": ObjectId(app_id)})
        assert doc["title"] == "New title"
        assert doc["upvotes"] == 1
        assert doc["voters"] == ["b@x.com"]

    def test_moderation_requires_moderator(self, client, make_app, make_user):
        app_id = make_app()
        make_user("user@x.com")
        make_user("mod@x.com", role="moderator")

        res = client.patch(f"/apps/status/{app_id}", json={"status": "approved"}, headers=auth("user@x.com"))
        assert res.status_code == 403

        res = client.patch(f"/apps/status/{app_id}", json={"status": "approved"}, headers=auth("mod@x.com"))
        assert res.status_code == 200
        assert res.json()["status"] == "approved"

        res = client.patch(f"/apps/feature/{app_id}", headers=auth("mod@x.com"))
        assert res.json()["isFeatured"] is True

    def test_admin_passes_moderator_gate(self, client, make_app, make_user):
        app_id = make_app()
        make_user("admin@x.com", role="admin")

        res = client.patch(f"/apps/status/{app_id}", json={"status": "rejected"}, headers=auth("admin@x.com"))

        assert res.status_code == 200

    def test_unknown_user_fails_role_gate(self, client, make_app):
        app_id = make_app()
        res = client.patch(f"/apps/status/{app_id}", json={"status": "approved"}, headers=auth("ghost@x.com"))
        assert res.status_code == 403

    def test_delete_by_owner_or_moderator_only(self, client, make_app, make_user, store):
        first, second = make_app(owner="a@x.com"), make_app(owner="a@x.com")
        make_user("mod@x.com", role="moderator")

        assert client.delete(f"/apps/{first}", headers=auth("b@x.com")).status_code == 403
        assert client.delete(f"/apps/{first}", headers=auth("a@x.com")).status_code == 200
        assert client.delete(f"/apps/{second}", headers=auth("mod@x.com")).status_code == 200
        assert client.delete(f"/apps/{second}", headers=auth("mod@x.com")).status_code == 404
        assert store.apps.count_documents({}) == 0


# =============================================================================
# Reviews and reports
# =============================================================================

class TestReviewsAndReports:

    def test_review_roundtrip(self, client, make_app):
        app_id = make_app()

        res = client.post("/reviews", json={"productId": app_id, "body": "Great", "rating": 5}, headers=auth("b@x.com"))
        assert res.status_code == 201
        assert res.json()["reviewer"]["email"] == "b@x.com"

        reviews = client.get("/reviews", params={"productId": app_id}).json()
        assert [r["body"] for r in reviews] == ["Great"]

    def test_review_for_missing_app(self, client):
        res = client.post("/reviews", json={"productId": str(ObjectId()), "body": "Hm"}, headers=auth("b@x.com"))
        assert res.status_code == 404

    def test_report_twice_is_conflict(self, client, make_app):
        app_id = make_app()
        payload = {"appId": app_id, "productName": "App"}

        assert client.post("/reports", json=payload, headers=auth("u1@x.com")).status_code == 201
        res = client.post("/reports", json=payload, headers=auth("u1@x.com"))
        assert res.status_code == 409
        assert "already reported" in res.json()["message"]

        client.post("/reports", json=payload, headers=auth("u2@x.com"))
        body = client.get("/reports").json()
        assert body["total"] == 1
        assert len(body["items"]) == 1

    def test_delete_report_requires_moderator(self, client, make_app, make_user):
        make_user("mod@x.com", role="moderator")
        report = client.post("/reports", json={"appId": make_app()}, headers=auth("u1@x.com")).json()

        assert client.delete(f"/reports/{report['id']}", headers=auth("u1@x.com")).status_code == 403
        assert client.delete(f"/reports/{report['id']}", headers=auth("mod@x.com")).status_code == 200
        assert client.get("/reports").json()["total"] == 0


# =============================================================================
# Users and roles
# =============================================================================

class TestUsers:

    def test_sign_in_creates_then_refreshes(self, client, store):
        first = client.post("/user", json={"email": "new@x.com", "name": "New"}).json()
        assert first["created"] is True
        assert first["role"] == "user"

        created = store.users.find_one({"email": "new@x.com"})
        store.users.update_one({"email": "new@x.com"}, {"$set": {"last_loggedIn": datetime(2020, 1, 1)}})

        second = client.post("/user", json={"email": "new@x.com"}).json()
        assert second["created"] is False
        refreshed = store.users.find_one({"email": "new@x.com"})
        assert refreshed["last_loggedIn"] != datetime(2020, 1, 1)
        assert refreshed["created_at"] == created["created_at"]
        assert store.users.count_documents({}) == 1

    def test_get_role(self, client, make_user):
        make_user("mod@x.com", role="moderator")
        res = client.get("/user/role/mod@x.com", headers=auth("b@x.com"))
        assert res.json() == {"role": "moderator"}

        assert client.get("/user/role/none@x.com", headers=auth("b@x.com")).status_code == 404

    def test_profile_update_only_for_self(self, client, make_user):
        make_user("b@x.com")
        res = client.patch("/users/b@x.com", json={"name": "Bee"}, headers=auth("b@x.com"))
        assert res.json()["name"] == "Bee"

        assert client.patch("/users/b@x.com", json={"name": "X"}, headers=auth("c@x.com")).status_code == 403

    def test_user_listing_admin_only(self, client, make_user):
        make_user("admin@x.com", role="admin")
        make_user("b@x.com")

        assert client.get("/users", headers=auth("b@x.com")).status_code == 403
        body = client.get("/users", headers=auth("admin@x.com")).json()
        assert [u["email"] for u in body["items"]] == ["b@x.com"]

    def test_role_change(self, client, make_user, store):
        make_user("admin@x.com", role="admin")
        target = make_user("b@x.com")

        res = client.patch(f"/users/role/{target}", json={"role": "moderator"}, headers=auth("admin@x.com"))

        assert res.status_code == 200
        assert store.get_role("b@x.com") == "moderator"

    def test_admin_role_is_sticky(self, client, make_user, store):
        make_user("admin@x.com", role="admin")
        other_admin = make_user("root@x.com", role="admin")

        res = client.patch(f"/users/role/{other_admin}", json={"role": "user"}, headers=auth("admin@x.com"))

        assert res.status_code == 403
        assert store.get_role("root@x.com") == "admin"

    def test_moderator_cannot_change_roles(self, client, make_user, store):
        make_user("mod@x.com", role="moderator")
        target = make_user("b@x.com")

        res = client.patch(f"/users/role/{target}", json={"role": "moderator"}, headers=auth("mod@x.com"))

        assert res.status_code == 403
        assert store.get_role("b@x.com") == "user"

    def test_invalid_role_value(self, client, make_user):
        make_user("admin@x.com", role="admin")
        target = make_user("b@x.com")

        res = client.patch(f"/users/role/{target}", json={"role": "owner"}, headers=auth("admin@x.com"))

        assert res.status_code == 422
        assert "message" in res.json()


# =============================================================================
# Coupons and upload
# =============================================================================

class TestCoupons:

    def test_admin_coupon_crud_and_public_listing(self, client, make_user):
        make_user("admin@x.com", role="admin")
        admin = auth("admin@x.com")
        future = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

        res = client.post("/admin/coupons", json={"code": "save10", "discountValue": 10, "expiryDate": future}, headers=admin)
        assert res.status_code == 201
        coupon_id = res.json()["id"]
        assert res.json()["code"] == "SAVE10"

        dup = client.post("/admin/coupons", json={"code": "SAVE10", "discountValue": 5, "expiryDate": future}, headers=admin)
        assert dup.status_code == 409

        client.post("/admin/coupons", json={"code": "OLD", "discountValue": 5, "expiryDate": past}, headers=admin)

        assert [c["code"] for c in client.get("/coupons").json()] == ["SAVE10"]
        assert client.get("/admin/coupons", headers=admin).json()["total"] == 2
        assert client.get("/coupons/validate/save10").status_code == 200
        assert client.get("/coupons/validate/OLD").status_code == 404

        client.patch(f"/admin/coupons/{coupon_id}", json={"isActive": False}, headers=admin)
        assert client.get("/coupons").json() == []

        assert client.delete(f"/admin/coupons/{coupon_id}", headers=admin).status_code == 200
        assert client.delete(f"/admin/coupons/{coupon_id}", headers=admin).status_code == 404

    def test_coupons_admin_only(self, client, make_user):
        make_user("b@x.com")
        assert client.get("/admin/coupons", headers=auth("b@x.com")).status_code == 403


class TestUpload:

    def test_upload_proxies_to_media_host(self, client, media):
        res = client.post("/upload", files={"file": ("logo.png", b"\x89PNG", "image/png")})

        assert res.status_code == 200
        assert res.json() == {"secure_url": "https://media.test/logo.png", "public_id": "apporbit/logo.png"}
        assert media.uploads == [("logo.png", b"\x89PNG", "image/png")]

    def test_empty_upload_rejected(self, client):
        res = client.post("/upload", files={"file": ("empty.png", b"", "image/png")})
        assert res.status_code == 400
        assert res.json()["message"] == "No file uploaded"


def test_root(client):
    assert client.get("/").json() == "AppOrbit server is running"


# =============================================================================
# Report identity, sign-in races and health
# =============================================================================

class TestReportIdentityOverHttp:

    def test_uppercase_id_is_same_report(self, client, make_app, store):
        app_id = make_app()

        first = client.post("/reports", json={"appId": app_id}, headers=auth("u1@x.com"))
        second = client.post("/reports", json={"appId": app_id.upper()}, headers=auth("u1@x.com"))

        assert first.status_code == 201
        assert second.status_code == 409
        body = client.get("/reports").json()
        assert body["total"] == 1
        assert len(body["items"]) == 1

    def test_report_on_missing_or_junk_app(self, client, store):
        assert client.post("/reports", json={"appId": str(ObjectId())}, headers=auth("u1@x.com")).status_code == 404
        assert client.post("/reports", json={"appId": "foo"}, headers=auth("u1@x.com")).status_code == 400
        assert store.reports.count_documents({}) == 0


class RacingUsers:
    """Wraps the users collection so the first upsert loses a race."""

    def __init__(self, collection):
        self._collection = collection
        self._raced = False

    def update_one(self, filter, update, upsert=False):
        if not self._raced:
            self._raced = True
            self._collection.insert_one({"email": filter["email"], "role": "user", "created_at": datetime(2024, 1, 1)})
            raise DuplicateKeyError("E11000 duplicate key error")
        return self._collection.update_one(filter, update, upsert=upsert)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class RacingStore(Store):
    def __init__(self, db):
        super().__init__(db)
        self._users = RacingUsers(db["users"])

    @property
    def users(self):
        return self._users


class FailingStore(Store):
    def ping(self):
        raise ServerSelectionTimeoutError("mongo-internal.example:27017 refused")


def client_for(store):
    context = ServiceContext(store=store, verifier=FakeVerifier(), media=FakeMedia())
    return TestClient(create_app(context=context, cors_origins=[]))


class TestSignInRace:

    def test_concurrent_first_sign_in_is_not_an_error(self):
        store = RacingStore(mongomock.MongoClient()["apporbit_race"])
        store.ensure_indexes()

        with client_for(store) as c:
            res = c.post("/user", json={"email": "new@x.com"})

        assert res.status_code == 200
        assert res.json()["created"] is False
        assert res.json()["role"] == "user"
        assert store.db["users"].count_documents({"email": "new@x.com"}) == 1


class TestHealth:

    def test_store_failure_hides_details(self):
        store = FailingStore(mongomock.MongoClient()["apporbit_health"])

        with client_for(store) as c:
            res = c.get("/health")

        assert res.status_code == 200
        assert res.json()["database"] == "unavailable"
        assert "mongo-internal" not in res.text
