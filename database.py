"""
MongoDB access for AppOrbit.

``Store`` wraps one pymongo ``Database`` and exposes the five collections the
service uses. It is built once per process (see ``main.lifespan``) and handed
to each request through the service context; nothing here is a module-level
client.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from errors import InvalidIdError

logger = logging.getLogger(__name__)

APPS = "apps"
USERS = "users"
REVIEWS = "reviews"
REPORTS = "reports"
COUPONS = "coupons"

COLLECTIONS = (APPS, USERS, REVIEWS, REPORTS, COUPONS)


def to_obj_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdError()


def maybe_obj_id(id_str: Any) -> Optional[ObjectId]:
    try:
        return to_obj_id(id_str)
    except InvalidIdError:
        return None


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def sanitize_all(docs: Iterable[Dict]) -> List[Dict]:
    return [sanitize(d) for d in docs]


class Store:
    """Typed accessors over the AppOrbit collections."""

    def __init__(self, db: Database):
        self.db = db

    @property
    def apps(self) -> Collection:
        return self.db[APPS]

    @property
    def users(self) -> Collection:
        return self.db[USERS]

    @property
    def reviews(self) -> Collection:
        return self.db[REVIEWS]

    @property
    def reports(self) -> Collection:
        return self.db[REPORTS]

    @property
    def coupons(self) -> Collection:
        return self.db[COUPONS]

    def ensure_indexes(self) -> None:
        """Create the indexes the atomic write paths depend on."""
        self.users.create_index([("email", ASCENDING)], unique=True)
        self.reports.create_index([("appId", ASCENDING), ("userEmail", ASCENDING)], unique=True)
        self.reports.create_index([("createdAt", DESCENDING)])
        self.coupons.create_index([("code", ASCENDING)], unique=True)
        self.apps.create_index([("owner.email", ASCENDING)])
        self.reviews.create_index([("productId", ASCENDING), ("createdAt", DESCENDING)])

    def ping(self) -> None:
        self.db.client.admin.command("ping")

    def insert(self, collection: Collection, model: BaseModel) -> Dict:
        """Insert a validated model and return the stored document with its id."""
        doc = model.model_dump()
        res = collection.insert_one(doc)
        doc["_id"] = res.inserted_id
        return doc

    def get_app(self, app_id: Any) -> Optional[Dict]:
        return self.apps.find_one({"_id": to_obj_id(app_id)})

    def get_user(self, email: str) -> Optional[Dict]:
        return self.users.find_one({"email": email})

    def get_role(self, email: str) -> Optional[str]:
        user = self.users.find_one({"email": email}, {"role": 1})
        return user.get("role", "user") if user else None

    def counts(self) -> Dict[str, int]:
        return {name: self.db[name].count_documents({}) for name in COLLECTIONS}


def connect(url: str, name: str, timeout_ms: int = 10000) -> MongoClient:
    client = MongoClient(url, serverSelectionTimeoutMS=timeout_ms, appname="apporbit")
    logger.info("Connecting to MongoDB database %r", name)
    return client
