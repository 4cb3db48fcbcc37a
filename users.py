"""
User lifecycle: sign-in upsert, profile updates and role changes.
"""

import logging
from typing import Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import Store, sanitize, to_obj_id
from errors import ForbiddenError, NotFoundError
from schemas import utcnow

logger = logging.getLogger(__name__)


def sign_in(store: Store, email: str, name: Optional[str] = None, image: Optional[str] = None) -> Dict:
    """Create the user on first sign-in, otherwise refresh ``last_loggedIn``.

    Returns the stored user plus ``created`` telling which branch ran.
    """
    now = utcnow()
    profile = {k: v for k, v in (("name", name), ("image", image)) if v is not None}
    update = {
        "$set": {"last_loggedIn": now, **profile},
        "$setOnInsert": {"role": "user", "created_at": now},
    }
    try:
        res = store.users.update_one({"email": email}, update, upsert=True)
    except DuplicateKeyError:
        # a concurrent first sign-in inserted the user; this retry matches it
        res = store.users.update_one({"email": email}, update, upsert=True)
    user = sanitize(store.users.find_one({"email": email}))
    user["created"] = res.upserted_id is not None
    return user


def update_profile(store: Store, email: str, name: Optional[str] = None, image: Optional[str] = None) -> Dict:
    fields = {k: v for k, v in (("name", name), ("image", image)) if v is not None}
    fields["last_loggedIn"] = utcnow()
    updated = store.users.find_one_and_update(
        {"email": email}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        raise NotFoundError("User not found")
    return sanitize(updated)


def get_role(store: Store, email: str) -> str:
    role = store.get_role(email)
    if role is None:
        raise NotFoundError("User not found")
    return role


def set_user_role(store: Store, user_id: str, role: str) -> Dict:
    """Change a user's role; admins are never demoted through this path."""
    oid = to_obj_id(user_id)
    updated = store.users.find_one_and_update(
        {"_id": oid, "role": {"$ne": "admin"}},
        {"$set": {"role": role}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        logger.info("User %s role set to %s", updated.get("email"), role)
        return sanitize(updated)
    if store.users.find_one({"_id": oid}, {"_id": 1}) is None:
        raise NotFoundError("User not found")
    raise ForbiddenError("Cannot change the role of an admin")
