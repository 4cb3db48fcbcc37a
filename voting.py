"""
Upvote state transitions for an application.

Both transitions are a single conditional write: the filter carries every
precondition, so concurrent requests cannot both pass a check and then both
mutate. When the write matches nothing, the application is read once to
report which precondition failed; that read never leads to a write.
"""

import logging
from typing import Dict

from pymongo import ReturnDocument

from database import Store, to_obj_id
from errors import ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)


def _require_email(voter_email: str) -> str:
    email = (voter_email or "").strip()
    if not email:
        raise ForbiddenError("A verified email is required to vote")
    return email


def apply_vote(store: Store, app_id: str, voter_email: str) -> Dict:
    """Add ``voter_email`` to the voters of ``app_id`` and bump ``upvotes``.

    Raises NotFoundError, ForbiddenError (owner voting on own app) or
    ConflictError (already voted), checked in that order.
    """
    email = _require_email(voter_email)
    oid = to_obj_id(app_id)

    updated = store.apps.find_one_and_update(
        {"_id": oid, "owner.email": {"$ne": email}, "voters": {"$ne": email}},
        {"$inc": {"upvotes": 1}, "$addToSet": {"voters": email}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        logger.info("Vote recorded on app %s by %s", app_id, email)
        return updated

    current = store.apps.find_one({"_id": oid}, {"owner.email": 1, "voters": 1})
    if current is None:
        raise NotFoundError("Application not found")
    if (current.get("owner") or {}).get("email") == email:
        raise ForbiddenError("Owner cannot vote on own content")
    raise ConflictError("Duplicate vote: you have already upvoted this application")


def undo_vote(store: Store, app_id: str, voter_email: str) -> Dict:
    """Remove ``voter_email`` from the voters of ``app_id`` and drop ``upvotes``.

    Raises NotFoundError or ConflictError (user has not voted). The count
    cannot go negative because the filter requires membership.
    """
    email = _require_email(voter_email)
    oid = to_obj_id(app_id)

    updated = store.apps.find_one_and_update(
        {"_id": oid, "voters": email},
        {"$inc": {"upvotes": -1}, "$pull": {"voters": email}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        logger.info("Vote withdrawn on app %s by %s", app_id, email)
        return updated

    if store.apps.find_one({"_id": oid}, {"_id": 1}) is None:
        raise NotFoundError("Application not found")
    raise ConflictError("User has not voted on this application")
