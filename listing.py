"""
Paginated, filtered reads over apps, users, reviews and coupons.
"""

import math
import re
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from database import Store, sanitize, sanitize_all
from schemas import STATUS_RANK, as_naive_utc, utcnow


def page_result(items: List[Dict], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def skip_for(page: int, limit: int) -> int:
    return max(page - 1, 0) * limit


def _contains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def app_query(search: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    q: Dict[str, Any] = {}
    if search and search.strip():
        # a regex on an array field matches when any element matches
        q["tags"] = _contains(search.strip())
    if status:
        q["status"] = status
    return q


def _status_rank_expr() -> Dict[str, Any]:
    expr: Any = len(STATUS_RANK)
    for status, rank in sorted(STATUS_RANK.items(), key=lambda kv: kv[1], reverse=True):
        expr = {"$cond": [{"$eq": ["$status", status]}, rank, expr]}
    return expr


def _moderation_pipeline(q: Dict[str, Any], skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    pipeline: List[Dict[str, Any]] = [
        {"$match": q},
        {"$addFields": {"statusRank": _status_rank_expr()}},
        {"$sort": {"statusRank": 1, "createdAt": -1, "_id": -1}},
    ]
    if skip:
        pipeline.append({"$skip": skip})
    if limit:
        pipeline.append({"$limit": limit})
    pipeline.append({"$project": {"statusRank": 0}})
    return pipeline


def list_all_apps(store: Store) -> List[Dict]:
    """Every application, pending first."""
    return sanitize_all(store.apps.aggregate(_moderation_pipeline({})))


def list_apps(
    store: Store,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    q = app_query(search, status)
    total = store.apps.count_documents(q)
    items = sanitize_all(store.apps.aggregate(_moderation_pipeline(q, skip_for(page, limit), limit)))
    return page_result(items, total, page, limit)


def list_owner_apps(store: Store, email: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    q = {"owner.email": email}
    total = store.apps.count_documents(q)
    cursor = store.apps.find(q).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).skip(skip_for(page, limit)).limit(limit)
    return page_result(sanitize_all(cursor), total, page, limit)


def list_featured_apps(store: Store, limit: int = 6) -> List[Dict]:
    cursor = store.apps.find({"status": "approved", "isFeatured": True}).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).limit(limit)
    return sanitize_all(cursor)


def list_trending_apps(store: Store, limit: int = 6) -> List[Dict]:
    cursor = store.apps.find({"status": "approved"}).sort([("upvotes", DESCENDING), ("createdAt", DESCENDING), ("_id", DESCENDING)]).limit(limit)
    return sanitize_all(cursor)


def list_users(store: Store, page: int = 1, limit: int = 10, search: Optional[str] = None) -> Dict[str, Any]:
    """Users visible to admins; admin rows are never listed."""
    q: Dict[str, Any] = {"role": {"$ne": "admin"}}
    if search and search.strip():
        q["email"] = _contains(search.strip())
    total = store.users.count_documents(q)
    cursor = store.users.find(q).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip_for(page, limit)).limit(limit)
    return page_result(sanitize_all(cursor), total, page, limit)


def list_reviews(store: Store, product_id: str) -> List[Dict]:
    return sanitize_all(store.reviews.find({"productId": product_id}).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]))


def valid_coupon_query(now=None) -> Dict[str, Any]:
    now = as_naive_utc(now or utcnow())
    return {"isActive": True, "expiryDate": {"$gt": now}}


def list_valid_coupons(store: Store, now=None) -> List[Dict]:
    return sanitize_all(store.coupons.find(valid_coupon_query(now)).sort([("expiryDate", 1), ("_id", 1)]))


def find_valid_coupon(store: Store, code: str, now=None) -> Optional[Dict]:
    q = valid_coupon_query(now)
    q["code"] = code.strip().upper()
    doc = store.coupons.find_one(q)
    return sanitize(doc)


def list_coupons(store: Store, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    total = store.coupons.count_documents({})
    cursor = store.coupons.find({}).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).skip(skip_for(page, limit)).limit(limit)
    return page_result(sanitize_all(cursor), total, page, limit)
