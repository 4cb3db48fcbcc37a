"""
Report filing and the moderation view over reports.

Reports are many-to-one against applications. The moderation view shows one
row per reported application: the most recent report for that app, joined
with the application record.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import Store, maybe_obj_id, sanitize, to_obj_id
from errors import ConflictError, NotFoundError
from listing import page_result, skip_for
from schemas import Report

logger = logging.getLogger(__name__)


def file_report(store: Store, app_id: str, user_email: str, product_name: Optional[str] = None) -> Dict:
    """Insert a report; the unique (appId, userEmail) index rejects repeats.

    ``app_id`` is stored in its canonical ObjectId form so that two spellings
    of one id share a single index key.
    """
    oid = to_obj_id(app_id)
    if store.apps.find_one({"_id": oid}, {"_id": 1}) is None:
        raise NotFoundError("Application not found")
    app_id = str(oid)
    report = Report(appId=app_id, userEmail=user_email, productName=product_name)
    try:
        doc = store.insert(store.reports, report)
    except DuplicateKeyError:
        raise ConflictError("You have already reported this application")
    logger.info("Report filed on app %s by %s", app_id, user_email)
    return sanitize(doc)


def _latest_per_app(skip: int, limit: int) -> List[Dict[str, Any]]:
    return [
        {"$sort": {"createdAt": -1, "_id": -1}},
        {
            "$group": {
                "_id": "$appId",
                "reportId": {"$first": "$_id"},
                "userEmail": {"$first": "$userEmail"},
                "productName": {"$first": "$productName"},
                "createdAt": {"$first": "$createdAt"},
            }
        },
        {"$sort": {"createdAt": -1, "reportId": -1}},
        {"$skip": skip},
        {"$limit": limit},
    ]


def _attach_apps(store: Store, rows: List[Dict]) -> List[Dict]:
    ids = [oid for oid in (maybe_obj_id(r["_id"]) for r in rows) if oid is not None]
    apps = {a["_id"]: a for a in store.apps.find({"_id": {"$in": ids}})} if ids else {}
    out = []
    for r in rows:
        app = apps.get(maybe_obj_id(r["_id"]))
        out.append({
            "id": str(r["reportId"]),
            "appId": r["_id"],
            "userEmail": r.get("userEmail"),
            "productName": r.get("productName"),
            "createdAt": r.get("createdAt"),
            "app": sanitize(app) if app else None,
        })
    return out


def list_reports(store: Store, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    """One row per reported application, newest report first.

    ``total`` counts distinct reported applications, not report rows.
    """
    rows = list(store.reports.aggregate(_latest_per_app(skip_for(page, limit), limit)))
    total = len(store.reports.distinct("appId"))
    return page_result(_attach_apps(store, rows), total, page, limit)


def delete_report(store: Store, report_id: str) -> None:
    res = store.reports.delete_one({"_id": to_obj_id(report_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Report not found")
    logger.info("Report %s deleted", report_id)
