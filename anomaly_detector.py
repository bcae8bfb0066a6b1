"""
anomaly_detector.py

Budget-vs-spend check for a department.

totalAllocated = sum of the institution's *completed* allocations to the department
totalSpent     = sum of everything the department has logged as spent

If totalSpent > totalAllocated an anomaly snapshot is stored. Anomalies are
never edited in place except for their review status.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from bson.objectid import ObjectId

from errors import BadRequestError, NotFoundError
from models import parse_id

logger = logging.getLogger(__name__)

ANOMALY_STATUSES = ("new", "acknowledged", "resolved")
OPEN_STATUSES = ("new", "acknowledged")

SPENDING_UPLOAD_TRIGGER = "Department Spending Report Upload"


def _sum_amounts(collection, match: dict) -> float:
    result = list(collection.aggregate([
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
    ]))
    if not result:
        return 0
    return result[0].get("total") or 0


def compute_totals(db, department_id: ObjectId, institution_id: ObjectId) -> tuple:
    """Return (total_allocated, total_spent); the two sums run in parallel."""
    with ThreadPoolExecutor(max_workers=2) as pool:
        allocated = pool.submit(
            _sum_amounts,
            db.transactions,
            {"department": department_id, "institution": institution_id, "status": "completed"},
        )
        spent = pool.submit(
            _sum_amounts,
            db.department_transactions,
            {"department": department_id, "institution": institution_id},
        )
        return allocated.result(), spent.result()


def check_for_anomaly(
    db,
    department_id,
    institution_id,
    triggered_by: str = SPENDING_UPLOAD_TRIGGER,
    single_open: bool = False,
):
    """
    Compare allocations and spending for one department and record an
    anomaly when spending is higher.

    single_open: when True and the department already has an open
    ('new' or 'acknowledged') anomaly, that anomaly is returned and no new
    record is written.

    Returns the anomaly document, or None when the department is within budget.
    """
    department_id = parse_id(department_id, "department id")
    institution_id = parse_id(institution_id, "institution id")

    total_allocated, total_spent = compute_totals(db, department_id, institution_id)
    logger.debug(
        "Anomaly check department=%s allocated=%s spent=%s",
        department_id, total_allocated, total_spent,
    )

    if total_spent <= total_allocated:
        return None

    if single_open:
        existing = db.anomalies.find_one({
            "department": department_id,
            "institution": institution_id,
            "status": {"$in": list(OPEN_STATUSES)},
        })
        if existing:
            logger.info("Open anomaly %s already recorded for department %s",
                        existing["_id"], department_id)
            return existing

    overage = total_spent - total_allocated
    logger.warning("ANOMALY DETECTED: department %s is over budget by %s",
                   department_id, overage)

    now = datetime.utcnow()
    doc = {
        "department": department_id,
        "institution": institution_id,
        "totalAllocated": total_allocated,
        "totalSpent": total_spent,
        "overageAmount": overage,
        "triggeredBy": triggered_by,
        "status": "new",
        "createdAt": now,
        "updatedAt": now,
    }
    result = db.anomalies.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def format_overage(amount) -> str:
    try:
        return f"${float(amount):,.2f}"
    except (TypeError, ValueError):
        return "$0.00"


def list_anomalies(db, institution_id) -> list:
    """Anomalies for an institution, newest first, with a readable message."""
    institution_id = parse_id(institution_id, "institution id")
    anomalies = list(
        db.anomalies.find({"institution": institution_id}).sort([("createdAt", -1), ("_id", -1)])
    )

    dept_ids = list({a["department"] for a in anomalies})
    departments = {
        d["_id"]: d
        for d in db.departments.find({"_id": {"$in": dept_ids}}, {"name": 1, "departmentId": 1})
    }

    out = []
    for a in anomalies:
        dept = departments.get(a["department"]) or {}
        dept_name = dept.get("name") or "An unknown department"
        out.append({
            "id": str(a["_id"]),
            "department": {
                "id": str(a["department"]),
                "name": dept.get("name"),
                "departmentId": dept.get("departmentId"),
            },
            "institution": str(a["institution"]),
            "totalAllocated": a.get("totalAllocated"),
            "totalSpent": a.get("totalSpent"),
            "overageAmount": a.get("overageAmount"),
            "triggeredBy": a.get("triggeredBy"),
            "status": a.get("status"),
            "createdAt": a.get("createdAt"),
            "message": (
                f'The "{dept_name}" department has overspent its allocated '
                f"budget by {format_overage(a.get('overageAmount'))}."
            ),
        })
    return out


def set_anomaly_status(db, anomaly_id, institution_id, status: str) -> dict:
    if status not in ANOMALY_STATUSES:
        raise BadRequestError(
            "Please provide a valid status: 'new', 'acknowledged' or 'resolved'."
        )
    anomaly = db.anomalies.find_one({"_id": parse_id(anomaly_id, "anomaly id"),
                                     "institution": parse_id(institution_id, "institution id")})
    if not anomaly:
        raise NotFoundError("Anomaly", anomaly_id)

    db.anomalies.update_one(
        {"_id": anomaly["_id"]},
        {"$set": {"status": status, "updatedAt": datetime.utcnow()}},
    )
    anomaly["status"] = status
    return anomaly
