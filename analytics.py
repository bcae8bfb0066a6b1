"""
analytics.py

Read-side aggregations behind the public dashboards:

- flowchart_data:   institution -> department -> status Sankey flows
- department_share: spend per department (pie chart)
- spending_trend:   spend per month / quarter / year
- search_allocations / combined_ledger: filtered transaction listings

Nothing here writes to the database and nothing is cached; every call
recomputes from the collections.
"""

import re
from datetime import datetime

from errors import BadRequestError
from models import TRANSACTION_STATUSES, parse_id

STATUS_LABELS = {
    "pending_approval": "Pending Approval",
    "completed": "Completed",
    "disputed": "Disputed",
}

GROUP_BY_OPTIONS = ("monthly", "quarterly", "annually")

LEDGER_PAGE_SIZE = 10


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status) or str(status or "Unknown").replace("_", " ").title()


def _department_names(db, department_ids, reserved=()) -> dict:
    """
    Map department _id -> display name. Names shared by several departments,
    or equal to one of the `reserved` names, get a "(departmentId)" suffix.
    """
    docs = list(db.departments.find({"_id": {"$in": list(department_ids)}},
                                    {"name": 1, "departmentId": 1}))
    counts = {}
    for d in docs:
        counts[d.get("name")] = counts.get(d.get("name"), 0) + 1

    names = {}
    for d in docs:
        name = d.get("name") or "Unknown Department"
        if counts.get(d.get("name"), 0) > 1 or name in reserved:
            name = f"{name} ({d.get('departmentId')})"
        names[d["_id"]] = name
    for dept_id in department_ids:
        names.setdefault(dept_id, "Unknown Department")
    return names


# =========================================
# FLOWCHART / SANKEY
# =========================================

def flowchart_data(db, institution: dict) -> dict:
    """
    Build the three-level fund flow for an institution:

        institution name -> department name -> status label

    Each department's inflow is the sum of all its allocations, and its
    outflows split that same sum by status, so every node is balanced.
    Zero-amount flows are left out.
    """
    institution_id = institution["_id"]
    pipeline = [
        {"$match": {"institution": institution_id}},
        {"$group": {
            "_id": {"department": "$department", "status": "$status"},
            "totalAmount": {"$sum": "$amount"},
        }},
    ]
    rows = list(db.transactions.aggregate(pipeline))

    per_department = {}
    for row in rows:
        dept_id = row["_id"].get("department")
        status = row["_id"].get("status")
        amount = row.get("totalAmount") or 0
        per_department.setdefault(dept_id, {})
        per_department[dept_id][status] = per_department[dept_id].get(status, 0) + amount

    inst_name = institution.get("name") or "Institution"
    # sankey nodes share one namespace with the institution and the status labels
    reserved = {inst_name, *STATUS_LABELS.values()}
    names = _department_names(db, per_department.keys(), reserved)

    allocations = []
    for dept_id, by_status in per_department.items():
        breakdown = [
            {"status": status, "amount": by_status[status]}
            for status in TRANSACTION_STATUSES if by_status.get(status)
        ]
        # statuses outside the enum still count towards the department total
        breakdown += [
            {"status": status, "amount": amount}
            for status, amount in by_status.items()
            if status not in TRANSACTION_STATUSES and amount
        ]
        allocations.append({
            "departmentId": str(dept_id),
            "departmentName": names[dept_id],
            "departmentTotal": sum(b["amount"] for b in breakdown),
            "breakdown": breakdown,
        })
    allocations.sort(key=lambda a: a["departmentTotal"], reverse=True)

    flows = []
    for alloc in allocations:
        if alloc["departmentTotal"]:
            flows.append([inst_name, alloc["departmentName"], alloc["departmentTotal"]])
        for part in alloc["breakdown"]:
            flows.append([alloc["departmentName"], status_label(part["status"]), part["amount"]])

    return {
        "institution": {"id": str(institution_id), "name": inst_name},
        "totalAllocated": sum(a["departmentTotal"] for a in allocations),
        "allocations": allocations,
        "flows": flows,
        "sankeyData": [["From", "To", "Amount"]] + flows,
    }


# =========================================
# DEPARTMENT SHARE / SPENDING TREND
# =========================================

def department_share(db, institution_id) -> list:
    institution_id = parse_id(institution_id, "institution id")
    rows = list(db.department_transactions.aggregate([
        {"$match": {"institution": institution_id}},
        {"$group": {"_id": "$department", "totalSpent": {"$sum": "$amount"}}},
        {"$sort": {"totalSpent": -1}},
    ]))
    names = _department_names(db, [r["_id"] for r in rows])
    return [
        {
            "departmentId": str(r["_id"]),
            "departmentName": names[r["_id"]],
            "totalSpent": r["totalSpent"],
        }
        for r in rows
    ]


def _period_key(group_by: str):
    """Group key for the $group stage plus the key fields in sort order."""
    if group_by == "quarterly":
        return (
            {"year": {"$year": "$date"},
             "quarter": {"$ceil": {"$divide": [{"$month": "$date"}, 3]}}},
            ("year", "quarter"),
        )
    if group_by == "annually":
        return {"year": {"$year": "$date"}}, ("year",)
    return (
        {"year": {"$year": "$date"}, "month": {"$month": "$date"}},
        ("year", "month"),
    )


def spending_trend(db, institution_id, group_by: str = "monthly") -> list:
    """
    Department-logged spend bucketed by calendar period, oldest first.

    Each item looks like {"_id": {"year": 2024, "month": 3}, "totalSpent": 123.0}
    ("quarter" instead of "month" for quarterly, year only for annually).
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise BadRequestError("groupBy must be one of: monthly, quarterly, annually")
    institution_id = parse_id(institution_id, "institution id")
    key, fields = _period_key(group_by)

    rows = list(db.department_transactions.aggregate([
        {"$match": {"institution": institution_id}},
        {"$group": {"_id": key, "totalSpent": {"$sum": "$amount"}}},
    ]))
    for row in rows:
        row["_id"] = {k: int(v) for k, v in row["_id"].items()}
    rows.sort(key=lambda r: tuple(r["_id"].get(f, 0) for f in fields))
    return rows


# =========================================
# LISTINGS
# =========================================

def text_filter(search: str | None):
    if not search:
        return None
    return {"$regex": re.escape(search.strip()), "$options": "i"}


def search_allocations(db, institution_id, search=None, department=None, status=None) -> list:
    query = {"institution": parse_id(institution_id, "institution id")}
    text = text_filter(search)
    if text:
        query["$or"] = [{"vendor": text}, {"description": text}]
    if department:
        query["department"] = parse_id(department, "department id")
    if status in TRANSACTION_STATUSES:
        query["status"] = status

    txns = list(db.transactions.find(query).sort("date", -1))
    names = _department_names(db, {t["department"] for t in txns})
    for t in txns:
        t["departmentName"] = names.get(t["department"])
    return txns


def combined_ledger(db, institution_id, search=None, page: int = 1,
                    page_size: int = LEDGER_PAGE_SIZE) -> dict:
    """Allocations and spending for an institution in one list, newest first."""
    institution_id = parse_id(institution_id, "institution id")
    allocations = list(db.transactions.find({"institution": institution_id}))
    spending = list(db.department_transactions.find({"institution": institution_id}))

    names = _department_names(
        db, {t["department"] for t in allocations} | {t["department"] for t in spending}
    )
    items = []
    for t in allocations:
        items.append({**t, "type": "Allocation", "departmentName": names.get(t["department"])})
    for t in spending:
        items.append({**t, "type": "Spending", "departmentName": names.get(t["department"])})

    if search:
        term = search.strip().lower()
        fields = ("departmentName", "vendor", "recipient", "description")
        items = [
            i for i in items
            if any(term in str(i.get(f) or "").lower() for f in fields)
        ]

    items.sort(key=lambda i: i.get("date") or datetime.min, reverse=True)

    page = max(int(page or 1), 1)
    total = len(items)
    start = (page - 1) * page_size
    return {
        "count": total,
        "transactions": items[start:start + page_size],
        "currentPage": page,
        "totalPages": -(-total // page_size),
    }
