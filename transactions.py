"""
transactions.py

Write side of the money flow:

- link_department:     institution <-> department handshake
- record_allocations:  institution -> department allocations (pending approval)
- verify_transaction:  department marks an allocation completed / disputed
- record_spending:     department -> vendor spend, followed by the anomaly check
"""

import logging
from datetime import datetime

from pymongo import ReturnDocument

import anomaly_detector
from errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from models import REPORT_TYPES, TERMINAL_STATUSES, clean_text, parse_id
from permissions import Identity, can_verify_transaction
from uploads import normalize_allocation_row, normalize_spending_row

logger = logging.getLogger(__name__)


def link_department(db, institution_id, department_code: str) -> dict:
    department_code = clean_text(department_code, "Department ID")
    if not department_code:
        raise BadRequestError("Please provide the Department ID")

    institution_id = parse_id(institution_id, "institution id")
    institution = db.institutions.find_one({"_id": institution_id})
    if not institution:
        raise NotFoundError("Institution", institution_id)

    department = db.departments.find_one({"departmentId": department_code})
    if not department:
        raise NotFoundError("Department", department_code)

    linked = department.get("linkedInstitution")
    if linked and linked != institution_id:
        raise ConflictError("This department is already linked to another institution.")

    db.institutions.update_one(
        {"_id": institution_id},
        {"$addToSet": {"linkedDepartments": department["_id"]}},
    )
    db.departments.update_one(
        {"_id": department["_id"]},
        {"$set": {"linkedInstitution": institution_id}},
    )
    logger.info("Institution %s linked department %s", institution_id, department["_id"])
    return department


def _check_report_info(name, report_type, report_date):
    if not (name or "").strip():
        raise BadRequestError("Please provide a name for this report.")
    if report_type not in REPORT_TYPES:
        raise BadRequestError(f"Report type must be one of: {', '.join(REPORT_TYPES)}")
    if report_date is None:
        raise BadRequestError("Please provide the date this report pertains to (YYYY-MM-DD).")


def create_report(db, institution_id, name: str, report_type: str, report_date,
                  original_file_name=None, original_file_url=None) -> dict:
    _check_report_info(name, report_type, report_date)
    doc = {
        "name": name.strip(),
        "type": report_type,
        "reportDate": report_date,
        "institution": institution_id,
        "originalFileName": original_file_name,
        "originalFileUrl": original_file_url,
        "createdAt": datetime.utcnow(),
    }
    doc["_id"] = db.reports.insert_one(doc).inserted_id
    return doc


def record_allocations(db, institution_id, report_info: dict, raw_rows: list) -> dict:
    """
    Store allocation rows as pending transactions under a new report.

    report_info holds name, type, date and optionally file_name. Rows naming
    a department that is not linked to the institution are skipped; the
    report is only created when at least one row is valid.
    """
    institution_id = parse_id(institution_id, "institution id")
    institution = db.institutions.find_one({"_id": institution_id})
    if not institution:
        raise NotFoundError("Institution", institution_id)
    _check_report_info(report_info.get("name"), report_info.get("type"), report_info.get("date"))

    linked = list(db.departments.find({"_id": {"$in": institution.get("linkedDepartments", [])}}))
    by_name = {str(d.get("name", "")).strip().lower(): d for d in linked}

    docs = []
    skipped = 0
    now = datetime.utcnow()
    for raw in raw_rows:
        row = normalize_allocation_row(raw)
        if row is None:
            skipped += 1
            continue
        department = by_name.get(row["department_name"].lower())
        if not department:
            logger.warning("Department not linked: %s. Skipping transaction.", row["department_name"])
            skipped += 1
            continue
        docs.append({
            "amount": row["amount"],
            "vendor": row["vendor"],
            "description": row["description"],
            "date": row["date"],
            "status": "pending_approval",
            "institution": institution_id,
            "department": department["_id"],
            "createdAt": now,
            "updatedAt": now,
        })

    if not docs:
        raise BadRequestError("No valid transactions could be identified in the uploaded file.")

    report = create_report(
        db, institution_id, report_info["name"], report_info["type"], report_info["date"],
        original_file_name=report_info.get("file_name"),
    )
    for doc in docs:
        doc["report"] = report["_id"]
    db.transactions.insert_many(docs)
    logger.info("Institution %s uploaded %d allocations (%d skipped)",
                institution_id, len(docs), skipped)
    return {"created": len(docs), "skipped": skipped, "reportId": str(report["_id"])}


def pending_transactions(db, department_id) -> list:
    department_id = parse_id(department_id, "department id")
    txns = list(db.transactions.find({"department": department_id,
                                      "status": "pending_approval"}).sort("date", -1))
    inst_ids = list({t["institution"] for t in txns})
    names = {i["_id"]: i.get("name") for i in db.institutions.find({"_id": {"$in": inst_ids}}, {"name": 1})}
    for t in txns:
        t["institutionName"] = names.get(t["institution"])
    return txns


def verify_transaction(db, identity: Identity, transaction_id, status: str) -> dict:
    """
    pending_approval -> completed | disputed.

    The update is conditional on the stored status still being
    pending_approval, so a terminal status is never overwritten.
    """
    if status not in TERMINAL_STATUSES:
        raise BadRequestError("Please provide a valid status: 'completed' or 'disputed'.")

    transaction_id = parse_id(transaction_id, "transaction id")
    txn = db.transactions.find_one({"_id": transaction_id})
    if not txn:
        raise NotFoundError("Transaction", transaction_id)

    department = db.departments.find_one({"_id": identity.object_id})
    if not can_verify_transaction(identity, department, txn):
        raise UnauthorizedError("You are not authorized to verify this transaction.")

    if txn.get("status") != "pending_approval":
        raise BadRequestError(
            f"This transaction is already '{txn.get('status')}' and cannot be changed."
        )

    updated = db.transactions.find_one_and_update(
        {"_id": transaction_id, "status": "pending_approval"},
        {"$set": {"status": status, "updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise BadRequestError("This transaction has already been verified and cannot be changed.")

    logger.info("Transaction %s marked %s by department %s", transaction_id, status, identity.id)
    return updated


def record_spending(db, department_id, report_name: str, raw_rows: list,
                    original_file_name=None, single_open_anomaly: bool = False) -> dict:
    """
    Store department spend rows and run the anomaly check afterwards.

    A failing anomaly check is logged and does not undo the upload.
    """
    if not clean_text(report_name, "reportName"):
        raise BadRequestError("Please provide a name for this spending report.")
    department_id = parse_id(department_id, "department id")
    department = db.departments.find_one({"_id": department_id})
    if not department:
        raise NotFoundError("Department", department_id)

    institution_id = department.get("linkedInstitution")
    if not institution_id:
        raise BadRequestError("Your department must be linked to an institution to log spending.")

    rows = [r for r in (normalize_spending_row(raw) for raw in raw_rows) if r is not None]
    if not rows:
        raise BadRequestError("The file was processed, but no valid transactions could be logged.")

    report = create_report(
        db, institution_id, report_name, "other", datetime.utcnow(),
        original_file_name=original_file_name,
    )

    now = datetime.utcnow()
    db.department_transactions.insert_many([
        {
            **row,
            "sourceReportName": report["name"],
            "department": department_id,
            "institution": institution_id,
            "report": report["_id"],
            "createdAt": now,
            "updatedAt": now,
        }
        for row in rows
    ])

    anomaly = None
    try:
        anomaly = anomaly_detector.check_for_anomaly(
            db, department_id, institution_id,
            triggered_by=anomaly_detector.SPENDING_UPLOAD_TRIGGER,
            single_open=single_open_anomaly,
        )
    except Exception:
        logger.exception("Anomaly detection failed after spending upload for department %s",
                         department_id)

    return {
        "created": len(rows),
        "skipped": len(raw_rows) - len(rows),
        "reportId": str(report["_id"]),
        "anomaly": anomaly,
    }
