"""
models.py

Collection names, status constants, indexes and small document helpers
shared by the services.

Documents are plain dicts. References between collections are ObjectIds and
dates are naive UTC datetimes.
"""

from datetime import date, datetime

import pymongo
from bson.errors import InvalidId
from bson.objectid import ObjectId

from errors import BadRequestError

TRANSACTION_STATUSES = ("pending_approval", "completed", "disputed")
TERMINAL_STATUSES = ("completed", "disputed")

REPORT_TYPES = ("monthly", "quarterly", "annual", "project", "other")


def parse_id(value, label: str = "id") -> ObjectId:
    """Turn a path/body value into an ObjectId or raise a 400."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or ""))
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid {label} format")


def clean_text(value, label: str = "value") -> str:
    """Stripped text from a request field; None becomes "", non-strings are a 400."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BadRequestError(f"{label} must be text")
    return value.strip()


def ensure_indexes(db):
    db.institutions.create_index("name", unique=True)
    db.institutions.create_index("email", unique=True)
    db.departments.create_index("departmentId", unique=True)
    db.departments.create_index("email", unique=True)
    db.users.create_index("email", unique=True)
    db.transactions.create_index([("institution", pymongo.ASCENDING), ("department", pymongo.ASCENDING)])
    db.department_transactions.create_index(
        [("institution", pymongo.ASCENDING), ("department", pymongo.ASCENDING)]
    )
    db.anomalies.create_index([("institution", pymongo.ASCENDING), ("status", pymongo.ASCENDING)])
    db.chatbot_sessions.create_index(
        [("user", pymongo.ASCENDING), ("institution", pymongo.ASCENDING)], unique=True
    )
    db.conversations.create_index(
        [("user", pymongo.ASCENDING), ("department", pymongo.ASCENDING)], unique=True
    )
    db.messages.create_index([("conversation", pymongo.ASCENDING), ("createdAt", pymongo.ASCENDING)])


def serialize(value):
    """Make a Mongo document JSON friendly (ObjectId -> str, dates -> ISO)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items() if k != "password_hash"}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value
