# test/test_anomaly_detector.py

from datetime import datetime

import pytest
from bson import ObjectId

import anomaly_detector
from errors import BadRequestError, NotFoundError


@pytest.fixture
def ids(mock_db):
    inst_id, dept_id = ObjectId(), ObjectId()
    mock_db.institutions.insert_one({"_id": inst_id, "name": "Springfield College",
                                     "linkedDepartments": [dept_id]})
    mock_db.departments.insert_one({"_id": dept_id, "name": "Science",
                                    "departmentId": "DEPT-SCIE-abc123",
                                    "linkedInstitution": inst_id})
    return inst_id, dept_id


def allocate(db, inst_id, dept_id, amount, status="completed"):
    db.transactions.insert_one({"institution": inst_id, "department": dept_id,
                                "amount": amount, "status": status,
                                "date": datetime(2024, 1, 1)})


def spend(db, inst_id, dept_id, amount):
    db.department_transactions.insert_one({"institution": inst_id, "department": dept_id,
                                           "amount": amount, "recipient": "Acme",
                                           "date": datetime(2024, 2, 1)})


# --------------------------------------------------------
# TEST 1 — TOTALS
# --------------------------------------------------------
def test_only_completed_allocations_count(mock_db, ids):
    inst_id, dept_id = ids
    allocate(mock_db, inst_id, dept_id, 1000)
    allocate(mock_db, inst_id, dept_id, 400, status="pending_approval")
    allocate(mock_db, inst_id, dept_id, 250, status="disputed")
    allocate(mock_db, inst_id, ObjectId(), 999)
    spend(mock_db, inst_id, dept_id, 300)

    assert anomaly_detector.compute_totals(mock_db, dept_id, inst_id) == (1000, 300)


def test_totals_default_to_zero(mock_db, ids):
    inst_id, dept_id = ids
    assert anomaly_detector.compute_totals(mock_db, dept_id, inst_id) == (0, 0)


# --------------------------------------------------------
# TEST 2 — DETECTION
# --------------------------------------------------------
def test_within_budget_records_nothing(mock_db, ids):
    inst_id, dept_id = ids
    allocate(mock_db, inst_id, dept_id, 1000)
    spend(mock_db, inst_id, dept_id, 1000)

    assert anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id) is None
    assert mock_db.anomalies.count_documents({}) == 0


def test_each_overspend_check_records_a_snapshot(mock_db, ids):
    inst_id, dept_id = ids
    allocate(mock_db, inst_id, dept_id, 1000)
    spend(mock_db, inst_id, dept_id, 1200)

    first = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id)
    assert first["totalAllocated"] == 1000
    assert first["totalSpent"] == 1200
    assert first["overageAmount"] == 200
    assert first["status"] == "new"
    assert first["triggeredBy"] == anomaly_detector.SPENDING_UPLOAD_TRIGGER

    spend(mock_db, inst_id, dept_id, 100)
    second = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id)
    assert second["overageAmount"] == 300
    assert second["_id"] != first["_id"]
    assert mock_db.anomalies.count_documents({"department": dept_id}) == 2


def test_single_open_reuses_open_anomaly(mock_db, ids):
    inst_id, dept_id = ids
    spend(mock_db, inst_id, dept_id, 50)

    first = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id, single_open=True)
    again = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id, single_open=True)
    assert again["_id"] == first["_id"]
    assert mock_db.anomalies.count_documents({}) == 1

    anomaly_detector.set_anomaly_status(mock_db, first["_id"], inst_id, "resolved")
    third = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id, single_open=True)
    assert third["_id"] != first["_id"]


def test_overage_is_not_rounded(mock_db, ids):
    inst_id, dept_id = ids
    allocate(mock_db, inst_id, dept_id, 100.10)
    spend(mock_db, inst_id, dept_id, 100.35)

    anomaly = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id)
    assert anomaly["overageAmount"] == pytest.approx(0.25)


# --------------------------------------------------------
# TEST 3 — LISTING / REVIEW
# --------------------------------------------------------
def test_list_anomalies_message(mock_db, ids):
    inst_id, dept_id = ids
    allocate(mock_db, inst_id, dept_id, 1000)
    spend(mock_db, inst_id, dept_id, 2234.5)
    anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id)

    [item] = anomaly_detector.list_anomalies(mock_db, inst_id)
    assert item["department"]["name"] == "Science"
    assert item["message"] == (
        'The "Science" department has overspent its allocated budget by $1,234.50.'
    )


def test_list_anomalies_unknown_department(mock_db, ids):
    inst_id, _ = ids
    ghost = ObjectId()
    spend(mock_db, inst_id, ghost, 10)
    anomaly_detector.check_for_anomaly(mock_db, ghost, inst_id)

    [item] = anomaly_detector.list_anomalies(mock_db, inst_id)
    assert item["message"].startswith('The "An unknown department" department')


def test_set_anomaly_status_validation(mock_db, ids):
    inst_id, dept_id = ids
    spend(mock_db, inst_id, dept_id, 10)
    anomaly = anomaly_detector.check_for_anomaly(mock_db, dept_id, inst_id)

    with pytest.raises(BadRequestError):
        anomaly_detector.set_anomaly_status(mock_db, anomaly["_id"], inst_id, "ignored")
    with pytest.raises(NotFoundError):
        anomaly_detector.set_anomaly_status(mock_db, anomaly["_id"], ObjectId(), "resolved")

    updated = anomaly_detector.set_anomaly_status(mock_db, anomaly["_id"], inst_id, "acknowledged")
    assert updated["status"] == "acknowledged"
    # the snapshot figures are untouched
    assert mock_db.anomalies.find_one({"_id": anomaly["_id"]})["totalSpent"] == 10


def test_format_overage():
    assert anomaly_detector.format_overage(1234.5) == "$1,234.50"
    assert anomaly_detector.format_overage(None) == "$0.00"
