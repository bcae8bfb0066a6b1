# test/test_uploads.py

import io
from datetime import datetime

import fitz
import pytest
from werkzeug.datastructures import FileStorage

import uploads
from errors import BadRequestError, UnsupportedFileError


def upload(data: bytes, filename: str, content_type=None):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


# --------------------------------------------------------
# TEST 1 — FILE TYPE CHECKS
# --------------------------------------------------------
@pytest.mark.parametrize("filename,content_type,kind", [
    ("report.csv", "text/csv", "csv"),
    ("REPORT.CSV", "application/vnd.ms-excel", "csv"),
    ("report.pdf", "application/pdf", "pdf"),
    ("report.pdf", "application/octet-stream", "pdf"),
])
def test_accepted_types(filename, content_type, kind):
    assert uploads.file_kind(upload(b"x", filename, content_type)) == kind


@pytest.mark.parametrize("filename,content_type", [
    ("report.txt", "text/plain"),
    ("report.xlsx", None),
    ("report", None),
    ("report.pdf", "image/png"),
])
def test_rejected_types(filename, content_type):
    with pytest.raises(UnsupportedFileError):
        uploads.file_kind(upload(b"x", filename, content_type))


def test_missing_file():
    with pytest.raises(BadRequestError):
        uploads.file_kind(None)


# --------------------------------------------------------
# TEST 2 — EXTRACTION
# --------------------------------------------------------
def test_csv_rows_have_canonical_keys():
    data = b"\xef\xbb\xbfDepartment Name,Amount,Description,Date\nScience, 1000 ,Microscopes,2024-01-15\n"
    rows = uploads.extract_rows(upload(data, "a.csv", "text/csv"), uploads.ALLOCATION_FIELDS,
                                structurer=None)
    assert rows == [{"department_name": "Science", "amount": "1000",
                     "description": "Microscopes", "date": "2024-01-15"}]


def test_pdf_text_goes_through_structurer():
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Acme Supplies 450.00 2024-03-01 Lab gloves")
    data = doc.tobytes()
    doc.close()

    received = {}

    def structurer(text, fields):
        received["text"] = text
        received["fields"] = fields
        return [{"Recipient": "Acme Supplies", "Amount": 450, "Description": "Lab gloves",
                 "Date": "2024-03-01"}]

    rows = uploads.extract_rows(upload(data, "spend.pdf", "application/pdf"),
                                uploads.SPENDING_FIELDS, structurer)

    assert "Acme Supplies" in received["text"]
    assert received["fields"] is uploads.SPENDING_FIELDS
    assert rows[0]["recipient"] == "Acme Supplies"


def test_empty_file_rejected():
    with pytest.raises(BadRequestError):
        uploads.extract_rows(upload(b"", "a.csv", "text/csv"), uploads.SPENDING_FIELDS, None)


def test_unreadable_pdf_rejected():
    with pytest.raises(BadRequestError):
        uploads.read_pdf_text(b"definitely not a pdf")


# --------------------------------------------------------
# TEST 3 — ROW NORMALISATION
# --------------------------------------------------------
@pytest.mark.parametrize("raw,expected", [
    ("1200", 1200.0),
    ("$1,200.50", 1200.5),
    (75, 75.0),
    ("0", None),
    ("-5", None),
    ("abc", None),
    (None, None),
])
def test_parse_amount(raw, expected):
    assert uploads.parse_amount(raw) == expected


def test_parse_date_formats():
    assert uploads.parse_date("2024-03-01") == datetime(2024, 3, 1)
    assert uploads.parse_date("03/01/2024") == datetime(2024, 3, 1)
    assert uploads.parse_date("2024-03-01T10:30:00") == datetime(2024, 3, 1, 10, 30)
    assert uploads.parse_date("next tuesday") is None


def test_normalize_allocation_row():
    row = uploads.normalize_allocation_row({
        "department": " Science ", "amount": "1,000", "description": "Microscopes",
        "date": "2024-01-15", "vendor": "",
    })
    assert row == {"amount": 1000.0, "date": datetime(2024, 1, 15), "description": "Microscopes",
                   "department_name": "Science", "vendor": None}

    assert uploads.normalize_allocation_row({"amount": "10", "description": "x",
                                             "date": "2024-01-01"}) is None


def test_normalize_spending_row_truncates_description():
    row = uploads.normalize_spending_row({
        "vendor": "Acme", "amount": 20, "description": "d" * 400, "date": "2024-01-01",
    })
    assert row["recipient"] == "Acme"
    assert len(row["description"]) == uploads.DESCRIPTION_MAX

    assert uploads.normalize_spending_row({"recipient": "Acme", "amount": 20,
                                           "description": "", "date": "2024-01-01"}) is None
