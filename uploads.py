"""
uploads.py

Turns an uploaded CSV or PDF report into clean transaction rows.

CSV files are read directly. PDF files have their text extracted with
PyMuPDF and the text is handed to a `structurer` callable (normally
assistant_client.structure_records) that returns a list of dicts.

Only .csv and .pdf are accepted; anything else is rejected before any
parsing happens. The 10MB cap is enforced by Flask's MAX_CONTENT_LENGTH.
"""

import csv
import io
import logging
from datetime import datetime

import fitz
from werkzeug.utils import secure_filename

from errors import BadRequestError, UnsupportedFileError

logger = logging.getLogger(__name__)

ALLOWED_TYPES = {
    "csv": {"text/csv", "application/csv", "application/vnd.ms-excel", "text/plain"},
    "pdf": {"application/pdf"},
}

ALLOCATION_FIELDS = {
    "department_name": "required, the receiving department",
    "amount": "required, as a number only",
    "description": "required, must clearly explain the purpose of the expense",
    "date": "required, in YYYY-MM-DD format",
    "vendor": "optional, null if the expense is internal like salaries",
}

SPENDING_FIELDS = {
    "recipient": "required, the project name or vendor the money went to",
    "amount": "required, as a number only",
    "description": "required, must clearly explain the purpose of the expense",
    "date": "required, in YYYY-MM-DD format",
}

DESCRIPTION_MAX = 250


def file_kind(file_storage) -> str:
    """Return 'csv' or 'pdf' for an accepted upload, else raise."""
    if file_storage is None or not file_storage.filename:
        raise BadRequestError("No file uploaded.")

    filename = secure_filename(file_storage.filename)
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in ALLOWED_TYPES:
        raise UnsupportedFileError()

    mimetype = (file_storage.mimetype or "").lower()
    if mimetype and mimetype != "application/octet-stream" and mimetype not in ALLOWED_TYPES[ext]:
        raise UnsupportedFileError()
    return ext


def _canon(key) -> str:
    return str(key or "").strip().lower().replace(" ", "_").replace("-", "_")


def read_csv_rows(data: bytes) -> list:
    text = data.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    return [{_canon(k): (v or "").strip() for k, v in row.items() if k} for row in reader]


def read_pdf_text(data: bytes) -> str:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception:
        raise BadRequestError("The PDF file could not be read.")
    try:
        text = "\n".join(page.get_text() for page in doc)
    finally:
        doc.close()
    if not text.strip():
        raise BadRequestError("No text could be extracted from the PDF.")
    return text


def extract_rows(file_storage, fields: dict, structurer) -> list:
    """Raw row dicts from an upload; keys are lower_snake_case."""
    kind = file_kind(file_storage)
    data = file_storage.read()
    if not data:
        raise BadRequestError("The uploaded file is empty.")

    if kind == "csv":
        rows = read_csv_rows(data)
    else:
        rows = structurer(read_pdf_text(data), fields)
        rows = [{_canon(k): v for k, v in row.items()} for row in rows]

    logger.info("Extracted %d raw rows from %s upload", len(rows), kind)
    return rows


def parse_amount(value):
    if value is None:
        return None
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        cleaned = str(value).replace(",", "").replace("$", "").strip()
        try:
            amount = float(cleaned)
        except ValueError:
            return None
    return amount if amount > 0 else None


def parse_date(value):
    if isinstance(value, datetime):
        return value
    text = str(value or "").strip()
    for fmt in ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError:
        return None


def _common(row: dict):
    amount = parse_amount(row.get("amount"))
    when = parse_date(row.get("date"))
    description = str(row.get("description") or "").strip()[:DESCRIPTION_MAX]
    if amount is None or when is None or not description:
        return None
    return {"amount": amount, "date": when, "description": description}


def normalize_allocation_row(row: dict):
    """{department_name, amount, description, date, vendor?} or None."""
    base = _common(row)
    department = str(row.get("department_name") or row.get("department") or "").strip()
    if base is None or not department:
        logger.warning("Skipping invalid allocation row: %s", row)
        return None
    vendor = str(row.get("vendor") or "").strip() or None
    return {**base, "department_name": department, "vendor": vendor}


def normalize_spending_row(row: dict):
    """{recipient, amount, description, date} or None."""
    base = _common(row)
    recipient = str(row.get("recipient") or row.get("vendor") or "").strip()
    if base is None or not recipient:
        logger.warning("Skipping invalid spending row: %s", row)
        return None
    return {**base, "recipient": recipient}
