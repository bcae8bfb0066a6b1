import os
import secrets
import time
from functools import wraps
from datetime import datetime

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
import bcrypt

import analytics
import anomaly_detector
import assistant_client
import chat
import chatbot
import transactions
import uploads
from auth_tokens import (
    COOKIE_NAME,
    attach_token_cookie,
    clear_token_cookie,
    create_token,
    decode_token,
)
from errors import (
    ApiError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthenticatedError,
)
from logging_config import configure_logging
from models import clean_text, ensure_indexes, parse_id, serialize
from permissions import Capability, Identity, Role, policy

load_dotenv()

app = Flask(__name__)

SECRET_KEY = os.getenv("TRANSPARENCY_SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("TRANSPARENCY_SECRET_KEY is not set in .env")
app.secret_key = SECRET_KEY

MONGO_URI = os.getenv("MONGO_URI")
if not MONGO_URI:
    raise RuntimeError("MONGO_URI is not set in .env")

MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "FinancialTransparency")


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "1"))
COOKIE_SECURE = _env_flag("COOKIE_SECURE")
ANOMALY_SINGLE_OPEN = _env_flag("ANOMALY_SINGLE_OPEN")
CHAT_LIMITS = chatbot.ContextLimits(
    max_transactions=int(os.getenv("CHAT_MAX_TRANSACTIONS", "200")),
    max_history=int(os.getenv("CHAT_MAX_HISTORY", "20")),
    max_chars=int(os.getenv("CHAT_MAX_CONTEXT_CHARS", "24000")),
)

app.config["DEBUG"] = _env_flag("FLASK_DEBUG")
app.config["TESTING"] = _env_flag("FLASK_TESTING")
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_MB", "10")) * 1024 * 1024

configure_logging(app)

mongo_client = MongoClient(MONGO_URI)
db = mongo_client.get_database(MONGO_DB_NAME)
institutions_col = db.get_collection("institutions")
departments_col = db.get_collection("departments")
users_col = db.get_collection("users")
transactions_col = db.get_collection("transactions")
department_transactions_col = db.get_collection("department_transactions")
reports_col = db.get_collection("reports")
anomalies_col = db.get_collection("anomalies")
chatbot_sessions_col = db.get_collection("chatbot_sessions")

ensure_indexes(db)

ACCOUNT_COLLECTIONS = {
    Role.INSTITUTION: institutions_col,
    Role.DEPARTMENT: departments_col,
    Role.USER: users_col,
}


# ---------------------------
# HELPERS
# ---------------------------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def current_identity() -> Identity:
    return decode_token(request.cookies.get(COOKIE_NAME), SECRET_KEY)


def requires(capability: Capability | None = None):
    """Authenticate the token cookie, then check the role's capability."""
    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            identity = current_identity()
            if capability is not None:
                policy.require(identity, capability)
            g.identity = identity
            return view_func(*args, **kwargs)
        return wrapped
    return decorator


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


def ok(payload: dict | None = None, status: int = 200):
    body = {"ok": True}
    body.update(serialize(payload or {}))
    return jsonify(body), status


def find_institution(institution_id) -> dict:
    institution_id = parse_id(institution_id, "Institution ID")
    institution = institutions_col.find_one({"_id": institution_id})
    if not institution:
        raise NotFoundError("Institution", institution_id)
    return institution


# ---------------------------
# REQUEST LOGGING / ERRORS
# ---------------------------

@app.before_request
def _start_timer():
    g.request_started = time.perf_counter()


@app.after_request
def log_after_request(response):
    path = request.path or ""
    if path.startswith("/api/"):
        started = getattr(g, "request_started", None)
        duration = (time.perf_counter() - started) * 1000 if started else None
        identity = getattr(g, "identity", None)
        app.logger.info(
            "%s %s -> %s", request.method, path, response.status_code,
            extra={
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "duration_ms": duration,
                "role": identity.role.value if identity else None,
            },
        )
    return response


@app.errorhandler(ApiError)
def handle_api_error(e):
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    limit_mb = app.config["MAX_CONTENT_LENGTH"] // (1024 * 1024)
    return jsonify({"ok": False, "message": f"File is too large. The limit is {limit_mb}MB."}), 413


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    return jsonify({"ok": False, "message": e.description or e.name}), e.code


@app.errorhandler(Exception)
def handle_unexpected(e):
    app.logger.error("Unhandled error on %s: %s", request.path, e, exc_info=True)
    return jsonify({"ok": False, "message": "Something went wrong, please try again later"}), 500


@app.route("/api/v1/health")
def health():
    return jsonify({"ok": True, "app": "Financial Transparency API"})


# =========================================
# AUTH
# =========================================

def _make_department_code(name: str) -> str:
    prefix = "".join(ch for ch in name.upper() if ch.isalnum())[:4] or "DEPT"
    return f"DEPT-{prefix}-{secrets.token_hex(3)}"


def _login_response(identity: Identity, payload: dict, status: int):
    token = create_token(identity, SECRET_KEY, TOKEN_TTL_DAYS)
    response, code = ok({"user": identity.to_dict(), **payload}, status)
    attach_token_cookie(response, token, TOKEN_TTL_DAYS, COOKIE_SECURE)
    return response, code


def _parse_role(kind: str) -> Role:
    try:
        return Role.parse(kind)
    except ValueError:
        raise NotFoundError("Account type", kind)


@app.route("/api/v1/auth/<kind>/register", methods=["POST"])
def api_register(kind):
    role = _parse_role(kind)
    data = json_body()

    name = clean_text(data.get("name"), "name")
    email = clean_text(data.get("email"), "email").lower()
    password = data.get("password") or ""
    if not isinstance(password, str):
        raise BadRequestError("password must be text")

    if not name or not email or not password:
        raise BadRequestError("Please provide all values")
    if "@" not in email:
        raise BadRequestError("Please provide a valid email address")
    if len(password) < 6:
        raise BadRequestError("Password must be 6+ characters")

    collection = ACCOUNT_COLLECTIONS[role]
    if collection.find_one({"email": email}):
        raise ConflictError("Email already exists")

    doc = {
        "name": name,
        "email": email,
        "password_hash": hash_password(password),
        "created_at": datetime.utcnow(),
    }
    if role is Role.INSTITUTION:
        if institutions_col.find_one({"name": name}):
            raise ConflictError("An institution with this name already exists")
        doc["linkedDepartments"] = []
    elif role is Role.DEPARTMENT:
        doc["departmentId"] = _make_department_code(name)
        doc["linkedInstitution"] = None
    else:
        doc["followedInstitutions"] = []

    try:
        result = collection.insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError("Email or name already exists")

    identity = Identity(id=str(result.inserted_id), name=name, role=role)
    extra = {"departmentId": doc["departmentId"]} if role is Role.DEPARTMENT else {}
    return _login_response(identity, extra, 201)


@app.route("/api/v1/auth/<kind>/login", methods=["POST"])
def api_login(kind):
    role = _parse_role(kind)
    data = json_body()
    email = clean_text(data.get("email"), "email").lower()
    password = data.get("password") or ""
    if not isinstance(password, str):
        raise BadRequestError("password must be text")
    if not email or not password:
        raise BadRequestError("Please provide email and password")

    account = ACCOUNT_COLLECTIONS[role].find_one({"email": email})
    if not account or not verify_password(password, account.get("password_hash")):
        raise UnauthenticatedError("Invalid Credentials")

    identity = Identity(id=str(account["_id"]), name=account.get("name", ""), role=role)
    return _login_response(identity, {}, 200)


@app.route("/api/v1/auth/logout", methods=["GET"])
def api_logout():
    response, code = ok({"message": "user logged out!"})
    clear_token_cookie(response)
    return response, code


@app.route("/api/v1/auth/me")
@requires()
def api_me():
    return ok({"user": g.identity.to_dict()})


# =========================================
# INSTITUTION
# =========================================

@app.route("/api/v1/institution/link-department", methods=["POST"])
@requires(Capability.LINK_DEPARTMENT)
def api_link_department():
    department = transactions.link_department(db, g.identity.id, json_body().get("departmentId"))
    return ok({
        "message": "Department successfully linked!",
        "department": {"id": department["_id"], "name": department.get("name"),
                       "departmentId": department.get("departmentId")},
    })


@app.route("/api/v1/institution/upload-transactions", methods=["POST"])
@requires(Capability.UPLOAD_ALLOCATIONS)
def api_upload_transactions():
    upload = request.files.get("transactionsFile")
    rows = uploads.extract_rows(upload, uploads.ALLOCATION_FIELDS, assistant_client.structure_records)
    result = transactions.record_allocations(
        db,
        g.identity.id,
        {
            "name": request.form.get("reportName"),
            "type": (request.form.get("reportType") or "other").strip().lower(),
            "date": uploads.parse_date(request.form.get("reportDate")),
            "file_name": upload.filename,
        },
        rows,
    )
    return ok({
        "message": f"File processed successfully. {result['created']} transactions are now pending approval.",
        **result,
    }, 201)


@app.route("/api/v1/institution/anomalies")
@requires(Capability.VIEW_ANOMALIES)
def api_institution_anomalies():
    anomalies = anomaly_detector.list_anomalies(db, g.identity.id)
    return ok({"count": len(anomalies), "anomalies": anomalies})


@app.route("/api/v1/institution/anomalies/<anomaly_id>", methods=["PATCH"])
@requires(Capability.MANAGE_ANOMALIES)
def api_update_anomaly(anomaly_id):
    anomaly = anomaly_detector.set_anomaly_status(
        db, anomaly_id, g.identity.id, json_body().get("status"))
    return ok({"anomaly": anomaly})


# =========================================
# DEPARTMENT
# =========================================

@app.route("/api/v1/department/pending-transactions")
@requires(Capability.VIEW_PENDING)
def api_pending_transactions():
    txns = transactions.pending_transactions(db, g.identity.id)
    return ok({"count": len(txns), "transactions": txns})


@app.route("/api/v1/department/verify-transaction/<transaction_id>", methods=["PATCH"])
@requires(Capability.VERIFY_TRANSACTION)
def api_verify_transaction(transaction_id):
    status = json_body().get("status")
    txn = transactions.verify_transaction(db, g.identity, transaction_id, status)
    return ok({"message": f"Transaction successfully updated to '{status}'", "transaction": txn})


@app.route("/api/v1/department/upload-spending", methods=["POST"])
@requires(Capability.UPLOAD_SPENDING)
def api_upload_spending():
    report_name = (request.form.get("reportName") or "").strip()
    upload = request.files.get("spendingFile")
    uploads.file_kind(upload)
    if not report_name:
        raise BadRequestError("Please provide a name for this spending report.")
    rows = uploads.extract_rows(upload, uploads.SPENDING_FIELDS, assistant_client.structure_records)

    result = transactions.record_spending(
        db, g.identity.id, report_name, rows,
        original_file_name=upload.filename,
        single_open_anomaly=ANOMALY_SINGLE_OPEN,
    )
    anomaly = result.pop("anomaly")
    return ok({
        "message": f"Report '{report_name}' processed successfully. "
                   f"{result['created']} expenses have been logged.",
        "anomalyDetected": anomaly is not None,
        "overageAmount": anomaly["overageAmount"] if anomaly else None,
        **result,
    }, 201)


# =========================================
# PUBLIC
# =========================================

@app.route("/api/v1/public/institutions")
def api_public_institutions():
    search = (request.args.get("search") or "").strip()
    query = {}
    if search:
        query["name"] = analytics.text_filter(search)
    institutions = list(institutions_col.find(query, {"name": 1}).sort("name", 1))
    return ok({"count": len(institutions), "institutions": institutions})


@app.route("/api/v1/public/institution/<institution_id>")
def api_public_institution(institution_id):
    institution = find_institution(institution_id)
    return ok({"institution": {"_id": institution["_id"], "name": institution.get("name")}})


@app.route("/api/v1/public/institution/<institution_id>/departments")
def api_public_departments(institution_id):
    institution = find_institution(institution_id)
    departments = list(departments_col.find(
        {"_id": {"$in": institution.get("linkedDepartments", [])}}, {"name": 1}))
    return ok({"departments": departments})


@app.route("/api/v1/public/institution/<institution_id>/reports")
def api_public_reports(institution_id):
    institution = find_institution(institution_id)
    reports = list(reports_col.find(
        {"institution": institution["_id"]},
        {"name": 1, "type": 1, "reportDate": 1},
    ).sort("reportDate", -1))
    return ok({"reports": reports})


@app.route("/api/v1/public/institution/<institution_id>/anomalies")
def api_public_anomalies(institution_id):
    institution = find_institution(institution_id)
    anomalies = anomaly_detector.list_anomalies(db, institution["_id"])
    return ok({"count": len(anomalies), "anomalies": anomalies})


@app.route("/api/v1/public/institution/<institution_id>/transactions")
def api_public_transactions(institution_id):
    institution = find_institution(institution_id)
    txns = analytics.search_allocations(
        db,
        institution["_id"],
        search=request.args.get("search"),
        department=request.args.get("department"),
        status=request.args.get("status"),
    )
    return ok({"count": len(txns), "transactions": txns})


@app.route("/api/v1/public/institution/<institution_id>/ledger")
def api_public_ledger(institution_id):
    institution = find_institution(institution_id)
    try:
        page = int(request.args.get("page", 1))
    except (TypeError, ValueError):
        raise BadRequestError("page must be an integer")
    return ok(analytics.combined_ledger(db, institution["_id"],
                                        search=request.args.get("search"), page=page))


@app.route("/api/v1/public/flowchart/<institution_id>")
def api_flowchart(institution_id):
    institution = find_institution(institution_id)
    return ok(analytics.flowchart_data(db, institution))


@app.route("/api/v1/public/analytics/<institution_id>/department-share")
def api_department_share(institution_id):
    institution = find_institution(institution_id)
    return ok({"departmentShares": analytics.department_share(db, institution["_id"])})


@app.route("/api/v1/public/analytics/<institution_id>/spending-trend")
def api_spending_trend(institution_id):
    institution = find_institution(institution_id)
    group_by = (request.args.get("groupBy") or "monthly").strip().lower()
    trend = analytics.spending_trend(db, institution["_id"], group_by)
    return ok({"groupBy": group_by, "spendingTrend": trend})


# =========================================
# PUBLIC USER
# =========================================

@app.route("/api/v1/user/dashboard")
@requires(Capability.FOLLOW_INSTITUTION)
def api_user_dashboard():
    user = users_col.find_one({"_id": g.identity.object_id})
    if not user:
        raise NotFoundError("User", g.identity.id)
    followed = list(institutions_col.find(
        {"_id": {"$in": user.get("followedInstitutions", [])}}, {"name": 1, "email": 1}))
    return ok({"followedInstitutions": followed})


@app.route("/api/v1/user/follow/<institution_id>", methods=["POST"])
@requires(Capability.FOLLOW_INSTITUTION)
def api_follow(institution_id):
    institution = find_institution(institution_id)
    users_col.update_one({"_id": g.identity.object_id},
                         {"$addToSet": {"followedInstitutions": institution["_id"]}})
    return ok({"message": f"You are now following {institution.get('name')}"})


@app.route("/api/v1/user/unfollow/<institution_id>", methods=["POST"])
@requires(Capability.FOLLOW_INSTITUTION)
def api_unfollow(institution_id):
    institution_id = parse_id(institution_id, "Institution ID")
    users_col.update_one({"_id": g.identity.object_id},
                         {"$pull": {"followedInstitutions": institution_id}})
    return ok({"message": "You have unfollowed the institution."})


# =========================================
# AI ASSISTANT
# =========================================

@app.route("/api/v1/chatbot/session", methods=["POST"])
@requires(Capability.USE_ASSISTANT)
def api_chatbot_session():
    institution_id = json_body().get("institutionId")
    if not institution_id:
        raise BadRequestError("Institution ID is required.")
    session_doc = chatbot.get_or_create_session(db, g.identity.id, institution_id)
    return ok({"session": session_doc})


@app.route("/api/v1/chatbot/session/<session_id>/message", methods=["POST"])
@requires(Capability.USE_ASSISTANT)
def api_chatbot_message(session_id):
    result = chatbot.post_message(
        db,
        g.identity,
        session_id,
        json_body().get("question"),
        generate=assistant_client.generate_reply,
        limits=CHAT_LIMITS,
    )
    return ok(result)


# =========================================
# FORUM CHAT
# =========================================

@app.route("/api/v1/chat", methods=["GET"])
@requires(Capability.FORUM_CHAT)
def api_list_conversations():
    return ok({"conversations": chat.list_conversations(db, g.identity)})


@app.route("/api/v1/chat", methods=["POST"])
@requires(Capability.FORUM_CHAT)
def api_start_conversation():
    data = json_body()
    counterpart = data.get("departmentId") if g.identity.role is Role.USER else data.get("userId")
    if not counterpart:
        raise BadRequestError("Please provide who the conversation is with.")
    return ok({"conversation": chat.start_conversation(db, g.identity, counterpart)})


@app.route("/api/v1/chat/<conversation_id>", methods=["GET"])
@requires(Capability.FORUM_CHAT)
def api_conversation_details(conversation_id):
    return ok({"conversation": chat.conversation_details(db, g.identity, conversation_id)})


@app.route("/api/v1/chat/<conversation_id>/messages", methods=["GET"])
@requires(Capability.FORUM_CHAT)
def api_list_messages(conversation_id):
    return ok({"messages": chat.list_messages(db, g.identity, conversation_id)})


@app.route("/api/v1/chat/<conversation_id>/messages", methods=["POST"])
@requires(Capability.FORUM_CHAT)
def api_send_message(conversation_id):
    message = chat.send_message(db, g.identity, conversation_id, json_body().get("text"))
    return ok({"message": message}, 201)


# ---------------------------
# RUN APP
# ---------------------------

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=app.config["DEBUG"])
