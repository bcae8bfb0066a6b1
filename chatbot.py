"""
chatbot.py

Public assistant sessions: one per (user, institution) pair.

Each question is answered from a context window made of the institution's
allocation history and the session's previous messages. The window is
bounded: only the newest transactions and messages are kept, and the text
is cut to a character budget with the oldest material dropped first.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import BadRequestError, NotFoundError, UnauthorizedError
from models import clean_text, parse_id
from permissions import Identity, owns_session

logger = logging.getLogger(__name__)

QUESTION_MAX = 2000


@dataclass(frozen=True)
class ContextLimits:
    max_transactions: int = 200
    max_history: int = 20
    max_chars: int = 24000


def get_or_create_session(db, user_id, institution_id) -> dict:
    """Return the user's session for the institution, creating it if needed."""
    user_id = parse_id(user_id, "user id")
    institution_id = parse_id(institution_id, "institution id")
    if not db.institutions.find_one({"_id": institution_id}, {"_id": 1}):
        raise NotFoundError("Institution", institution_id)

    key = {"user": user_id, "institution": institution_id}
    now = datetime.utcnow()
    try:
        return db.chatbot_sessions.find_one_and_update(
            key,
            {"$setOnInsert": {"messages": [], "createdAt": now, "updatedAt": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost the upsert race to a concurrent request
        return db.chatbot_sessions.find_one(key)


def _transaction_line(txn: dict, department_names: dict) -> str:
    when = txn.get("date")
    return json.dumps({
        "date": when.strftime("%Y-%m-%d") if isinstance(when, datetime) else str(when),
        "department": department_names.get(txn.get("department"), "Unknown"),
        "vendor": txn.get("vendor"),
        "description": txn.get("description"),
        "amount": txn.get("amount"),
        "status": txn.get("status"),
    })


def build_prompt(institution_name: str, transaction_lines: list, history: list,
                 question: str, limits: ContextLimits) -> str:
    """
    Assemble the prompt. `transaction_lines` are newest first and `history`
    is oldest first; both are trimmed until the text fits `limits.max_chars`.
    """
    tx_lines = list(transaction_lines[:limits.max_transactions])
    hist = list(history[-limits.max_history:]) if limits.max_history else []

    def render():
        tx_block = "\n".join(tx_lines) if tx_lines else "No transactions recorded."
        hist_block = "\n".join(f"{m['role']}: {m['text']}" for m in hist) or "(none)"
        return (
            f'You are a financial assistant for "{institution_name}". Answer the user\'s '
            f'LATEST QUESTION based on the "Transaction History" and the "Previous Conversation".\n\n'
            f"<CONTEXT_START>\nTransaction History:\n{tx_block}\n\n"
            f"Previous Conversation:\n{hist_block}\n<CONTEXT_END>\n\n"
            f"LATEST QUESTION: {question}\n\nANSWER:"
        )

    prompt = render()
    while len(prompt) > limits.max_chars and (tx_lines or hist):
        # trim the longer list, oldest entries first
        if tx_lines and (len(tx_lines) >= len(hist) or not hist):
            tx_lines.pop()
        else:
            hist.pop(0)
        prompt = render()
    return prompt


def build_context(db, session_doc: dict, question: str, limits: ContextLimits) -> str:
    institution = db.institutions.find_one({"_id": session_doc["institution"]}, {"name": 1}) or {}
    txns = list(
        db.transactions.find({"institution": session_doc["institution"]})
        .sort("date", -1)
        .limit(limits.max_transactions)
    )
    dept_ids = list({t.get("department") for t in txns})
    names = {d["_id"]: d.get("name") for d in db.departments.find({"_id": {"$in": dept_ids}}, {"name": 1})}
    lines = [_transaction_line(t, names) for t in txns]

    # the question itself was just appended to the history; keep it out of the past turns
    history = session_doc.get("messages", [])[:-1]
    return build_prompt(institution.get("name") or "this institution", lines, history, question, limits)


def post_message(db, identity: Identity, session_id, question: str, generate,
                 limits: ContextLimits = ContextLimits()) -> dict:
    """
    Append the question, ask the model, append the answer.

    Both appends are single $push updates. If `generate` raises, the
    question stays stored without an answer and the error propagates.
    """
    question = clean_text(question, "question")
    if not question:
        raise BadRequestError("Question cannot be empty.")
    if len(question) > QUESTION_MAX:
        raise BadRequestError(f"Question must be at most {QUESTION_MAX} characters.")

    session_id = parse_id(session_id, "session id")
    session_doc = db.chatbot_sessions.find_one({"_id": session_id})
    if not session_doc or not owns_session(identity, session_doc):
        raise UnauthorizedError("Not authorized to access this chat session.")

    session_doc = db.chatbot_sessions.find_one_and_update(
        {"_id": session_id},
        {
            "$push": {"messages": {"role": "user", "text": question, "timestamp": datetime.utcnow()}},
            "$set": {"updatedAt": datetime.utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )

    prompt = build_context(db, session_doc, question, limits)
    answer = generate(prompt)

    db.chatbot_sessions.update_one(
        {"_id": session_id},
        {
            "$push": {"messages": {"role": "model", "text": answer, "timestamp": datetime.utcnow()}},
            "$set": {"updatedAt": datetime.utcnow()},
        },
    )
    logger.info("Assistant answered session %s (%d prompt chars)", session_id, len(prompt))
    return {"answer": answer, "sessionId": str(session_id)}
