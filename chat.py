"""
chat.py

Direct conversations between a public user and a department.

A conversation is keyed by the (user, department) pair, so there is at most
one per pair. Message senders are stored as a tagged reference:

    {"kind": "User" | "Department", "id": ObjectId}
"""

from datetime import datetime

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import BadRequestError, NotFoundError, UnauthorizedError
from models import clean_text, parse_id
from permissions import Identity, Role, is_conversation_participant

MESSAGE_MAX = 2000

SENDER_COLLECTIONS = {
    Role.USER.value: "users",
    Role.DEPARTMENT.value: "departments",
}


def start_conversation(db, identity: Identity, counterpart_id) -> dict:
    """
    Find or create the conversation between the caller and `counterpart_id`
    (a department id when a user calls, a user id when a department calls).
    """
    if identity.role is Role.USER:
        user_id = identity.object_id
        department_id = parse_id(counterpart_id, "department id")
        if not db.departments.find_one({"_id": department_id}, {"_id": 1}):
            raise NotFoundError("Department", department_id)
    elif identity.role is Role.DEPARTMENT:
        department_id = identity.object_id
        user_id = parse_id(counterpart_id, "user id")
        if not db.users.find_one({"_id": user_id}, {"_id": 1}):
            raise NotFoundError("User", user_id)
    else:
        raise UnauthorizedError("Only users and departments can start conversations.")

    key = {"user": user_id, "department": department_id}
    now = datetime.utcnow()
    try:
        return db.conversations.find_one_and_update(
            key,
            {"$setOnInsert": {"createdAt": now, "updatedAt": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        return db.conversations.find_one(key)


def list_conversations(db, identity: Identity) -> list:
    field = "user" if identity.role is Role.USER else "department"
    convs = list(db.conversations.find({field: identity.object_id}).sort("updatedAt", -1))
    return _with_participant_names(db, convs)


def _with_participant_names(db, convs: list) -> list:
    users = {u["_id"]: u.get("name") for u in db.users.find(
        {"_id": {"$in": [c["user"] for c in convs]}}, {"name": 1})}
    depts = {d["_id"]: d.get("name") for d in db.departments.find(
        {"_id": {"$in": [c["department"] for c in convs]}}, {"name": 1})}
    for c in convs:
        c["userName"] = users.get(c["user"])
        c["departmentName"] = depts.get(c["department"])
    return convs


def get_conversation(db, identity: Identity, conversation_id) -> dict:
    conversation_id = parse_id(conversation_id, "conversation id")
    conversation = db.conversations.find_one({"_id": conversation_id})
    if not conversation:
        raise NotFoundError("Conversation", conversation_id)
    if not is_conversation_participant(identity, conversation):
        raise UnauthorizedError("You are not a participant in this conversation.")
    return conversation


def conversation_details(db, identity: Identity, conversation_id) -> dict:
    conversation = get_conversation(db, identity, conversation_id)
    return _with_participant_names(db, [conversation])[0]


def list_messages(db, identity: Identity, conversation_id) -> list:
    conversation = get_conversation(db, identity, conversation_id)
    messages = list(db.messages.find({"conversation": conversation["_id"]}).sort("createdAt", 1))

    names = {}
    for kind, collection in SENDER_COLLECTIONS.items():
        ids = [m["sender"]["id"] for m in messages if m["sender"]["kind"] == kind]
        for doc in db[collection].find({"_id": {"$in": ids}}, {"name": 1}):
            names[(kind, doc["_id"])] = doc.get("name")
    for m in messages:
        m["sender"]["name"] = names.get((m["sender"]["kind"], m["sender"]["id"]))
    return messages


def send_message(db, identity: Identity, conversation_id, text: str) -> dict:
    text = clean_text(text, "text")
    if not text:
        raise BadRequestError("Message text cannot be empty.")
    if len(text) > MESSAGE_MAX:
        raise BadRequestError(f"Message must be at most {MESSAGE_MAX} characters.")

    conversation = get_conversation(db, identity, conversation_id)
    now = datetime.utcnow()
    doc = {
        "conversation": conversation["_id"],
        "text": text,
        "sender": {"kind": identity.role.value, "id": identity.object_id},
        "createdAt": now,
    }
    doc["_id"] = db.messages.insert_one(doc).inserted_id
    db.conversations.update_one({"_id": conversation["_id"]}, {"$set": {"updatedAt": now}})
    return doc
