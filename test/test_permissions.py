# test/test_permissions.py

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from bson import ObjectId

from auth_tokens import ALGORITHM, create_token, decode_token
from errors import UnauthenticatedError, UnauthorizedError
from permissions import (
    Capability,
    Identity,
    Role,
    can_verify_transaction,
    is_conversation_participant,
    owns_session,
    policy,
)

SECRET = "unit-test-secret"


def identity(role, oid=None):
    return Identity(id=str(oid or ObjectId()), name="Someone", role=role)


# --------------------------------------------------------
# TEST 1 — ROLE POLICY
# --------------------------------------------------------
@pytest.mark.parametrize("role,capability,allowed", [
    (Role.INSTITUTION, Capability.UPLOAD_ALLOCATIONS, True),
    (Role.INSTITUTION, Capability.VERIFY_TRANSACTION, False),
    (Role.DEPARTMENT, Capability.VERIFY_TRANSACTION, True),
    (Role.DEPARTMENT, Capability.USE_ASSISTANT, False),
    (Role.USER, Capability.USE_ASSISTANT, True),
    (Role.USER, Capability.UPLOAD_SPENDING, False),
    (Role.INSTITUTION, Capability.FORUM_CHAT, False),
])
def test_policy(role, capability, allowed):
    assert policy.allows(role, capability) is allowed


def test_require_raises_for_missing_capability():
    with pytest.raises(UnauthorizedError):
        policy.require(identity(Role.USER), Capability.LINK_DEPARTMENT)
    policy.require(identity(Role.INSTITUTION), Capability.LINK_DEPARTMENT)


def test_role_parse():
    assert Role.parse("department") is Role.DEPARTMENT
    assert Role.parse("User") is Role.USER
    with pytest.raises(ValueError):
        Role.parse("admin")


# --------------------------------------------------------
# TEST 2 — OWNERSHIP CHECKS
# --------------------------------------------------------
def test_can_verify_transaction():
    inst_id, dept_id = ObjectId(), ObjectId()
    dept = identity(Role.DEPARTMENT, dept_id)
    department_doc = {"_id": dept_id, "linkedInstitution": inst_id}
    txn = {"department": dept_id, "institution": inst_id}

    assert can_verify_transaction(dept, department_doc, txn) is True
    assert can_verify_transaction(dept, None, txn) is False
    assert can_verify_transaction(dept, {**department_doc, "linkedInstitution": ObjectId()}, txn) is False
    assert can_verify_transaction(dept, department_doc, {**txn, "department": ObjectId()}) is False
    assert can_verify_transaction(identity(Role.INSTITUTION, dept_id), department_doc, txn) is False


def test_session_and_conversation_ownership():
    user_id, dept_id = ObjectId(), ObjectId()
    user = identity(Role.USER, user_id)
    dept = identity(Role.DEPARTMENT, dept_id)

    assert owns_session(user, {"user": user_id}) is True
    assert owns_session(identity(Role.USER), {"user": user_id}) is False

    conversation = {"user": user_id, "department": dept_id}
    assert is_conversation_participant(user, conversation)
    assert is_conversation_participant(dept, conversation)
    assert not is_conversation_participant(identity(Role.DEPARTMENT), conversation)
    assert not is_conversation_participant(identity(Role.INSTITUTION, user_id), conversation)


# --------------------------------------------------------
# TEST 3 — TOKENS
# --------------------------------------------------------
def test_token_round_trip():
    original = identity(Role.DEPARTMENT)
    decoded = decode_token(create_token(original, SECRET), SECRET)
    assert decoded == original


def test_token_rejections():
    token = create_token(identity(Role.USER), SECRET)

    with pytest.raises(UnauthenticatedError):
        decode_token(None, SECRET)
    with pytest.raises(UnauthenticatedError):
        decode_token(token, "another-secret")

    expired = jwt.encode(
        {"id": str(ObjectId()), "name": "x", "role": "User",
         "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        SECRET, algorithm=ALGORITHM,
    )
    with pytest.raises(UnauthenticatedError):
        decode_token(expired, SECRET)

    bad_role = jwt.encode({"id": str(ObjectId()), "name": "x", "role": "Admin"},
                          SECRET, algorithm=ALGORITHM)
    with pytest.raises(UnauthenticatedError):
        decode_token(bad_role, SECRET)
