"""
permissions.py

Role -> capability policy for the three account kinds.

Routes never compare role strings directly; they ask the policy whether the
caller's role carries a capability, and use the ownership helpers below for
checks that depend on the document being touched.

    policy.require(identity, Capability.VERIFY_TRANSACTION)
    if not can_verify_transaction(identity, department_doc, txn):
        raise UnauthorizedError(...)
"""

from dataclasses import dataclass
from enum import Enum

from bson.objectid import ObjectId

from errors import UnauthorizedError


class Role(str, Enum):
    INSTITUTION = "Institution"
    DEPARTMENT = "Department"
    USER = "User"

    @classmethod
    def parse(cls, value) -> "Role":
        for role in cls:
            if str(value or "").strip().lower() == role.value.lower():
                return role
        raise ValueError(f"Unknown role: {value!r}")


class Capability(str, Enum):
    LINK_DEPARTMENT = "link_department"
    UPLOAD_ALLOCATIONS = "upload_allocations"
    VIEW_ANOMALIES = "view_anomalies"
    MANAGE_ANOMALIES = "manage_anomalies"
    VIEW_PENDING = "view_pending"
    VERIFY_TRANSACTION = "verify_transaction"
    UPLOAD_SPENDING = "upload_spending"
    USE_ASSISTANT = "use_assistant"
    FOLLOW_INSTITUTION = "follow_institution"
    FORUM_CHAT = "forum_chat"


POLICY: dict[Role, frozenset[Capability]] = {
    Role.INSTITUTION: frozenset({
        Capability.LINK_DEPARTMENT,
        Capability.UPLOAD_ALLOCATIONS,
        Capability.VIEW_ANOMALIES,
        Capability.MANAGE_ANOMALIES,
    }),
    Role.DEPARTMENT: frozenset({
        Capability.VIEW_PENDING,
        Capability.VERIFY_TRANSACTION,
        Capability.UPLOAD_SPENDING,
        Capability.FORUM_CHAT,
    }),
    Role.USER: frozenset({
        Capability.USE_ASSISTANT,
        Capability.FOLLOW_INSTITUTION,
        Capability.FORUM_CHAT,
    }),
}


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, as carried in the signed token."""

    id: str
    name: str
    role: Role

    @property
    def object_id(self) -> ObjectId:
        return ObjectId(self.id)

    def to_dict(self) -> dict:
        return {"name": self.name, "userId": self.id, "role": self.role.value}


class Policy:
    def __init__(self, grants: dict[Role, frozenset[Capability]]):
        self._grants = grants

    def allows(self, role: Role, capability: Capability) -> bool:
        return capability in self._grants.get(role, frozenset())

    def require(self, identity: Identity, capability: Capability) -> None:
        if not self.allows(identity.role, capability):
            raise UnauthorizedError("Unauthorized to access this route.")


policy = Policy(POLICY)


def can_verify_transaction(identity: Identity, department: dict | None, txn: dict) -> bool:
    """A department may verify only its own allocations from its linked institution."""
    if identity.role is not Role.DEPARTMENT or not department:
        return False
    if str(txn.get("department")) != identity.id:
        return False
    return str(department.get("linkedInstitution")) == str(txn.get("institution"))


def owns_session(identity: Identity, session_doc: dict) -> bool:
    return identity.role is Role.USER and str(session_doc.get("user")) == identity.id


def is_conversation_participant(identity: Identity, conversation: dict) -> bool:
    if identity.role is Role.USER:
        return str(conversation.get("user")) == identity.id
    if identity.role is Role.DEPARTMENT:
        return str(conversation.get("department")) == identity.id
    return False
