"""In-memory membership records and their storage codec.

``MembershipAgreement`` is the unit of storage: the applicant's data, the
provenance metadata and the optional signed agreement scan. The scan is
kept out of the serialized blob so listings can skip it entirely.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DataLossError, InternalError


class LifecycleState(str, Enum):
    """Stage of a record in the membership process."""
    APPLICATION = "application"
    QUEUE = "queue"
    MEMBER = "member"
    DEQUEUE = "dequeue"
    ARCHIVE = "archive"


class Member(BaseModel):
    """Personal, credential and financial data of a (prospective) member."""
    model_config = ConfigDict(validate_assignment=True)

    id: int | None = None
    name: str | None = None
    street: str | None = None
    city: str | None = None
    zipcode: str | None = None
    country: str | None = None
    email: str | None = None
    email_verified: bool = False
    phone: str | None = None
    fee: int = Field(default=0, ge=0)
    fee_yearly: bool = False
    username: str | None = None
    pwhash: str | None = None
    has_key: bool = False
    payments_caught_up_to: int | None = Field(default=None, ge=0)


class MembershipMetadata(BaseModel):
    """Provenance and audit fields. Timestamps are Unix seconds."""
    model_config = ConfigDict(validate_assignment=True)

    request_timestamp: int | None = None
    request_source_ip: str | None = None
    user_agent: str | None = None
    verification_email: str | None = None
    approver_uid: str | None = None
    approval_timestamp: int | None = None
    comment: str | None = None
    goodbye_initiator: str | None = None
    goodbye_reason: str | None = None
    goodbye_timestamp: int | None = None


class MembershipAgreement(BaseModel):
    """A member, its metadata and the optional signed agreement document."""

    member: Member = Field(default_factory=Member)
    metadata: MembershipMetadata = Field(default_factory=MembershipMetadata)
    agreement_document: bytes | None = None

    @property
    def has_document(self) -> bool:
        return bool(self.agreement_document)


class MembershipRecord(BaseModel):
    """A stored agreement together with its key and current state."""

    key: str
    state: LifecycleState
    agreement: MembershipAgreement


def encode_agreement(agreement: MembershipAgreement) -> bytes:
    """Serialize an agreement without its document.

    Raises:
        InternalError: If the agreement cannot be serialized
    """
    try:
        return agreement.model_dump_json(exclude={"agreement_document"}).encode("utf-8")
    except (ValueError, TypeError) as e:
        raise InternalError(f"Cannot serialize membership record: {e}") from e


def decode_agreement(data: bytes | None, document: bytes | None = None) -> MembershipAgreement:
    """Deserialize a stored agreement and reattach its document.

    Raises:
        DataLossError: If the stored bytes are missing or not a valid record
    """
    if not data:
        raise DataLossError("Stored membership record is empty")
    try:
        agreement = MembershipAgreement.model_validate_json(data)
    except ValidationError as e:
        raise DataLossError(f"Error parsing stored membership data: {e}") from e
    if document:
        agreement.agreement_document = bytes(document)
    return agreement
