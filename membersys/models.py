"""Core SQLAlchemy models (2.x style) for the relational backend.

One ``members`` row per record for its whole lifetime; the lifecycle state
is the ``membership_status`` column. Agreement scans live in a side table.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, LargeBinary, String, Text, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# 64-bit keys on PostgreSQL; SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class MembershipStatus(str, Enum):
    """Values of ``members.membership_status``."""
    APPLICATION = "APPLICATION"
    IN_CREATION = "IN_CREATION"
    ACTIVE = "ACTIVE"
    IN_DELETION = "IN_DELETION"
    ARCHIVED = "ARCHIVED"


class MembershipAgreementScan(Base):
    """Signed membership agreement documents."""
    __tablename__ = "membership_agreement_scans"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class MemberRow(Base):
    """Applicants, queued, active, departing and archived members."""
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str | None] = mapped_column(String(255))
    street: Mapped[str | None] = mapped_column(String(255))
    city: Mapped[str | None] = mapped_column(String(255))
    zipcode: Mapped[str | None] = mapped_column(String(32))
    country: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64))
    fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    fee_yearly: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    username: Mapped[str | None] = mapped_column(String(64))
    pwhash: Mapped[str | None] = mapped_column(String(255))
    has_key: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payments_caught_up_to: Mapped[int | None] = mapped_column(BigInteger)

    # Metadata
    request_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    request_source_ip: Mapped[str | None] = mapped_column(String(64))
    verification_email: Mapped[str | None] = mapped_column(String(255))
    approval_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approver_uid: Mapped[str | None] = mapped_column(String(255))
    request_comment: Mapped[str | None] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text)
    goodbye_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    goodbye_initiator: Mapped[str | None] = mapped_column(String(255))
    goodbye_reason: Mapped[str | None] = mapped_column(Text)

    membership_status: Mapped[MembershipStatus] = mapped_column(
        SAEnum(MembershipStatus, name="membership_status"),
        default=MembershipStatus.APPLICATION,
        nullable=False,
    )
    agreement_scan_id: Mapped[int | None] = mapped_column(
        BigIntId,
        ForeignKey("membership_agreement_scans.id", ondelete="SET NULL"),
    )
    # Archived rows may be reclaimed after this instant.
    retain_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Listings never load scans; point lookups ask for them explicitly.
    agreement_scan: Mapped[MembershipAgreementScan | None] = relationship(lazy="raise")

    __table_args__ = (
        Index("ix_members_status_id", "membership_status", "id"),
        Index("ix_members_status_retain_until", "membership_status", "retain_until"),
        # A user name belongs to at most one active member.
        Index(
            "uq_members_active_username",
            "username",
            unique=True,
            postgresql_where=text("membership_status = 'ACTIVE'"),
            sqlite_where=text("membership_status = 'ACTIVE'"),
        ),
    )
