"""Relational backend on SQLAlchemy (PostgreSQL in production, SQLite in tests).

A record keeps one ``members`` row for its whole life; its lifecycle state
is ``membership_status`` and a transition is a conditional ``UPDATE`` of
that column. Keys are the decimal row id. Signed agreements live in
``membership_agreement_scans`` and are only loaded by point lookups.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterator

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import PostgresSettings
from ..db import create_engine_from_settings, create_session_factory
from ..errors import (
    DataLossError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    UnavailableError,
)
from ..lifecycle import apply_transition, retention_for
from ..models import MemberRow, MembershipAgreementScan, MembershipStatus
from ..records import LifecycleState, Member, MembershipAgreement, MembershipMetadata, MembershipRecord
from .base import MembershipStore

logger = logging.getLogger(__name__)

MEMBER_COLUMNS = (
    "name", "street", "city", "zipcode", "country", "email", "email_verified", "phone",
    "fee", "fee_yearly", "username", "pwhash", "has_key", "payments_caught_up_to",
)


@contextmanager
def translate_db_errors(action: str) -> Iterator[None]:
    """Map SQLAlchemy and socket failures onto store errors."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise UnavailableError(f"{action}: database unavailable: {e}") from e
    except IntegrityError as e:
        raise FailedPreconditionError(f"{action}: constraint violated: {e.orig}") from e
    except SQLAlchemyError as e:
        raise InternalError(f"{action}: database error: {e}") from e
    except OSError as e:
        raise UnavailableError(f"{action}: cannot reach database: {e}") from e


def parse_row_id(key: str) -> int:
    """Parse a caller-supplied relational key.

    Raises:
        InvalidArgumentError: If ``key`` is not a positive decimal integer
    """
    if not isinstance(key, str) or not key.isascii() or not key.isdigit():
        raise InvalidArgumentError(f"Cannot parse {key!r} as a member id", key=str(key))
    row_id = int(key)
    if row_id <= 0 or row_id >= 2**63:
        raise InvalidArgumentError(f"Member id {key!r} is out of range", key=key)
    return row_id


def to_epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def metadata_columns(metadata: MembershipMetadata) -> dict[str, Any]:
    return {
        "request_timestamp": from_epoch(metadata.request_timestamp),
        "request_source_ip": metadata.request_source_ip,
        "user_agent": metadata.user_agent,
        "verification_email": metadata.verification_email,
        "approver_uid": metadata.approver_uid,
        "approval_timestamp": from_epoch(metadata.approval_timestamp),
        "request_comment": metadata.comment,
        "goodbye_initiator": metadata.goodbye_initiator,
        "goodbye_reason": metadata.goodbye_reason,
        "goodbye_timestamp": from_epoch(metadata.goodbye_timestamp),
    }


def row_to_agreement(row: MemberRow, document: bytes | None = None) -> MembershipAgreement:
    """Rebuild the in-memory agreement from a ``members`` row.

    Raises:
        DataLossError: If the stored columns do not form a valid record
    """
    try:
        member = Member(
            id=row.id,
            **{column: getattr(row, column) for column in MEMBER_COLUMNS},
        )
        metadata = MembershipMetadata(
            request_timestamp=to_epoch(row.request_timestamp),
            request_source_ip=row.request_source_ip,
            user_agent=row.user_agent,
            verification_email=row.verification_email,
            approver_uid=row.approver_uid,
            approval_timestamp=to_epoch(row.approval_timestamp),
            comment=row.request_comment,
            goodbye_initiator=row.goodbye_initiator,
            goodbye_reason=row.goodbye_reason,
            goodbye_timestamp=to_epoch(row.goodbye_timestamp),
        )
    except ValidationError as e:
        raise DataLossError(f"Member row {row.id} holds invalid data: {e}", key=str(row.id)) from e
    return MembershipAgreement(member=member, metadata=metadata, agreement_document=document)


class RelationalStore(MembershipStore):
    """Membership store over the ``members`` / ``membership_agreement_scans`` tables."""

    backend_name = "postgresql"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
        fetch_size: int = 100,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.session_factory = session_factory
        self.engine = engine
        self.fetch_size = fetch_size

    @classmethod
    async def connect(
        cls,
        config: PostgresSettings,
        *,
        request_timeout: float | None = None,
        attempts: int = 3,
    ) -> RelationalStore:
        """Build the engine and make sure the database answers."""
        engine = create_engine_from_settings(config)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(UnavailableError),
                reraise=True,
            ):
                with attempt:
                    with translate_db_errors("connect"):
                        async with engine.connect() as conn:
                            await conn.execute(text("SELECT 1"))
        except UnavailableError:
            await engine.dispose()
            raise
        logger.info(f"Connected to relational database {engine.url.render_as_string(hide_password=True)}")
        return cls(
            create_session_factory(engine),
            engine=engine,
            fetch_size=config.fetch_size,
            request_timeout=request_timeout,
        )

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def _status(self, state: LifecycleState) -> MembershipStatus:
        return MembershipStatus(self.layouts[state].status)

    def _in_state(self, stmt, state: LifecycleState):
        stmt = stmt.where(MemberRow.membership_status == self._status(state))
        if state == LifecycleState.ARCHIVE:
            # Expired archive rows are invisible even before they are reclaimed.
            stmt = stmt.where(
                or_(MemberRow.retain_until.is_(None), MemberRow.retain_until > from_epoch(self.now()))
            )
        return stmt

    async def _claim_username(self, session: AsyncSession, username: str | None, row_id: int) -> None:
        """Refuse a user name another active member already holds."""
        if not username:
            return
        holder = await session.scalar(
            self._in_state(
                select(MemberRow.id).where(MemberRow.username == username, MemberRow.id != row_id),
                LifecycleState.MEMBER,
            ).limit(1)
        )
        if holder is not None:
            raise FailedPreconditionError(f"User name {username!r} is already taken", key=str(row_id))

    async def _locked_row(
        self,
        session: AsyncSession,
        key: str,
        state: LifecycleState,
        *,
        with_document: bool = False,
    ) -> MemberRow:
        stmt = self._in_state(select(MemberRow).where(MemberRow.id == parse_row_id(key)), state)
        if with_document:
            stmt = stmt.options(selectinload(MemberRow.agreement_scan))
        row = await session.scalar(stmt.with_for_update())
        if row is None:
            raise NotFoundError(f"No such {state.value} record {key!r}", key=key)
        return row

    async def _fetch_chunk(self, stmt) -> list[MemberRow]:
        # Each chunk uses its own short session so no connection is held across yields.
        with translate_db_errors("enumerate"):
            async with self.session_factory() as session:
                return list((await session.scalars(stmt)).all())

    def _record(self, row: MemberRow, state: LifecycleState, with_document: bool) -> MembershipRecord:
        document = None
        if with_document and row.agreement_scan is not None:
            document = row.agreement_scan.data
        return MembershipRecord(key=str(row.id), state=state, agreement=row_to_agreement(row, document))

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _create(self, agreement: MembershipAgreement) -> str:
        member = agreement.member
        row = MemberRow(
            membership_status=MembershipStatus.APPLICATION,
            **{column: getattr(member, column) for column in MEMBER_COLUMNS},
            **metadata_columns(agreement.metadata),
        )
        with translate_db_errors("create"):
            async with self.session_factory() as session, session.begin():
                if agreement.agreement_document:
                    scan = MembershipAgreementScan(
                        data=agreement.agreement_document, created_at=from_epoch(self.now())
                    )
                    session.add(scan)
                    await session.flush()
                    row.agreement_scan_id = scan.id
                session.add(row)
                await session.flush()
                row_id = row.id
        return str(row_id)

    async def _get(self, key: str, state: LifecycleState) -> MembershipRecord:
        stmt = self._in_state(select(MemberRow).where(MemberRow.id == parse_row_id(key)), state)
        stmt = stmt.options(selectinload(MemberRow.agreement_scan))
        with translate_db_errors("get"):
            async with self.session_factory() as session:
                row = await session.scalar(stmt)
                if row is None:
                    raise NotFoundError(f"No such {state.value} record {key!r}", key=key)
                return self._record(row, state, with_document=True)

    async def _get_by_username(self, username: str) -> MembershipRecord:
        stmt = self._in_state(select(MemberRow).where(MemberRow.username == username), LifecycleState.MEMBER)
        stmt = stmt.options(selectinload(MemberRow.agreement_scan))
        with translate_db_errors("get_by_username"):
            async with self.session_factory() as session:
                row = await session.scalar(stmt)
                if row is None:
                    raise NotFoundError(f"No member found for user name {username!r}")
                return self._record(row, LifecycleState.MEMBER, with_document=True)

    async def _stream(
        self,
        state: LifecycleState,
        start_cursor: str,
        page_size: int,
        criterion: str | None,
    ) -> AsyncIterator[MembershipRecord]:
        last_id = parse_row_id(start_cursor) if start_cursor else 0
        chunk = min(page_size, self.fetch_size) if page_size else self.fetch_size
        yielded = 0

        while True:
            stmt = self._in_state(select(MemberRow).where(MemberRow.id > last_id), state)
            if criterion:
                stmt = stmt.where(func.lower(MemberRow.name).startswith(criterion.lower(), autoescape=True))
            stmt = stmt.order_by(MemberRow.id).limit(chunk)

            rows = await self._bounded("enumerate", self._fetch_chunk(stmt))

            for row in rows:
                last_id = row.id
                try:
                    record = self._record(row, state, with_document=False)
                except DataLossError as e:
                    self.stats.record_skip(state, row.id, e)
                    continue
                yield record
                yielded += 1
                if page_size and yielded >= page_size:
                    return
            if len(rows) < chunk:
                return

    async def _move(
        self,
        key: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        initiator: str,
        reason: str | None,
    ) -> None:
        with translate_db_errors("move"):
            async with self.session_factory() as session, session.begin():
                row = await self._locked_row(session, key, from_state, with_document=True)
                agreement = self._record(row, from_state, with_document=True).agreement
                now = self.now()
                stamped = apply_transition(agreement, from_state, to_state, initiator, now, reason)
                if to_state == LifecycleState.MEMBER:
                    await self._claim_username(session, stamped.member.username, row.id)

                retention = retention_for(from_state, to_state)
                values = metadata_columns(stamped.metadata)
                values["membership_status"] = self._status(to_state)
                values["retain_until"] = from_epoch(now + retention) if retention else None

                result = await session.execute(
                    update(MemberRow)
                    .where(MemberRow.id == row.id, MemberRow.membership_status == self._status(from_state))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"{from_state.value} record {key!r} was moved concurrently", key=key)

    async def _set_value(self, key: str, field: str, value: str | bool | int) -> None:
        with translate_db_errors("update member"):
            async with self.session_factory() as session, session.begin():
                row = await self._locked_row(session, key, LifecycleState.MEMBER)
                if field == "username" and row.username:
                    raise FailedPreconditionError("Cannot modify user name", key=key)
                if field == "username":
                    await self._claim_username(session, value, row.id)
                setattr(row, field, value)

    async def _set_fee(self, key: str, fee: int, yearly: bool) -> None:
        with translate_db_errors("set fee"):
            async with self.session_factory() as session, session.begin():
                row = await self._locked_row(session, key, LifecycleState.MEMBER)
                row.fee = fee
                row.fee_yearly = yearly

    async def _attach_document(self, key: str, data: bytes) -> None:
        with translate_db_errors("attach document"):
            async with self.session_factory() as session, session.begin():
                row = await self._locked_row(session, key, LifecycleState.APPLICATION)
                previous = row.agreement_scan_id

                scan = MembershipAgreementScan(data=data, created_at=from_epoch(self.now()))
                session.add(scan)
                await session.flush()
                row.agreement_scan_id = scan.id
                await session.flush()

                if previous is not None:
                    await session.execute(
                        delete(MembershipAgreementScan).where(MembershipAgreementScan.id == previous)
                    )

    async def _reclaim_expired(self) -> int:
        horizon = from_epoch(self.now())
        with translate_db_errors("reclaim expired"):
            async with self.session_factory() as session, session.begin():
                expired = (
                    await session.execute(
                        select(MemberRow.id, MemberRow.agreement_scan_id).where(
                            MemberRow.membership_status == self._status(LifecycleState.ARCHIVE),
                            MemberRow.retain_until.is_not(None),
                            MemberRow.retain_until <= horizon,
                        )
                    )
                ).all()
                if not expired:
                    return 0

                await session.execute(delete(MemberRow).where(MemberRow.id.in_([r.id for r in expired])))
                scan_ids = [r.agreement_scan_id for r in expired if r.agreement_scan_id is not None]
                if scan_ids:
                    await session.execute(
                        delete(MembershipAgreementScan).where(MembershipAgreementScan.id.in_(scan_ids))
                    )

        logger.info(f"Reclaimed {len(expired)} expired archive records")
        return len(expired)


__all__ = [
    "RelationalStore",
    "parse_row_id",
    "row_to_agreement",
    "translate_db_errors",
]
