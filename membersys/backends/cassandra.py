"""Wide-column backend on Apache Cassandra.

Every state has its own table in one keyspace and every row key is
``<state-prefix><uuid bytes>``, so listing a state is a prefix range scan
and a transition is "insert under the new prefix, delete under the old one"
inside one logged batch. Range scans over ``key`` assume the keyspace uses
a byte-ordered partitioner.

Reads that feed a write (move, field updates, document upload) and all
writes use ``write_consistency`` (QUORUM by default). Plain lookups and
listings use ``listing_consistency`` (ONE by default).
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, Protocol, Sequence

from cassandra import ConsistencyLevel, DriverException, OperationTimedOut, Timeout, Unavailable
from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import EXEC_PROFILE_DEFAULT, Cluster, ExecutionProfile, NoHostAvailable
from cassandra.policies import ExponentialReconnectionPolicy
from cassandra.query import BatchStatement, BatchType, PreparedStatement, SimpleStatement, dict_factory
from cassandra.util import uuid_from_time
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import CassandraSettings
from ..errors import (
    DataLossError,
    DeadlineExceededError,
    FailedPreconditionError,
    InternalError,
    NotFoundError,
    StoreError,
    UnavailableError,
)
from ..layout import STATE_LAYOUTS, RowKey, StateLayout, scan_start
from ..lifecycle import apply_transition, retention_for
from ..records import (
    LifecycleState,
    MembershipAgreement,
    MembershipRecord,
    decode_agreement,
    encode_agreement,
)
from ..streaming import matches_criterion
from .base import MembershipStore

logger = logging.getLogger(__name__)

Statement = tuple[str, Sequence[Any]]

COLUMN_TYPES = {
    "name": "text",
    "street": "text",
    "city": "text",
    "zipcode": "text",
    "country": "text",
    "email": "text",
    "email_verified": "boolean",
    "phone": "text",
    "fee": "bigint",
    "username": "text",
    "pwhash": "text",
    "fee_yearly": "boolean",
    "sourceip": "ascii",
    "useragent": "text",
    "has_key": "boolean",
    "payments_caught_up_to": "bigint",
    "approval_ts": "bigint",
}

# Denormalized column name -> value taken from the record.
COLUMN_SOURCES: dict[str, Callable[[MembershipAgreement], Any]] = {
    "name": lambda a: a.member.name,
    "street": lambda a: a.member.street,
    "city": lambda a: a.member.city,
    "zipcode": lambda a: a.member.zipcode,
    "country": lambda a: a.member.country,
    "email": lambda a: a.member.email,
    "email_verified": lambda a: a.member.email_verified,
    "phone": lambda a: a.member.phone,
    "fee": lambda a: a.member.fee,
    "username": lambda a: a.member.username,
    "pwhash": lambda a: a.member.pwhash,
    "fee_yearly": lambda a: a.member.fee_yearly,
    "sourceip": lambda a: a.metadata.request_source_ip,
    "useragent": lambda a: a.metadata.user_agent,
    "has_key": lambda a: a.member.has_key,
    "payments_caught_up_to": lambda a: a.member.payments_caught_up_to,
    "approval_ts": lambda a: a.metadata.approval_timestamp,
}


@dataclass
class CqlPage:
    """One page of a CQL result."""
    rows: list[dict[str, Any]] = field(default_factory=list)
    paging_state: bytes | None = None


class CqlExecutor(Protocol):
    """What the store needs from a Cassandra session."""

    async def execute(
        self,
        query: str,
        params: Sequence[Any] = (),
        *,
        consistency: int,
        fetch_size: int | None = None,
        paging_state: bytes | None = None,
    ) -> CqlPage: ...

    async def execute_batch(self, statements: Sequence[Statement], *, consistency: int) -> None: ...

    async def shutdown(self) -> None: ...


@contextmanager
def translate_driver_errors(action: str) -> Iterator[None]:
    """Normalize cassandra-driver exceptions into the store taxonomy."""
    try:
        yield
    except StoreError:
        raise
    except (Unavailable, NoHostAvailable) as e:
        raise UnavailableError(f"Cassandra unavailable during {action}: {e}") from e
    except (Timeout, OperationTimedOut) as e:
        raise DeadlineExceededError(f"Timed out during {action}: {e}") from e
    except DriverException as e:
        raise InternalError(f"Cassandra error during {action}: {e}") from e


async def _wait_for_response(response_future: Any) -> Any:
    """Await a driver ``ResponseFuture`` from the event loop."""
    loop = asyncio.get_running_loop()
    done = loop.create_future()

    def _settle(exc: BaseException | None = None) -> None:
        if done.done():
            return
        if exc is None:
            done.set_result(None)
        else:
            done.set_exception(exc)

    response_future.add_callbacks(
        callback=lambda _rows: loop.call_soon_threadsafe(_settle),
        errback=lambda exc: loop.call_soon_threadsafe(_settle, exc),
    )
    await done
    return response_future.result()


class DriverExecutor:
    """``CqlExecutor`` backed by a live cassandra-driver session.

    Parameterized queries are prepared once per query string and bound for
    every call; statements without parameters run as simple statements.
    """

    def __init__(self, cluster: Cluster, session: Any, timeout: float) -> None:
        self.cluster = cluster
        self.session = session
        self.timeout = timeout
        self._prepared: dict[str, PreparedStatement] = {}

    async def _prepare(self, query: str) -> PreparedStatement:
        prepared = self._prepared.get(query)
        if prepared is None:
            with translate_driver_errors("prepare"):
                prepared = await asyncio.to_thread(self.session.prepare, query)
            self._prepared[query] = prepared
        return prepared

    async def execute(
        self,
        query: str,
        params: Sequence[Any] = (),
        *,
        consistency: int,
        fetch_size: int | None = None,
        paging_state: bytes | None = None,
    ) -> CqlPage:
        if params:
            statement = (await self._prepare(query)).bind(tuple(params))
            statement.consistency_level = consistency
            if fetch_size:
                statement.fetch_size = fetch_size
        else:
            statement = SimpleStatement(query, consistency_level=consistency, fetch_size=fetch_size)
        with translate_driver_errors(query.split(" ", 1)[0].lower()):
            future = self.session.execute_async(
                statement, timeout=self.timeout, paging_state=paging_state
            )
            result = await _wait_for_response(future)
        return CqlPage(rows=list(result.current_rows), paging_state=result.paging_state)

    async def execute_batch(self, statements: Sequence[Statement], *, consistency: int) -> None:
        batch = BatchStatement(batch_type=BatchType.LOGGED, consistency_level=consistency)
        for query, params in statements:
            batch.add(await self._prepare(query), tuple(params))
        with translate_driver_errors("batch"):
            future = self.session.execute_async(batch, timeout=self.timeout)
            await _wait_for_response(future)

    async def shutdown(self) -> None:
        await asyncio.to_thread(self.cluster.shutdown)


def open_session(config: CassandraSettings, *, keyspace: str | None = None) -> DriverExecutor:
    """Connect to the cluster, retrying with exponential backoff while no host answers.

    Blocking; run it in a worker thread from async code.
    """
    profile = ExecutionProfile(
        request_timeout=config.timeout,
        consistency_level=ConsistencyLevel.name_to_value[config.listing_consistency],
        row_factory=dict_factory,
    )
    auth_provider = None
    if config.username:
        auth_provider = PlainTextAuthProvider(username=config.username, password=config.password or "")

    cluster = Cluster(
        contact_points=config.hosts,
        port=config.port,
        auth_provider=auth_provider,
        execution_profiles={EXEC_PROFILE_DEFAULT: profile},
        reconnection_policy=ExponentialReconnectionPolicy(
            config.reconnect_base_delay, config.reconnect_max_delay
        ),
        connect_timeout=config.timeout,
    )

    try:
        for attempt in Retrying(
            stop=stop_after_attempt(config.connect_attempts),
            wait=wait_exponential(
                multiplier=config.reconnect_base_delay, max=config.reconnect_max_delay
            ),
            retry=retry_if_exception_type(NoHostAvailable),
            reraise=True,
        ):
            with attempt:
                logger.info(
                    f"Connecting to Cassandra at {config.hosts} "
                    f"(attempt {attempt.retry_state.attempt_number})"
                )
                session = cluster.connect(keyspace)
    except NoHostAvailable as e:
        cluster.shutdown()
        raise UnavailableError(f"Unable to connect to Cassandra at {config.hosts}: {e}") from e

    return DriverExecutor(cluster, session, config.timeout)


def schema_statements(
    keyspace: str,
    replication_factor: int,
    layouts: Mapping[LifecycleState, StateLayout] = STATE_LAYOUTS,
) -> list[str]:
    """CQL creating the keyspace, one table per state and the user name index."""
    statements = [
        f"CREATE KEYSPACE IF NOT EXISTS {keyspace} WITH replication = "
        f"{{'class': 'SimpleStrategy', 'replication_factor': {replication_factor}}}"
    ]
    for layout in layouts.values():
        columns = ["key blob PRIMARY KEY"]
        columns += [f"{name} {COLUMN_TYPES[name]}" for name in layout.columns]
        columns += ["pb_data blob", "agreement_pdf blob"]
        statements.append(
            f"CREATE TABLE IF NOT EXISTS {keyspace}.{layout.table} ({', '.join(columns)})"
        )
    members = layouts[LifecycleState.MEMBER]
    statements.append(
        f"CREATE INDEX IF NOT EXISTS {members.table}_username "
        f"ON {keyspace}.{members.table} (username)"
    )
    return statements


class CassandraStore(MembershipStore):
    """Membership store over a key-prefixed Cassandra keyspace."""

    backend_name = "cassandra"

    def __init__(
        self,
        executor: CqlExecutor,
        *,
        write_consistency: int = ConsistencyLevel.QUORUM,
        listing_consistency: int = ConsistencyLevel.ONE,
        fetch_size: int = 100,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.executor = executor
        self.write_consistency = write_consistency
        self.listing_consistency = listing_consistency
        self.fetch_size = fetch_size

    @classmethod
    async def connect(
        cls,
        config: CassandraSettings,
        *,
        request_timeout: float | None = None,
    ) -> CassandraStore:
        """Open a session against ``config.keyspace`` and build a store on it."""
        executor = await asyncio.to_thread(open_session, config, keyspace=config.keyspace)
        return cls(
            executor,
            write_consistency=ConsistencyLevel.name_to_value[config.write_consistency],
            listing_consistency=ConsistencyLevel.name_to_value[config.listing_consistency],
            fetch_size=config.fetch_size,
            request_timeout=request_timeout,
        )

    async def close(self) -> None:
        await self.executor.shutdown()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _insert(
        self,
        layout: StateLayout,
        row_key: RowKey,
        agreement: MembershipAgreement,
        ttl: int = 0,
    ) -> Statement:
        values: dict[str, Any] = {"key": row_key.encode(self.layouts)}
        for column in layout.columns:
            value = COLUMN_SOURCES[column](agreement)
            if value is not None:
                values[column] = value
        values["pb_data"] = encode_agreement(agreement)
        if agreement.agreement_document:
            values["agreement_pdf"] = agreement.agreement_document

        placeholders = ", ".join("?" for _ in values)
        query = (
            f"INSERT INTO {layout.table} ({', '.join(values)}) "
            f"VALUES ({placeholders}) USING TTL ?"
        )
        return query, (*values.values(), ttl)

    async def _read(
        self,
        state: LifecycleState,
        key: str,
        consistency: int,
    ) -> tuple[RowKey, MembershipAgreement]:
        layout = self.layouts[state]
        row_key = RowKey.for_key(state, key)
        page = await self.executor.execute(
            f"SELECT pb_data, agreement_pdf FROM {layout.table} WHERE key = ?",
            (row_key.encode(self.layouts),),
            consistency=consistency,
        )
        if not page.rows:
            raise NotFoundError(f"No such {state.value} record {key!r}", key=key)
        row = page.rows[0]
        return row_key, decode_agreement(row.get("pb_data"), row.get("agreement_pdf"))

    async def _conditional_update(self, layout: StateLayout, row_key: RowKey, values: dict[str, Any]) -> None:
        """Update columns of an existing row; a row deleted in between is reported as missing."""
        assignments = ", ".join(f"{column} = ?" for column in values)
        page = await self.executor.execute(
            f"UPDATE {layout.table} SET {assignments} WHERE key = ? IF EXISTS",
            (*values.values(), row_key.encode(self.layouts)),
            consistency=self.write_consistency,
        )
        if page.rows and not page.rows[0].get("[applied]", True):
            raise NotFoundError(
                f"{layout.state.value} record {row_key.key!r} vanished during update",
                key=row_key.key,
            )

    async def _claim_username(self, username: str | None, owner: RowKey) -> None:
        """Refuse a user name another active member already holds."""
        if not username:
            return
        page = await self.executor.execute(
            f"SELECT key FROM {self.layouts[LifecycleState.MEMBER].table} WHERE username = ?",
            (username,),
            consistency=self.write_consistency,
        )
        owner_key = RowKey(LifecycleState.MEMBER, owner.natural_key).encode(self.layouts)
        if any(bytes(row["key"]) != owner_key for row in page.rows):
            raise FailedPreconditionError(f"User name {username!r} is already taken", key=owner.key)

    def _listing_record(self, state: LifecycleState, row: dict[str, Any]) -> MembershipRecord | None:
        raw_key = row.get("key") or b""
        try:
            row_key = RowKey.decode(raw_key, self.layouts)
            if row_key.state != state:
                raise DataLossError(f"Row key belongs to {row_key.state.value}")
            agreement = decode_agreement(row.get("pb_data"))
        except DataLossError as e:
            self.stats.record_skip(state, raw_key, e)
            return None
        return MembershipRecord(key=row_key.key, state=state, agreement=agreement)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _create(self, agreement: MembershipAgreement) -> str:
        row_key = RowKey(LifecycleState.APPLICATION, uuid_from_time(self.clock()))
        layout = self.layouts[LifecycleState.APPLICATION]
        query, params = self._insert(layout, row_key, agreement)
        await self.executor.execute(query, params, consistency=self.write_consistency)
        return row_key.key

    async def _get(self, key: str, state: LifecycleState) -> MembershipRecord:
        row_key, agreement = await self._read(state, key, self.listing_consistency)
        return MembershipRecord(key=row_key.key, state=state, agreement=agreement)

    async def _get_by_username(self, username: str) -> MembershipRecord:
        layout = self.layouts[LifecycleState.MEMBER]
        page = await self.executor.execute(
            f"SELECT key, pb_data, agreement_pdf FROM {layout.table} WHERE username = ?",
            (username,),
            consistency=self.listing_consistency,
        )
        if not page.rows:
            raise NotFoundError(f"No member found for user name {username!r}")
        if len(page.rows) > 1:
            logger.warning(f"User name {username!r} is held by {len(page.rows)} member records")

        row = page.rows[0]
        row_key = RowKey.decode(row["key"], self.layouts)
        agreement = decode_agreement(row.get("pb_data"), row.get("agreement_pdf"))
        return MembershipRecord(key=row_key.key, state=LifecycleState.MEMBER, agreement=agreement)

    async def _stream(
        self,
        state: LifecycleState,
        start_cursor: str,
        page_size: int,
        criterion: str | None,
    ) -> AsyncIterator[MembershipRecord]:
        layout = self.layouts[state]
        start = scan_start(state, start_cursor, self.layouts)
        columns = ", ".join(("key", *layout.listing_columns))
        query = f"SELECT {columns} FROM {layout.table} WHERE key > ? AND key < ? ALLOW FILTERING"
        fetch_size = min(page_size, self.fetch_size) if page_size else self.fetch_size

        yielded = 0
        paging_state = None
        while True:
            page = await self._bounded(
                "enumerate",
                self.executor.execute(
                    query,
                    (start, layout.range_end),
                    consistency=self.listing_consistency,
                    fetch_size=fetch_size,
                    paging_state=paging_state,
                ),
            )
            for row in page.rows:
                record = self._listing_record(state, row)
                if record is None or not matches_criterion(record.agreement.member.name, criterion):
                    continue
                yield record
                yielded += 1
                if page_size and yielded >= page_size:
                    return
            if page.paging_state is None:
                return
            paging_state = page.paging_state

    async def _move(
        self,
        key: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        initiator: str,
        reason: str | None,
    ) -> None:
        source, agreement = await self._read(from_state, key, self.write_consistency)
        stamped = apply_transition(agreement, from_state, to_state, initiator, self.now(), reason)
        if to_state == LifecycleState.MEMBER:
            await self._claim_username(stamped.member.username, source)

        destination = RowKey(to_state, source.natural_key)
        insert = self._insert(
            self.layouts[to_state], destination, stamped, retention_for(from_state, to_state)
        )
        delete = (
            f"DELETE FROM {self.layouts[from_state].table} WHERE key = ?",
            (source.encode(self.layouts),),
        )
        await self.executor.execute_batch([insert, delete], consistency=self.write_consistency)

    async def _set_value(self, key: str, field: str, value: str | bool | int) -> None:
        row_key, agreement = await self._read(LifecycleState.MEMBER, key, self.write_consistency)
        if field == "username" and agreement.member.username:
            raise FailedPreconditionError("Cannot modify user name", key=key)
        if field == "username":
            await self._claim_username(value, row_key)

        setattr(agreement.member, field, value)
        layout = self.layouts[LifecycleState.MEMBER]
        values: dict[str, Any] = {"pb_data": encode_agreement(agreement)}
        if field in layout.columns:
            values[field] = value
        await self._conditional_update(layout, row_key, values)

    async def _set_fee(self, key: str, fee: int, yearly: bool) -> None:
        row_key, agreement = await self._read(LifecycleState.MEMBER, key, self.write_consistency)
        agreement.member.fee = fee
        agreement.member.fee_yearly = yearly
        await self._conditional_update(
            self.layouts[LifecycleState.MEMBER],
            row_key,
            {"fee": fee, "fee_yearly": yearly, "pb_data": encode_agreement(agreement)},
        )

    async def _attach_document(self, key: str, data: bytes) -> None:
        row_key, agreement = await self._read(LifecycleState.APPLICATION, key, self.write_consistency)
        agreement.agreement_document = data
        await self._conditional_update(
            self.layouts[LifecycleState.APPLICATION],
            row_key,
            {"pb_data": encode_agreement(agreement), "agreement_pdf": data},
        )

    async def _reclaim_expired(self) -> int:
        # Archive rows carry a column TTL; Cassandra drops them on its own.
        return 0


__all__ = [
    "CassandraStore",
    "CqlExecutor",
    "CqlPage",
    "DriverExecutor",
    "open_session",
    "schema_statements",
    "translate_driver_errors",
]
