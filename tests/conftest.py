"""Shared fixtures: both backends run against in-process doubles.

The relational store runs on SQLite through aiosqlite; the Cassandra store
runs on ``InMemoryCqlExecutor``. Neither needs a database server.
"""

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from membersys.backends.cassandra import CassandraStore
from membersys.backends.relational import RelationalStore
from membersys.db import create_session_factory
from membersys.models import Base
from membersys.records import Member, MembershipAgreement, MembershipMetadata

from .fakes import FakeClock, InMemoryCqlExecutor


@pytest.fixture
def clock():
    return FakeClock()


def make_cassandra_store(clock):
    return CassandraStore(InMemoryCqlExecutor(clock), fetch_size=2, clock=clock, request_timeout=5)


async def make_relational_store(tmp_path, clock):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'members.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return RelationalStore(
        create_session_factory(engine), engine=engine, fetch_size=2, clock=clock, request_timeout=5
    )


@pytest.fixture
async def cassandra_store(clock):
    store = make_cassandra_store(clock)
    yield store
    await store.close()


@pytest.fixture
async def relational_store(tmp_path, clock):
    store = await make_relational_store(tmp_path, clock)
    yield store
    await store.close()


@pytest.fixture(params=["cassandra", "relational"])
async def store(request, tmp_path, clock):
    """Every contract test runs once per backend."""
    if request.param == "cassandra":
        store = make_cassandra_store(clock)
    else:
        store = await make_relational_store(tmp_path, clock)
    yield store
    await store.close()


@pytest.fixture
def make_agreement():
    """Factory fixture: an application as submitted through the signup form."""
    def _make(name: str = "Ada Lovelace", document: bytes | None = None, **member_fields) -> MembershipAgreement:
        member = Member(
            name=name,
            street="12 St James's Square",
            city="London",
            zipcode="SW1Y 4JH",
            country="GB",
            email=f"{name.split()[0].lower()}@example.org",
            fee=2000,
            **member_fields,
        )
        metadata = MembershipMetadata(request_source_ip="192.0.2.10", user_agent="pytest")
        return MembershipAgreement(member=member, metadata=metadata, agreement_document=document)
    return _make
