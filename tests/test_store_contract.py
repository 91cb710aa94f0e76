"""Behaviour every backend must share, run against both stores."""

import pytest

from membersys.errors import FailedPreconditionError, InvalidArgumentError, NotFoundError
from membersys.records import LifecycleState
from membersys.streaming import iterate_all

APPLICATION = LifecycleState.APPLICATION
QUEUE = LifecycleState.QUEUE
MEMBER = LifecycleState.MEMBER
DEQUEUE = LifecycleState.DEQUEUE
ARCHIVE = LifecycleState.ARCHIVE

SCAN = b"%PDF-1.4 signed agreement"


async def make_member(store, make_agreement, name="Ada Lovelace"):
    key = await store.create(make_agreement(name))
    await store.attach_document(key, SCAN)
    await store.move(key, APPLICATION, QUEUE, "board")
    await store.move(key, QUEUE, MEMBER, "treasurer")
    return key


class TestCreateAndGet:
    async def test_create_then_get_round_trip(self, store, make_agreement, clock):
        key = await store.create(make_agreement())

        record = await store.get(key, APPLICATION)

        assert record.key == key
        assert record.state == APPLICATION
        assert record.agreement.member.name == "Ada Lovelace"
        assert record.agreement.member.fee == 2000
        assert record.agreement.metadata.request_source_ip == "192.0.2.10"
        assert record.agreement.metadata.request_timestamp == int(clock.now)
        assert record.agreement.agreement_document is None

    async def test_keys_are_unique(self, store, make_agreement):
        keys = {await store.create(make_agreement(f"Person {i}")) for i in range(5)}
        assert len(keys) == 5

    async def test_get_in_other_state_is_not_found(self, store, make_agreement):
        key = await store.create(make_agreement())
        with pytest.raises(NotFoundError):
            await store.get(key, QUEUE)

    @pytest.mark.parametrize("bad_key", ["", "not a key!", "12ab"])
    async def test_malformed_key_is_invalid_argument(self, store, bad_key):
        with pytest.raises(InvalidArgumentError):
            await store.get(bad_key, APPLICATION)

    async def test_get_returns_document(self, store, make_agreement):
        key = await store.create(make_agreement())
        await store.attach_document(key, SCAN)

        record = await store.get(key, APPLICATION)
        assert record.agreement.agreement_document == SCAN


class TestMove:
    async def test_queue_requires_document(self, store, make_agreement):
        key = await store.create(make_agreement())

        with pytest.raises(FailedPreconditionError, match="agreement scan"):
            await store.move(key, APPLICATION, QUEUE, "board")

        # Nothing changed.
        assert (await store.get(key, APPLICATION)).agreement.metadata.approver_uid is None
        with pytest.raises(NotFoundError):
            await store.get(key, QUEUE)

    async def test_approval_stamps_metadata(self, store, make_agreement, clock):
        key = await store.create(make_agreement())
        await store.attach_document(key, SCAN)
        clock.advance(3600)

        await store.move(key, APPLICATION, QUEUE, "board")

        record = await store.get(key, QUEUE)
        assert record.agreement.metadata.approver_uid == "board"
        assert record.agreement.metadata.approval_timestamp == int(clock.now)
        assert record.agreement.agreement_document == SCAN
        with pytest.raises(NotFoundError):
            await store.get(key, APPLICATION)

    async def test_rejection_needs_no_document(self, store, make_agreement):
        key = await store.create(make_agreement())

        await store.move(key, APPLICATION, ARCHIVE, "board")

        record = await store.get(key, ARCHIVE)
        assert record.agreement.metadata.approver_uid == "board"

    @pytest.mark.parametrize("to_state", [MEMBER, DEQUEUE, APPLICATION])
    async def test_disallowed_edge(self, store, make_agreement, to_state):
        key = await store.create(make_agreement(document=SCAN))
        with pytest.raises(FailedPreconditionError):
            await store.move(key, APPLICATION, to_state, "board")
        await store.get(key, APPLICATION)

    async def test_move_missing_key_is_not_found(self, store, make_agreement):
        key = await store.create(make_agreement())
        with pytest.raises(NotFoundError):
            await store.move(key, QUEUE, MEMBER, "treasurer")

    async def test_second_move_of_same_record_is_not_found(self, store, make_agreement):
        key = await store.create(make_agreement())
        await store.move(key, APPLICATION, ARCHIVE, "board")

        with pytest.raises(NotFoundError):
            await store.move(key, APPLICATION, ARCHIVE, "board")

    async def test_goodbye_path(self, store, make_agreement, clock):
        key = await make_member(store, make_agreement)
        clock.advance(86400)

        await store.move(key, MEMBER, DEQUEUE, "ada", reason="moving abroad")
        departed_at = int(clock.now)
        clock.advance(60)
        await store.move(key, DEQUEUE, ARCHIVE, "secretary")

        metadata = (await store.get(key, ARCHIVE)).agreement.metadata
        assert metadata.goodbye_initiator == "ada"
        assert metadata.goodbye_reason == "moving abroad"
        assert metadata.goodbye_timestamp == departed_at
        # Approval from the application step survives.
        assert metadata.approver_uid == "board"


class TestEnumerate:
    async def test_scenario_from_signup_to_queue_listing(self, store, make_agreement):
        key = await store.create(make_agreement("Ada Lovelace"))
        with pytest.raises(FailedPreconditionError):
            await store.move(key, APPLICATION, QUEUE, "board")

        await store.attach_document(key, SCAN)
        await store.move(key, APPLICATION, QUEUE, "board")

        queue = await store.enumerate(QUEUE, "", 10)
        assert [r.agreement.member.name for r in queue] == ["Ada Lovelace"]
        assert queue[0].key == key

    async def test_empty_state(self, store):
        assert await store.enumerate(MEMBER, "", 10) == []

    async def test_listing_omits_documents(self, store, make_agreement):
        await store.create(make_agreement(document=SCAN))
        [record] = await store.enumerate(APPLICATION, "", 0)
        assert record.agreement.agreement_document is None

    async def test_only_lists_requested_state(self, store, make_agreement):
        applicant = await store.create(make_agreement("Charles Babbage"))
        member = await make_member(store, make_agreement, "Ada Lovelace")

        assert [r.key for r in await store.enumerate(APPLICATION)] == [applicant]
        assert [r.key for r in await store.enumerate(MEMBER)] == [member]

    async def test_page_size_bounds_result(self, store, make_agreement):
        for i in range(5):
            await store.create(make_agreement(f"Person {i}"))

        assert len(await store.enumerate(APPLICATION, "", 3)) == 3
        assert len(await store.enumerate(APPLICATION, "", 0)) == 5

    async def test_cursor_pages_are_complete_and_disjoint(self, store, make_agreement):
        created = {await store.create(make_agreement(f"Person {i}")) for i in range(7)}

        seen = [record.key async for record in iterate_all(store, APPLICATION, 3)]

        assert len(seen) == len(set(seen))
        assert set(seen) == created

    async def test_cursor_is_exclusive(self, store, make_agreement):
        for i in range(4):
            await store.create(make_agreement(f"Person {i}"))
        first = await store.enumerate(APPLICATION, "", 2)

        rest = await store.enumerate(APPLICATION, first[-1].key, 10)

        assert first[-1].key not in {r.key for r in rest}
        assert len(first) + len(rest) == 4

    async def test_criterion_is_case_insensitive_name_prefix(self, store, make_agreement):
        for name in ("Ada Lovelace", "ada byron", "Grace Hopper", "Adam Smith"):
            await store.create(make_agreement(name))

        names = {r.agreement.member.name for r in await store.enumerate(APPLICATION, "", 0, "ADA")}

        assert names == {"Ada Lovelace", "ada byron", "Adam Smith"}

    async def test_criterion_with_like_wildcards_is_literal(self, store, make_agreement):
        await store.create(make_agreement("Ada Lovelace"))
        assert await store.enumerate(APPLICATION, "", 0, "%") == []

    async def test_negative_page_size(self, store):
        with pytest.raises(InvalidArgumentError):
            await store.enumerate(APPLICATION, "", -1)

    async def test_stream_can_be_closed_early(self, store, make_agreement):
        for i in range(5):
            await store.create(make_agreement(f"Person {i}"))

        stream = store.stream(APPLICATION)
        first = await stream.__anext__()
        await stream.aclose()

        assert first.state == APPLICATION


class TestMemberUpdates:
    async def test_set_username_once(self, store, make_agreement):
        key = await make_member(store, make_agreement)

        await store.set_text_value(key, "username", "ada")
        with pytest.raises(FailedPreconditionError, match="user name"):
            await store.set_text_value(key, "username", "countess")

        record = await store.get_by_username("ada")
        assert record.key == key
        assert record.state == MEMBER
        assert record.agreement.agreement_document == SCAN

    async def test_username_held_by_another_member_is_rejected(self, store, make_agreement):
        first = await make_member(store, make_agreement, "Ada Lovelace")
        second = await make_member(store, make_agreement, "Ada Byron")

        await store.set_text_value(first, "username", "ada")
        with pytest.raises(FailedPreconditionError, match="already taken"):
            await store.set_text_value(second, "username", "ada")

        assert (await store.get(second, MEMBER)).agreement.member.username is None
        assert (await store.get_by_username("ada")).key == first

    async def test_activation_with_taken_username_is_rejected(self, store, make_agreement):
        holder = await make_member(store, make_agreement, "Ada Lovelace")
        await store.set_text_value(holder, "username", "ada")
        key = await store.create(make_agreement("Ada Byron", document=SCAN, username="ada"))
        await store.move(key, APPLICATION, QUEUE, "board")

        with pytest.raises(FailedPreconditionError, match="already taken"):
            await store.move(key, QUEUE, MEMBER, "treasurer")

        await store.get(key, QUEUE)

    async def test_departed_members_release_their_username(self, store, make_agreement):
        former = await make_member(store, make_agreement, "Ada Lovelace")
        await store.set_text_value(former, "username", "ada")
        await store.move(former, MEMBER, DEQUEUE, "ada")

        successor = await make_member(store, make_agreement, "Ada Byron")
        await store.set_text_value(successor, "username", "ada")

        assert (await store.get_by_username("ada")).key == successor

    async def test_set_typed_fields(self, store, make_agreement):
        key = await make_member(store, make_agreement)

        await store.set_text_value(key, "city", "Marylebone")
        await store.set_bool_value(key, "has_key", True)
        await store.set_long_value(key, "payments_caught_up_to", 1_735_689_600)
        await store.set_fee(key, 5000, True)

        member = (await store.get(key, MEMBER)).agreement.member
        assert member.city == "Marylebone"
        assert member.has_key is True
        assert member.payments_caught_up_to == 1_735_689_600
        assert (member.fee, member.fee_yearly) == (5000, True)

        [listed] = await store.enumerate(MEMBER)
        assert listed.agreement.member.city == "Marylebone"

    @pytest.mark.parametrize(
        "setter, field, value",
        [
            ("set_text_value", "email", "x@example.org"),
            ("set_text_value", "has_key", "yes"),
            ("set_bool_value", "name", True),
            ("set_long_value", "fee", 1),
        ],
    )
    async def test_unknown_field(self, store, make_agreement, setter, field, value):
        key = await make_member(store, make_agreement)
        with pytest.raises(NotFoundError, match="Unknown field"):
            await getattr(store, setter)(key, field, value)

    async def test_only_active_members_are_updated(self, store, make_agreement):
        key = await store.create(make_agreement())
        with pytest.raises(NotFoundError):
            await store.set_text_value(key, "city", "Paris")

    async def test_negative_long_value(self, store, make_agreement):
        key = await make_member(store, make_agreement)
        with pytest.raises(InvalidArgumentError):
            await store.set_long_value(key, "payments_caught_up_to", -1)

    async def test_get_by_username(self, store):
        with pytest.raises(InvalidArgumentError):
            await store.get_by_username("")
        with pytest.raises(NotFoundError):
            await store.get_by_username("nobody")


class TestAttachDocument:
    async def test_empty_document_rejected(self, store, make_agreement):
        key = await store.create(make_agreement())
        with pytest.raises(InvalidArgumentError):
            await store.attach_document(key, b"")

    async def test_only_applications_accept_documents(self, store, make_agreement):
        key = await make_member(store, make_agreement)
        with pytest.raises(NotFoundError):
            await store.attach_document(key, SCAN)

    async def test_replacing_document(self, store, make_agreement):
        key = await store.create(make_agreement())
        await store.attach_document(key, b"first")
        await store.attach_document(key, b"second")

        assert (await store.get(key, APPLICATION)).agreement.agreement_document == b"second"
