"""Backend-agnostic membership store contract.

Public methods validate arguments and enforce the lifecycle rules, then
delegate to the backend hooks (``_create``, ``_move`` ...) under the
configured request deadline. Call sites depend only on this class.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar

from ..errors import DeadlineExceededError, InvalidArgumentError, NotFoundError
from ..layout import STATE_LAYOUTS, StateLayout
from ..lifecycle import check_transition
from ..records import LifecycleState, MembershipAgreement, MembershipRecord
from ..streaming import EnumerationStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEXT_FIELDS = frozenset({"name", "street", "city", "zipcode", "country", "phone", "username"})
BOOL_FIELDS = frozenset({"has_key"})
LONG_FIELDS = frozenset({"payments_caught_up_to"})


def check_field(field: str, allowed: frozenset[str]) -> None:
    """Reject field names a setter does not know about."""
    if field not in allowed:
        raise NotFoundError(f"Unknown field specified: {field}")


class MembershipStore(ABC):
    """Storage contract for membership records keyed by lifecycle state."""

    backend_name = "abstract"

    def __init__(
        self,
        *,
        layouts: Mapping[LifecycleState, StateLayout] = STATE_LAYOUTS,
        request_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.layouts = layouts
        self.request_timeout = request_timeout
        self.clock = clock
        self.stats = EnumerationStats()

    def now(self) -> int:
        """Server-side Unix timestamp used for stamping."""
        return int(self.clock())

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.request_timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError(
                f"{operation} exceeded its {self.request_timeout}s deadline"
            ) from e

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def create(self, agreement: MembershipAgreement) -> str:
        """Store a new application and return its freshly assigned key."""
        if agreement.metadata.request_timestamp is None:
            agreement = agreement.model_copy(deep=True)
            agreement.metadata.request_timestamp = self.now()
        key = await self._bounded("create", self._create(agreement))
        logger.info(
            f"Stored membership application {key}",
            extra={"record_key": key, "backend": self.backend_name},
        )
        return key

    async def get(self, key: str, state: LifecycleState) -> MembershipRecord:
        """Point lookup of ``key`` in ``state``, including the agreement document."""
        return await self._bounded("get", self._get(key, state))

    async def get_by_username(self, username: str) -> MembershipRecord:
        """Look up an active member by user name."""
        if not username:
            raise InvalidArgumentError("User name must not be empty")
        return await self._bounded("get_by_username", self._get_by_username(username))

    def stream(
        self,
        state: LifecycleState,
        start_cursor: str = "",
        page_size: int = 0,
        criterion: str | None = None,
    ) -> AsyncIterator[MembershipRecord]:
        """Lazily yield records of ``state`` with keys after ``start_cursor``.

        ``page_size == 0`` means no limit. Documents are omitted. Closing the
        iterator stops the backend cursor; terminal errors are raised from
        the iteration itself.
        """
        if page_size < 0:
            raise InvalidArgumentError("page_size must not be negative")
        return self._stream(state, start_cursor or "", page_size, criterion or None)

    async def enumerate(
        self,
        state: LifecycleState,
        start_cursor: str = "",
        page_size: int = 0,
        criterion: str | None = None,
    ) -> list[MembershipRecord]:
        """Return up to ``page_size`` records of ``state`` ordered by key."""
        return await self._bounded(
            "enumerate", self._collect(self.stream(state, start_cursor, page_size, criterion))
        )

    async def move(
        self,
        key: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        initiator: str,
        reason: str | None = None,
    ) -> None:
        """Atomically relocate ``key`` from ``from_state`` to ``to_state``.

        Raises:
            FailedPreconditionError: If the edge does not exist or the
                destination requires a document that is missing
            NotFoundError: If ``key`` is not in ``from_state``
        """
        check_transition(from_state, to_state)
        await self._bounded("move", self._move(key, from_state, to_state, initiator, reason))
        logger.info(
            f"Moved {key} from {from_state.value} to {to_state.value} by {initiator}",
            extra={"record_key": key, "state": to_state.value, "backend": self.backend_name},
        )

    async def set_text_value(self, key: str, field: str, value: str) -> None:
        """Update a text field of an active member; a set user name is immutable."""
        check_field(field, TEXT_FIELDS)
        await self._bounded("set_text_value", self._set_value(key, field, value))

    async def set_bool_value(self, key: str, field: str, value: bool) -> None:
        """Update a boolean field of an active member."""
        check_field(field, BOOL_FIELDS)
        await self._bounded("set_bool_value", self._set_value(key, field, bool(value)))

    async def set_long_value(self, key: str, field: str, value: int) -> None:
        """Update a 64-bit integer field of an active member."""
        check_field(field, LONG_FIELDS)
        if not 0 <= value < 2**63:
            raise InvalidArgumentError(f"Value {value} does not fit the {field} field")
        await self._bounded("set_long_value", self._set_value(key, field, int(value)))

    async def set_fee(self, key: str, fee: int, yearly: bool) -> None:
        """Update the fee amount and the yearly flag of an active member."""
        if not 0 <= fee < 2**63:
            raise InvalidArgumentError(f"Fee {fee} is out of range")
        await self._bounded("set_fee", self._set_fee(key, int(fee), bool(yearly)))

    async def attach_document(self, key: str, data: bytes) -> None:
        """Add or replace the signed agreement of an application."""
        if not data:
            raise InvalidArgumentError("Agreement document must not be empty", key=key)
        await self._bounded("attach_document", self._attach_document(key, bytes(data)))
        logger.info(
            f"Stored agreement scan for {key}",
            extra={"record_key": key, "backend": self.backend_name},
        )

    async def reclaim_expired(self) -> int:
        """Delete archived records past their retention; returns how many were removed."""
        return await self._bounded("reclaim_expired", self._reclaim_expired())

    async def close(self) -> None:
        """Release the backend connection."""

    async def __aenter__(self) -> MembershipStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @staticmethod
    async def _collect(records: AsyncIterator[MembershipRecord]) -> list[MembershipRecord]:
        return [record async for record in records]

    @abstractmethod
    async def _create(self, agreement: MembershipAgreement) -> str: ...

    @abstractmethod
    async def _get(self, key: str, state: LifecycleState) -> MembershipRecord: ...

    @abstractmethod
    async def _get_by_username(self, username: str) -> MembershipRecord: ...

    @abstractmethod
    def _stream(
        self,
        state: LifecycleState,
        start_cursor: str,
        page_size: int,
        criterion: str | None,
    ) -> AsyncIterator[MembershipRecord]: ...

    @abstractmethod
    async def _move(
        self,
        key: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        initiator: str,
        reason: str | None,
    ) -> None: ...

    @abstractmethod
    async def _set_value(self, key: str, field: str, value: str | bool | int) -> None: ...

    @abstractmethod
    async def _set_fee(self, key: str, fee: int, yearly: bool) -> None: ...

    @abstractmethod
    async def _attach_document(self, key: str, data: bytes) -> None: ...

    @abstractmethod
    async def _reclaim_expired(self) -> int: ...
