"""Storage layout per lifecycle state.

One immutable lookup table maps every state to its wide-column table, row
key prefix and listing columns, and to its relational status value. Stores
receive the table by reference; nothing else hard-codes prefixes.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .errors import DataLossError, InvalidArgumentError
from .records import LifecycleState

# Columns of the records themselves; every state table also has key, pb_data and agreement_pdf.
APPLICATION_COLUMNS = (
    "name", "street", "city", "zipcode", "country", "email", "email_verified",
    "phone", "fee", "username", "pwhash", "fee_yearly", "sourceip", "useragent",
)
MEMBER_COLUMNS = (
    "name", "street", "city", "zipcode", "country", "email", "phone", "username",
    "fee", "fee_yearly", "has_key", "payments_caught_up_to", "approval_ts",
)


@dataclass(frozen=True)
class StateLayout:
    """Where and how records of one lifecycle state are stored."""
    state: LifecycleState
    table: str
    prefix: bytes
    status: str
    columns: tuple[str, ...] = ()
    listing_columns: tuple[str, ...] = ("pb_data",)

    @property
    def range_end(self) -> bytes:
        """Smallest key sorting after every key carrying this prefix."""
        return self.prefix[:-1] + bytes([self.prefix[-1] + 1])


def _build_layouts() -> Mapping[LifecycleState, StateLayout]:
    layouts = [
        StateLayout(
            state=LifecycleState.APPLICATION,
            table="application",
            prefix=b"applicant:",
            status="APPLICATION",
            columns=APPLICATION_COLUMNS,
            listing_columns=("name", "street", "city", "fee", "fee_yearly", "pb_data"),
        ),
        StateLayout(
            state=LifecycleState.QUEUE,
            table="membership_queue",
            prefix=b"queue:",
            status="IN_CREATION",
        ),
        StateLayout(
            state=LifecycleState.MEMBER,
            table="members",
            prefix=b"member:",
            status="ACTIVE",
            columns=MEMBER_COLUMNS,
            listing_columns=(
                "name", "street", "city", "country", "email", "phone", "username",
                "fee", "fee_yearly", "has_key", "payments_caught_up_to", "pb_data",
            ),
        ),
        StateLayout(
            state=LifecycleState.DEQUEUE,
            table="membership_dequeue",
            prefix=b"dequeue:",
            status="IN_DELETION",
        ),
        StateLayout(
            state=LifecycleState.ARCHIVE,
            table="membership_archive",
            prefix=b"archive:",
            status="ARCHIVED",
        ),
    ]
    return MappingProxyType({layout.state: layout for layout in layouts})


STATE_LAYOUTS: Mapping[LifecycleState, StateLayout] = _build_layouts()


def parse_natural_key(key: str) -> uuid.UUID:
    """Parse a caller-supplied wide-column key.

    Raises:
        InvalidArgumentError: If ``key`` is not a UUID
    """
    try:
        return uuid.UUID(key)
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidArgumentError(f"Cannot parse {key!r} as an UUID", key=key) from e


@dataclass(frozen=True)
class RowKey:
    """Composite ``{state, natural key}`` row key of the wide-column backend."""
    state: LifecycleState
    natural_key: uuid.UUID

    def encode(self, layouts: Mapping[LifecycleState, StateLayout] = STATE_LAYOUTS) -> bytes:
        return layouts[self.state].prefix + self.natural_key.bytes

    @property
    def key(self) -> str:
        return str(self.natural_key)

    @classmethod
    def for_key(cls, state: LifecycleState, key: str) -> RowKey:
        return cls(state, parse_natural_key(key))

    @classmethod
    def decode(
        cls,
        raw: bytes,
        layouts: Mapping[LifecycleState, StateLayout] = STATE_LAYOUTS,
    ) -> RowKey:
        """Split a stored row key into state and natural key.

        The prefix is matched against every known state, and the natural key
        is taken after the prefix that actually matched.

        Raises:
            DataLossError: If the key has no known prefix or a malformed body
        """
        raw = bytes(raw)
        for layout in layouts.values():
            if raw.startswith(layout.prefix):
                body = raw[len(layout.prefix):]
                if len(body) != 16:
                    raise DataLossError(f"Row key {raw!r} has a malformed natural key")
                return cls(layout.state, uuid.UUID(bytes=body))
        raise DataLossError(f"Row key {raw!r} carries no known state prefix")


def scan_start(
    state: LifecycleState,
    cursor: str,
    layouts: Mapping[LifecycleState, StateLayout] = STATE_LAYOUTS,
) -> bytes:
    """Exclusive lower bound of a prefix scan; an empty cursor means start of state."""
    if not cursor:
        return layouts[state].prefix
    return RowKey.for_key(state, cursor).encode(layouts)

