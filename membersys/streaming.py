"""Helpers for cursor-driven enumeration.

Cursors are the last key a caller has seen; there is no separate encoding.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, AsyncIterator

from .records import LifecycleState, MembershipRecord

if TYPE_CHECKING:
    from .backends.base import MembershipStore

logger = logging.getLogger(__name__)


@dataclass
class EnumerationStats:
    """Counters for rows dropped while listing."""
    skipped_records: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_skip(self, state: LifecycleState, raw_key: object, error: Exception) -> None:
        with self._lock:
            self.skipped_records += 1
        logger.warning(
            f"Skipping malformed {state.value} row {raw_key!r}: {error}",
            extra={"state": state.value},
        )


def matches_criterion(name: str | None, criterion: str | None) -> bool:
    """Case-insensitive name prefix match; no criterion matches everything."""
    if not criterion:
        return True
    return (name or "").lower().startswith(criterion.lower())


async def iterate_all(
    store: MembershipStore,
    state: LifecycleState,
    page_size: int,
    criterion: str | None = None,
) -> AsyncIterator[MembershipRecord]:
    """Walk a whole state page by page, feeding each page's last key back as cursor.

    Records inserted while the walk is running may or may not show up.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive for a paged walk")

    cursor = ""
    while True:
        page = await store.enumerate(state, cursor, page_size, criterion=criterion)
        for record in page:
            yield record
        if len(page) < page_size:
            return
        cursor = page[-1].key
