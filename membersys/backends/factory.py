"""Build the configured membership store."""
from __future__ import annotations

import logging

from ..config import BackendKind, StoreSettings, get_settings
from .base import MembershipStore

logger = logging.getLogger(__name__)


async def create_store(settings: StoreSettings | None = None) -> MembershipStore:
    """Connect to exactly one backend, as selected by ``settings.backend``.

    Args:
        settings: Store settings; the cached environment settings when omitted

    Returns:
        A connected store. Close it with ``await store.close()`` or use it
        as an async context manager.

    Raises:
        UnavailableError: If the backend cannot be reached
    """
    settings = settings or get_settings()
    logger.info(f"Opening {settings.backend.value} membership store")

    if settings.backend == BackendKind.CASSANDRA:
        from .cassandra import CassandraStore

        return await CassandraStore.connect(settings.cassandra, request_timeout=settings.request_timeout)

    from .relational import RelationalStore

    return await RelationalStore.connect(settings.postgresql, request_timeout=settings.request_timeout)
