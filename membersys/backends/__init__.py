"""Storage backends implementing the membership store contract."""
from .base import MembershipStore
from .factory import create_store

__all__ = ["MembershipStore", "create_store"]
