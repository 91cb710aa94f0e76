"""Membership lifecycle persistence layer.

This package stores membership applications and member records keyed by
lifecycle state, and moves them atomically between states on either a
wide-column (Cassandra) or a relational (PostgreSQL) backend.
"""
