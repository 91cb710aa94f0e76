"""Lifecycle rules shared by every backend.

Backends differ in how a transition is committed, never in which
transitions exist, what they stamp or which preconditions they enforce.
"""
from __future__ import annotations

from .errors import FailedPreconditionError
from .records import LifecycleState, MembershipAgreement

# Rejected applicants and cancelled queue entries.
SHORT_RETENTION = 6 * 30 * 24 * 60 * 60
# Departed members.
LONG_RETENTION = 2 * 365 * 24 * 60 * 60

ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.APPLICATION: frozenset({LifecycleState.QUEUE, LifecycleState.ARCHIVE}),
    LifecycleState.QUEUE: frozenset({LifecycleState.MEMBER, LifecycleState.ARCHIVE}),
    LifecycleState.MEMBER: frozenset({LifecycleState.DEQUEUE}),
    LifecycleState.DEQUEUE: frozenset({LifecycleState.ARCHIVE}),
    LifecycleState.ARCHIVE: frozenset(),
}

# Entering these states needs a signed agreement on file.
DOCUMENT_REQUIRED = frozenset({LifecycleState.QUEUE, LifecycleState.MEMBER})

_APPROVAL_EDGES = frozenset({
    (LifecycleState.APPLICATION, LifecycleState.QUEUE),
    (LifecycleState.APPLICATION, LifecycleState.ARCHIVE),
    (LifecycleState.QUEUE, LifecycleState.ARCHIVE),
})


def can_transition(from_state: LifecycleState, to_state: LifecycleState) -> bool:
    """Check whether ``from_state -> to_state`` is a lifecycle edge."""
    return to_state in ALLOWED_TRANSITIONS[from_state]


def check_transition(from_state: LifecycleState, to_state: LifecycleState) -> None:
    """Raise ``FailedPreconditionError`` unless the edge exists."""
    if not can_transition(from_state, to_state):
        raise FailedPreconditionError(
            f"Records cannot move from {from_state.value} to {to_state.value}"
        )


def retention_for(from_state: LifecycleState, to_state: LifecycleState) -> int:
    """Return the retention in seconds for a record entering ``to_state`` (0 = keep)."""
    if to_state != LifecycleState.ARCHIVE:
        return 0
    if from_state == LifecycleState.DEQUEUE:
        return LONG_RETENTION
    return SHORT_RETENTION


def apply_transition(
    agreement: MembershipAgreement,
    from_state: LifecycleState,
    to_state: LifecycleState,
    initiator: str,
    now: int,
    reason: str | None = None,
) -> MembershipAgreement:
    """Validate preconditions and stamp metadata for a transition.

    Args:
        agreement: Record as read from ``from_state``
        from_state: Current state
        to_state: Destination state
        initiator: Identity of the approver / operator
        now: Server-side Unix timestamp
        reason: Departure reason, used on the goodbye path

    Returns:
        A stamped copy of ``agreement``

    Raises:
        FailedPreconditionError: If the edge does not exist or the
            destination requires a document that is missing
    """
    check_transition(from_state, to_state)

    if to_state in DOCUMENT_REQUIRED and not agreement.has_document:
        raise FailedPreconditionError("No membership agreement scan has been uploaded")

    stamped = agreement.model_copy(deep=True)
    metadata = stamped.metadata

    if (from_state, to_state) in _APPROVAL_EDGES:
        metadata.approver_uid = initiator
        metadata.approval_timestamp = now
    elif from_state == LifecycleState.MEMBER:
        metadata.goodbye_initiator = initiator
        metadata.goodbye_timestamp = now
        metadata.goodbye_reason = reason
    elif from_state == LifecycleState.DEQUEUE:
        if metadata.goodbye_initiator is None:
            metadata.goodbye_initiator = initiator
        if metadata.goodbye_timestamp is None:
            metadata.goodbye_timestamp = now
        if metadata.goodbye_reason is None and reason is not None:
            metadata.goodbye_reason = reason

    return stamped
