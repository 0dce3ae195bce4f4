"""
Subscription State Machine
==========================

Legal status edges and the tie-break policy the ledger applies to
incoming validation outcomes.

    NONE -> PENDING -> ACTIVE -> GRACE -> EXPIRED -> CANCELED

ACTIVE and GRACE may also move straight to CANCELED. EXPIRED and
CANCELED are terminal for a purchase lineage; a *new* purchase for the
same user+product re-enters PENDING or ACTIVE on the same row.
"""

from datetime import datetime
from typing import Optional

from app.models.subscription import SubscriptionStatus

S = SubscriptionStatus

TERMINAL_STATUSES = frozenset({S.EXPIRED, S.CANCELED})

ENTRY_STATUSES = frozenset({S.PENDING, S.ACTIVE})

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.NONE: frozenset({S.PENDING, S.ACTIVE}),
    S.PENDING: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.ACTIVE, S.GRACE, S.EXPIRED, S.CANCELED}),
    S.GRACE: frozenset({S.ACTIVE, S.GRACE, S.EXPIRED, S.CANCELED}),
    S.EXPIRED: frozenset({S.CANCELED}),
    S.CANCELED: frozenset(),
}

# Ranking used when choosing the record that best represents a user
STATUS_RANK: dict[SubscriptionStatus, int] = {
    S.ACTIVE: 5,
    S.GRACE: 4,
    S.PENDING: 3,
    S.EXPIRED: 2,
    S.CANCELED: 1,
    S.NONE: 0,
}


def is_terminal(status: SubscriptionStatus) -> bool:
    """True for statuses that end a purchase lineage."""
    return status in TERMINAL_STATUSES


def is_new_lineage(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    current_transaction_id: Optional[str],
    incoming_transaction_id: str,
) -> bool:
    """
    True when ``target`` opens a new purchase lineage on the record.

    Only possible from NONE or a terminal status, only into PENDING or
    ACTIVE, and only with a transaction id the record has not seen.
    """
    if current is not S.NONE and not is_terminal(current):
        return False
    if target not in ENTRY_STATUSES:
        return False
    return incoming_transaction_id != current_transaction_id


def is_allowed(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    new_lineage: bool = False,
) -> bool:
    """Whether ``current -> target`` is a legal edge."""
    if new_lineage and target in ENTRY_STATUSES:
        return current is S.NONE or is_terminal(current)
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def should_apply(
    current: SubscriptionStatus,
    current_marker: int,
    current_transaction_id: Optional[str],
    target: SubscriptionStatus,
    incoming_marker: int,
    incoming_transaction_id: str,
    replayed: bool = False,
) -> bool:
    """
    Tie-break for out-of-order delivery.

    An outcome is applied when its freshness marker is strictly newer
    than the stored one, or when the record is NONE/terminal and the
    outcome starts a new purchase lineage. Everything else is stale.

    ``replayed`` marks a transaction id that already drove a transition
    on this record; it can never open a new lineage again. A terminal
    record offered its own status again is a duplicate.
    """
    if is_terminal(current) and target is current:
        return False
    if incoming_marker > current_marker:
        return True
    if replayed:
        return False
    return is_new_lineage(current, target, current_transaction_id, incoming_transaction_id)


def effective_status(
    status: SubscriptionStatus,
    expiration_date: Optional[datetime],
    now: datetime,
) -> SubscriptionStatus:
    """
    Status as seen by readers.

    ACTIVE and GRACE records whose access window has closed read as
    EXPIRED until a sweep or a fresher receipt transitions them.
    """
    if (
        status in (S.ACTIVE, S.GRACE)
        and expiration_date is not None
        and expiration_date <= now
    ):
        return S.EXPIRED
    return status
