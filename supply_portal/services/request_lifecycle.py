from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from supply_portal.errors import InvalidTransitionError
from supply_portal.models import Request, RequestItem, RequestStatus

logger = logging.getLogger(__name__)

S = RequestStatus

REVIEW_STATUSES = frozenset({S.PENDING, S.DSE_REVIEW, S.VERIFIED, S.WAITING_PADIRI_REVIEW})
ISSUABLE_STATUSES = frozenset({S.APPROVED, S.PARTIALLY_ISSUED})
RECEIVABLE_STATUSES = frozenset({S.PARTIALLY_ISSUED, S.ISSUED, S.RECEIVED})
TERMINAL_STATUSES = frozenset({S.REJECTED, S.CLOSED})

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.PENDING: frozenset({S.DSE_REVIEW, S.VERIFIED, S.APPROVED, S.REJECTED}),
    S.DSE_REVIEW: frozenset({S.VERIFIED, S.APPROVED, S.REJECTED}),
    S.VERIFIED: frozenset({S.DSE_REVIEW, S.WAITING_PADIRI_REVIEW, S.APPROVED, S.REJECTED}),
    S.WAITING_PADIRI_REVIEW: frozenset({S.DSE_REVIEW, S.VERIFIED, S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.WAITING_PADIRI_REVIEW, S.PARTIALLY_ISSUED, S.ISSUED, S.REJECTED}),
    S.PARTIALLY_ISSUED: frozenset({S.ISSUED, S.RECEIVED, S.CLOSED, S.REJECTED}),
    S.ISSUED: frozenset({S.PARTIALLY_ISSUED, S.RECEIVED, S.CLOSED, S.REJECTED}),
    S.RECEIVED: frozenset({S.PARTIALLY_ISSUED, S.CLOSED, S.REJECTED}),
    S.REJECTED: frozenset(),
    S.CLOSED: frozenset(),
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(request: Request, target: RequestStatus) -> None:
    current = RequestStatus(request.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def transition(request: Request, target: RequestStatus) -> bool:
    """Move ``request`` to ``target``; returns False when it is already there."""
    current = RequestStatus(request.status)
    if current == target:
        return False
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    request.status = target
    request.updated_at = _now()
    logger.info('request %s (%s): %s -> %s', request.id, request.ref_no, current.value, target.value)
    return True


def fulfilment_status(items: Iterable[RequestItem]) -> RequestStatus:
    """Status implied by how far the items of an issued request have got.

    Any unissued item keeps the request PARTIALLY_ISSUED. Once everything is
    issued, the request is ISSUED until the first receipt, RECEIVED while
    receipts are incomplete and CLOSED when every item has fully arrived.
    """
    items = list(items)
    if any(Decimal(item.qty_issued) <= 0 for item in items):
        return S.PARTIALLY_ISSUED
    if all(Decimal(item.qty_received) >= Decimal(item.qty_issued) for item in items):
        return S.CLOSED
    if any(Decimal(item.qty_received) > 0 for item in items):
        return S.RECEIVED
    return S.ISSUED
