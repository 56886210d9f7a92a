"""Review decisions on requests: approve, reject and modify.

Each call records an ``Approval`` row alongside any item edits so the review
trail stays complete. The caller's unit of work makes the item edits, the
status change and the record land together or not at all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role
from supply_portal.errors import ConflictError, ForbiddenError, ValidationError
from supply_portal.models import Approval, ApprovalAction, ApprovalLevel, Request, RequestItem, RequestStatus
from supply_portal.services.request_item_service import (
    ItemChangeSet,
    ItemChangeSummary,
    apply_item_changes,
    default_unset_approvals,
    list_items,
)
from supply_portal.services.request_lifecycle import (
    TERMINAL_STATUSES,
    assert_transition,
    fulfilment_status,
    transition,
)
from supply_portal.services.request_service import get_request

logger = logging.getLogger(__name__)

DSE_MODIFIABLE_STATUSES = frozenset(
    {
        RequestStatus.PENDING,
        RequestStatus.DSE_REVIEW,
        RequestStatus.VERIFIED,
        RequestStatus.WAITING_PADIRI_REVIEW,
    }
)
REAPPROVAL_STATUSES = frozenset({RequestStatus.VERIFIED, RequestStatus.APPROVED})
FULFILMENT_STATUSES = frozenset({RequestStatus.PARTIALLY_ISSUED, RequestStatus.ISSUED, RequestStatus.RECEIVED})


@dataclass(frozen=True)
class ApprovalOutcome:
    request: Request
    approval: Approval | None
    created: bool
    items: ItemChangeSummary | None


@dataclass(frozen=True)
class ModificationOutcome:
    request: Request
    approval: Approval
    previous_status: RequestStatus
    items: ItemChangeSummary


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def resolve_level(principal: Principal, requested: ApprovalLevel | None) -> ApprovalLevel:
    if principal.role == Role.DIOCESAN_SITE_ENGINEER:
        allowed = {ApprovalLevel.DSE}
    elif principal.role == Role.PADIRI:
        allowed = {ApprovalLevel.PADIRI}
    elif principal.role == Role.ADMIN:
        allowed = {ApprovalLevel.DSE, ApprovalLevel.PADIRI}
    else:
        raise ForbiddenError('You do not have permission to review requests')

    if requested is None:
        return ApprovalLevel.DSE if principal.role == Role.DIOCESAN_SITE_ENGINEER else ApprovalLevel.PADIRI
    if requested not in allowed:
        raise ForbiddenError(f'{principal.role.value} cannot review at level {requested.value}')
    return requested


def approval_target(principal: Principal) -> RequestStatus:
    if principal.role == Role.DIOCESAN_SITE_ENGINEER:
        return RequestStatus.VERIFIED
    return RequestStatus.APPROVED


def _record(
    db: Session,
    *,
    request_id: int,
    level: ApprovalLevel,
    reviewer_id: int,
    action: ApprovalAction,
    comment: str | None,
) -> Approval:
    approval = Approval(
        request_id=request_id,
        level=level,
        reviewer_principal_id=reviewer_id,
        action=action,
        comment=comment,
        created_at=_now(),
    )
    db.add(approval)
    db.flush()
    return approval


def _existing_approval(db: Session, *, request_id: int, level: ApprovalLevel, reviewer_id: int) -> Approval | None:
    return db.execute(
        select(Approval)
        .where(
            Approval.request_id == request_id,
            Approval.level == level,
            Approval.reviewer_principal_id == reviewer_id,
            Approval.action == ApprovalAction.APPROVED,
        )
        .order_by(Approval.id.asc())
    ).scalars().first()


def approve_request(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    level: ApprovalLevel | None,
    comment: str | None,
    changes: ItemChangeSet | None = None,
) -> ApprovalOutcome:
    level = resolve_level(principal, level)
    request = get_request(db, request_id)
    target = approval_target(principal)
    if RequestStatus(request.status) != target:
        assert_transition(request, target)

    summary = None
    if changes is not None and not changes.is_empty:
        summary = apply_item_changes(db, request=request, changes=changes)

    transition(request, target)
    if target == RequestStatus.APPROVED:
        default_unset_approvals(db, request_id=request.id)

    # Read-then-create; two concurrent identical calls can both get past this.
    existing = _existing_approval(db, request_id=request.id, level=level, reviewer_id=principal.id)
    if existing is not None:
        logger.info('request %s already approved at %s by principal %s', request.ref_no, level.value, principal.id)
        db.flush()
        return ApprovalOutcome(request=request, approval=existing, created=False, items=summary)

    approval = _record(
        db,
        request_id=request.id,
        level=level,
        reviewer_id=principal.id,
        action=ApprovalAction.APPROVED,
        comment=comment,
    )
    return ApprovalOutcome(request=request, approval=approval, created=True, items=summary)


def _has_issued_items(db: Session, request_id: int) -> bool:
    issued = db.execute(
        select(RequestItem.id).where(RequestItem.request_id == request_id, RequestItem.qty_issued > Decimal('0')).limit(1)
    ).scalar_one_or_none()
    return issued is not None


def reject_request(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    level: ApprovalLevel | None,
    comment: str | None,
) -> Approval:
    level = resolve_level(principal, level)
    request = get_request(db, request_id)
    if RequestStatus(request.status) == RequestStatus.CLOSED:
        raise ConflictError('Closed requests cannot be rejected')

    if _has_issued_items(db, request.id):
        # Stock already left the store; nothing is returned automatically.
        logger.warning(
            'request %s rejected from %s after materials were issued',
            request.ref_no,
            RequestStatus(request.status).value,
        )

    transition(request, RequestStatus.REJECTED)
    return _record(
        db,
        request_id=request.id,
        level=level,
        reviewer_id=principal.id,
        action=ApprovalAction.REJECTED,
        comment=comment,
    )


def _modification_target(principal: Principal, current: RequestStatus) -> RequestStatus:
    if current in TERMINAL_STATUSES:
        raise ConflictError(f'Request cannot be modified while {current.value}')
    if principal.role == Role.DIOCESAN_SITE_ENGINEER:
        if current not in DSE_MODIFIABLE_STATUSES:
            raise ForbiddenError(f'Diocesan site engineers cannot modify a request while {current.value}')
        return RequestStatus.DSE_REVIEW
    if principal.role in (Role.ADMIN, Role.PADIRI):
        if current in REAPPROVAL_STATUSES:
            return RequestStatus.WAITING_PADIRI_REVIEW
        return current
    raise ForbiddenError('You do not have permission to modify requests')


def modify_request(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    changes: ItemChangeSet,
    notes: str | None = None,
    comment: str | None = None,
) -> ModificationOutcome:
    if changes.is_empty and notes is None:
        raise ValidationError('No modifications provided')

    request = get_request(db, request_id)
    current = RequestStatus(request.status)
    target = _modification_target(principal, current)
    if target != current:
        assert_transition(request, target)

    summary = apply_item_changes(db, request=request, changes=changes)
    if notes is not None:
        request.notes = notes
        request.updated_at = _now()
    if current in FULFILMENT_STATUSES:
        # Adding or dropping unissued lines can change how far issuance has got.
        target = fulfilment_status(list_items(db, request_id=request.id))
    transition(request, target)
    if target == RequestStatus.CLOSED:
        request.closed_at = _now()
        request.closed_by_principal_id = principal.id
        logger.info('request %s closed by modification from principal %s', request.ref_no, principal.id)

    level = ApprovalLevel.DSE if principal.role == Role.DIOCESAN_SITE_ENGINEER else ApprovalLevel.PADIRI
    approval = _record(
        db,
        request_id=request.id,
        level=level,
        reviewer_id=principal.id,
        action=ApprovalAction.MODIFIED,
        comment=comment,
    )
    return ModificationOutcome(request=request, approval=approval, previous_status=current, items=summary)
