from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Select, exists, func, select
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role
from supply_portal.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from supply_portal.models import (
    Approval,
    Material,
    Request,
    RequestItem,
    RequestStatus,
    Site,
    SiteAssignment,
    SiteAssignmentStatus,
    Unit,
)
from supply_portal.models import Principal as PrincipalModel
from supply_portal.services.reference_service import next_request_reference
from supply_portal.services.request_item_service import NewItem, add_items, replace_items, validate_new_items
from supply_portal.services.request_lifecycle import ISSUABLE_STATUSES, transition

logger = logging.getLogger(__name__)

EDITABLE_BY_REQUESTER = frozenset({RequestStatus.PENDING, RequestStatus.DSE_REVIEW})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_request(db: Session, request_id: int) -> Request:
    request = db.get(Request, request_id)
    if request is None:
        raise NotFoundError('Request not found')
    return request


def _ensure_site_access(db: Session, *, principal: Principal, site_id: int) -> None:
    if db.get(Site, site_id) is None:
        raise ValidationError('Site not found')
    if principal.role != Role.SITE_ENGINEER:
        return
    assigned = db.execute(
        select(SiteAssignment.id).where(
            SiteAssignment.site_id == site_id,
            SiteAssignment.principal_id == principal.id,
            SiteAssignment.status == SiteAssignmentStatus.ACTIVE,
        )
    ).scalar_one_or_none()
    if assigned is None:
        raise ForbiddenError('You are not assigned to this site')


def create_request(
    db: Session,
    *,
    principal: Principal,
    site_id: int,
    notes: str | None,
    items: list[NewItem],
) -> Request:
    _ensure_site_access(db, principal=principal, site_id=site_id)
    validate_new_items(db, items)

    request = Request(
        ref_no=next_request_reference(db),
        site_id=site_id,
        requested_by_principal_id=principal.id,
        status=RequestStatus.PENDING,
        notes=notes,
    )
    db.add(request)
    db.flush()

    # Reviewers set approved quantities; a requester-supplied value is ignored.
    add_items(
        db,
        request_id=request.id,
        items=[
            NewItem(
                material_id=item.material_id,
                unit_id=item.unit_id,
                qty_requested=item.qty_requested,
                notes=item.notes,
            )
            for item in items
        ],
    )
    logger.info('request %s created by principal %s with %d items', request.ref_no, principal.id, len(items))
    return request


def update_request(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    site_id: int | None,
    notes: str | None,
    items: list[NewItem] | None,
) -> Request:
    request = get_request(db, request_id)
    if principal.role == Role.SITE_ENGINEER and request.requested_by_principal_id != principal.id:
        raise ForbiddenError('You can only update your own requests')
    if RequestStatus(request.status) not in EDITABLE_BY_REQUESTER:
        raise ConflictError(f'Request cannot be updated while {RequestStatus(request.status).value}')

    if site_id is not None and site_id != request.site_id:
        _ensure_site_access(db, principal=principal, site_id=site_id)
        request.site_id = site_id
    if notes is not None:
        request.notes = notes
    if items is not None:
        replace_items(
            db,
            request_id=request.id,
            items=[
                NewItem(
                    material_id=item.material_id,
                    unit_id=item.unit_id,
                    qty_requested=item.qty_requested,
                    notes=item.notes,
                )
                for item in items
            ],
        )
    request.updated_at = _now()
    db.flush()
    return request


def submit_request(db: Session, *, principal: Principal, request_id: int) -> Request:
    """Hand a pending request to the diocesan engineer."""
    request = get_request(db, request_id)
    if principal.role == Role.SITE_ENGINEER and request.requested_by_principal_id != principal.id:
        raise ForbiddenError('You can only submit your own requests')
    if RequestStatus(request.status) != RequestStatus.PENDING:
        raise ConflictError('Only pending requests can be submitted')
    transition(request, RequestStatus.DSE_REVIEW)
    db.flush()
    return request


def _items_by_request(db: Session, request_ids: list[int]) -> dict[int, list[dict]]:
    if not request_ids:
        return {}
    rows = db.execute(
        select(RequestItem, Material.name, Material.code, Unit.name, Unit.symbol)
        .join(Material, Material.id == RequestItem.material_id)
        .join(Unit, Unit.id == RequestItem.unit_id)
        .where(RequestItem.request_id.in_(request_ids))
        .order_by(RequestItem.request_id.asc(), RequestItem.id.asc())
    ).all()
    out: dict[int, list[dict]] = {request_id: [] for request_id in request_ids}
    for item, material_name, material_code, unit_name, unit_symbol in rows:
        out[item.request_id].append(
            {
                'id': item.id,
                'material_id': item.material_id,
                'material_name': material_name,
                'material_code': material_code,
                'unit_id': item.unit_id,
                'unit_name': unit_name,
                'unit_symbol': unit_symbol,
                'qty_requested': item.qty_requested,
                'qty_approved': item.qty_approved,
                'qty_issued': item.qty_issued,
                'qty_received': item.qty_received,
                'notes': item.notes,
                'issued_at': item.issued_at,
                'received_at': item.received_at,
            }
        )
    return out


def _approvals_for(db: Session, request_id: int) -> list[dict]:
    rows = db.execute(
        select(Approval, PrincipalModel.full_name, PrincipalModel.role)
        .join(PrincipalModel, PrincipalModel.id == Approval.reviewer_principal_id)
        .where(Approval.request_id == request_id)
        .order_by(Approval.created_at.asc(), Approval.id.asc())
    ).all()
    return [
        {
            'id': approval.id,
            'level': approval.level.value,
            'action': approval.action.value,
            'comment': approval.comment,
            'reviewer_id': approval.reviewer_principal_id,
            'reviewer_name': reviewer_name,
            'reviewer_role': reviewer_role.value,
            'created_at': approval.created_at,
        }
        for approval, reviewer_name, reviewer_role in rows
    ]


def _summary_query() -> Select:
    return (
        select(Request, Site.name, PrincipalModel.full_name)
        .join(Site, Site.id == Request.site_id)
        .join(PrincipalModel, PrincipalModel.id == Request.requested_by_principal_id)
    )


def _summary(request: Request, site_name: str, requester_name: str, items: list[dict]) -> dict:
    return {
        'id': request.id,
        'ref_no': request.ref_no,
        'status': RequestStatus(request.status).value,
        'notes': request.notes,
        'site_id': request.site_id,
        'site_name': site_name,
        'requested_by': request.requested_by_principal_id,
        'requester_name': requester_name,
        'issued_at': request.issued_at,
        'received_at': request.received_at,
        'closed_at': request.closed_at,
        'created_at': request.created_at,
        'updated_at': request.updated_at,
        'items': items,
    }


def _page(db: Session, query: Select, *, offset: int, limit: int) -> tuple[list[dict], int]:
    total = db.execute(select(func.count()).select_from(query.order_by(None).subquery())).scalar_one()
    rows = db.execute(query.order_by(Request.created_at.desc(), Request.id.desc()).offset(offset).limit(limit)).all()
    items = _items_by_request(db, [row[0].id for row in rows])
    return [_summary(request, site_name, requester, items[request.id]) for request, site_name, requester in rows], total


def list_requests(
    db: Session,
    *,
    status: RequestStatus | None = None,
    site_id: int | None = None,
    requested_by: int | None = None,
    offset: int = 0,
    limit: int = 10,
) -> tuple[list[dict], int]:
    query = _summary_query()
    if status is not None:
        query = query.where(Request.status == status)
    if site_id is not None:
        query = query.where(Request.site_id == site_id)
    if requested_by is not None:
        query = query.where(Request.requested_by_principal_id == requested_by)
    return _page(db, query, offset=offset, limit=limit)


def list_my_requests(
    db: Session,
    *,
    principal: Principal,
    status: RequestStatus | None = None,
    offset: int = 0,
    limit: int = 10,
) -> tuple[list[dict], int]:
    return list_requests(db, status=status, requested_by=principal.id, offset=offset, limit=limit)


def list_issuable_requests(db: Session, *, offset: int = 0, limit: int = 10) -> tuple[list[dict], int]:
    outstanding = exists().where(
        RequestItem.request_id == Request.id,
        RequestItem.qty_issued < func.coalesce(RequestItem.qty_approved, RequestItem.qty_requested),
    )
    query = _summary_query().where(Request.status.in_(ISSUABLE_STATUSES), outstanding)
    return _page(db, query, offset=offset, limit=limit)


def get_request_detail(db: Session, *, principal: Principal, request_id: int) -> dict:
    row = db.execute(_summary_query().where(Request.id == request_id)).one_or_none()
    if row is None:
        raise NotFoundError('Request not found')
    request, site_name, requester_name = row
    if principal.role == Role.SITE_ENGINEER and request.requested_by_principal_id != principal.id:
        raise ForbiddenError('You can only view your own requests')

    detail = _summary(request, site_name, requester_name, _items_by_request(db, [request.id])[request.id])
    detail['approvals'] = _approvals_for(db, request.id)
    return detail
