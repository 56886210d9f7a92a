from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role, get_current_principal, require_role
from supply_portal.db import get_db, unit_of_work
from supply_portal.dependencies import Pagination, get_client_ip
from supply_portal.models import RequestStatus
from supply_portal.responses import envelope, pagination_block
from supply_portal.schemas import ApproveRequest, ModifyRequest, ReceiveMaterialsRequest, RejectRequest, RequestCreate, RequestUpdate
from supply_portal.services.approval_service import approve_request, modify_request, reject_request
from supply_portal.services.audit_service import log_audit
from supply_portal.services.receipt_service import close_requisition, receive_materials
from supply_portal.services.request_service import (
    create_request,
    get_request_detail,
    list_my_requests,
    list_requests,
    submit_request,
    update_request,
)

router = APIRouter(prefix='/api/requests', tags=['requests'])

REQUESTERS = (Role.SITE_ENGINEER, Role.ADMIN)
REVIEWERS = (Role.ADMIN, Role.PADIRI, Role.DIOCESAN_SITE_ENGINEER)
OVERSEERS = (Role.ADMIN, Role.PADIRI, Role.DIOCESAN_SITE_ENGINEER, Role.STOREKEEPER)


@router.get('')
def list_all(
    status: RequestStatus | None = None,
    site_id: int | None = None,
    requested_by: int | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*OVERSEERS)),
):
    rows, total = list_requests(
        db,
        status=status,
        site_id=site_id,
        requested_by=requested_by,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return envelope(
        {'requests': rows, 'pagination': pagination_block(page=pagination.page, limit=pagination.limit, total=total)},
        'Requests retrieved successfully',
    )


@router.get('/my-requests')
def my_requests(
    status: RequestStatus | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows, total = list_my_requests(
        db,
        principal=principal,
        status=status,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return envelope(
        {'requests': rows, 'pagination': pagination_block(page=pagination.page, limit=pagination.limit, total=total)},
        'Requests retrieved successfully',
    )


@router.get('/{request_id}')
def detail(
    request_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return envelope(get_request_detail(db, principal=principal, request_id=request_id), 'Request retrieved successfully')


@router.post('')
def create(
    body: RequestCreate,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REQUESTERS)),
):
    with unit_of_work(db):
        created = create_request(
            db,
            principal=principal,
            site_id=body.site_id,
            notes=body.notes,
            items=[item.to_new_item() for item in body.items],
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_CREATED',
            request_id=created.id,
            ip=get_client_ip(request),
            metadata={'ref_no': created.ref_no, 'site_id': body.site_id, 'item_count': len(body.items)},
        )
    return envelope(
        get_request_detail(db, principal=principal, request_id=created.id),
        'Request created successfully',
        status_code=201,
    )


@router.put('/{request_id}')
def update(
    request_id: int,
    body: RequestUpdate,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REQUESTERS)),
):
    with unit_of_work(db):
        update_request(
            db,
            principal=principal,
            request_id=request_id,
            site_id=body.site_id,
            notes=body.notes,
            items=[item.to_new_item() for item in body.items] if body.items is not None else None,
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_UPDATED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={'items_replaced': body.items is not None},
        )
    return envelope(get_request_detail(db, principal=principal, request_id=request_id), 'Request updated successfully')


@router.post('/{request_id}/submit')
def submit(
    request_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REQUESTERS)),
):
    with unit_of_work(db):
        submitted = submit_request(db, principal=principal, request_id=request_id)
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_SUBMITTED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={'ref_no': submitted.ref_no},
        )
    return envelope(get_request_detail(db, principal=principal, request_id=request_id), 'Request submitted for review')


@router.post('/{request_id}/approve')
def approve(
    request_id: int,
    body: ApproveRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REVIEWERS)),
):
    with unit_of_work(db):
        outcome = approve_request(
            db,
            principal=principal,
            request_id=request_id,
            level=body.level,
            comment=body.comment,
            changes=body.to_change_set(),
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_APPROVED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={
                'level': outcome.approval.level.value if outcome.approval else None,
                'status': RequestStatus(outcome.request.status).value,
                'duplicate': not outcome.created,
            },
        )
    data = get_request_detail(db, principal=principal, request_id=request_id)
    if outcome.items is not None:
        data['items_modified'] = outcome.items.items_modified
        data['items_added'] = outcome.items.items_added
        data['items_removed'] = outcome.items.items_removed
    message = 'Request approved successfully' if outcome.created else 'Request was already approved at this level'
    return envelope(data, message)


@router.post('/{request_id}/reject')
def reject(
    request_id: int,
    body: RejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REVIEWERS)),
):
    with unit_of_work(db):
        approval = reject_request(
            db,
            principal=principal,
            request_id=request_id,
            level=body.level,
            comment=body.comment,
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_REJECTED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={'level': approval.level.value, 'comment': body.comment},
        )
    return envelope(get_request_detail(db, principal=principal, request_id=request_id), 'Request rejected')


@router.put('/{request_id}/modify')
def modify(
    request_id: int,
    body: ModifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REVIEWERS)),
):
    with unit_of_work(db):
        outcome = modify_request(
            db,
            principal=principal,
            request_id=request_id,
            changes=body.to_change_set(),
            notes=body.notes,
            comment=body.comment,
        )
        new_status = RequestStatus(outcome.request.status).value
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_MODIFIED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={
                'previous_status': outcome.previous_status.value,
                'new_status': new_status,
                'items_modified': outcome.items.items_modified,
                'items_added': outcome.items.items_added,
                'items_removed': outcome.items.items_removed,
            },
        )
    data = get_request_detail(db, principal=principal, request_id=request_id)
    data.update(
        {
            'items_modified': outcome.items.items_modified,
            'items_added': outcome.items.items_added,
            'items_removed': outcome.items.items_removed,
            'new_status': new_status,
        }
    )
    return envelope(data, 'Request modified successfully')


@router.post('/{request_id}/receive')
def receive(
    request_id: int,
    body: ReceiveMaterialsRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*REQUESTERS)),
):
    with unit_of_work(db):
        outcome = receive_materials(db, principal=principal, request_id=request_id, lines=body.to_lines())
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='MATERIALS_RECEIVED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={
                'ref_no': outcome.ref_no,
                'status': outcome.status.value,
                'items': [
                    {'request_item_id': item['request_item_id'], 'qty_received': str(item['qty_received'])}
                    for item in outcome.received_items
                ],
            },
        )
    message = (
        'All materials received; request closed'
        if outcome.status == RequestStatus.CLOSED
        else 'Materials received successfully'
    )
    return envelope(
        {
            'request_id': outcome.request_id,
            'ref_no': outcome.ref_no,
            'status': outcome.status.value,
            'received_items': outcome.received_items,
            'all_items_received': outcome.all_items_received,
        },
        message,
    )


@router.post('/{request_id}/close')
def close(
    request_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(Role.ADMIN, Role.PADIRI, Role.STOREKEEPER)),
):
    with unit_of_work(db):
        closed = close_requisition(db, principal=principal, request_id=request_id)
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='REQUEST_CLOSED',
            request_id=request_id,
            ip=get_client_ip(request),
            metadata={'ref_no': closed.ref_no},
        )
    return envelope(get_request_detail(db, principal=principal, request_id=request_id), 'Request closed successfully')
