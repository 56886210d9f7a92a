from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role, require_role
from supply_portal.db import get_db, unit_of_work
from supply_portal.dependencies import Pagination, get_client_ip
from supply_portal.models import MovementSource, MovementType, Stock
from supply_portal.responses import envelope, pagination_block
from supply_portal.schemas import IssueMaterialsRequest, StockAdjust, StockCreate, StockThreshold
from supply_portal.services.audit_service import log_audit
from supply_portal.services.issuance_service import issue_materials
from supply_portal.services.request_service import list_issuable_requests
from supply_portal.services.stock_ledger_service import (
    acknowledge_low_stock_alert,
    adjust_stock,
    create_stock,
    set_low_stock_threshold,
)
from supply_portal.services.stock_query_service import list_movements, list_recommendations, list_stock, serialize_stock

router = APIRouter(prefix='/api/stock', tags=['stock'])

STOCK_ROLES = (Role.STOREKEEPER, Role.ADMIN, Role.PADIRI)


def _page(key: str, rows: list[dict], total: int, pagination: Pagination) -> dict:
    return {key: rows, 'pagination': pagination_block(page=pagination.page, limit=pagination.limit, total=total)}


@router.get('')
def stock_list(
    store_id: int | None = None,
    material_id: int | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*STOCK_ROLES)),
):
    rows, total = list_stock(
        db,
        store_id=store_id,
        material_id=material_id,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return envelope(_page('stock', rows, total, pagination), 'Stock retrieved successfully')


@router.get('/low-stock')
def low_stock(
    store_id: int | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*STOCK_ROLES)),
):
    rows, total = list_stock(
        db,
        store_id=store_id,
        low_stock_only=True,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return envelope(_page('stock', rows, total, pagination), 'Low stock alerts retrieved successfully')


@router.get('/movements')
def movements(
    store_id: int | None = None,
    material_id: int | None = None,
    movement_type: MovementType | None = None,
    source_type: MovementSource | None = None,
    request_id: int | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*STOCK_ROLES)),
):
    rows, total = list_movements(
        db,
        store_id=store_id,
        material_id=material_id,
        movement_type=movement_type,
        source_type=source_type,
        request_id=request_id,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return envelope(_page('movements', rows, total, pagination), 'Stock movements retrieved successfully')


@router.get('/issuable-requests')
def issuable_requests(
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*STOCK_ROLES)),
):
    rows, total = list_issuable_requests(db, offset=pagination.offset, limit=pagination.limit)
    return envelope(_page('requests', rows, total, pagination), 'Issuable requests retrieved successfully')


@router.get('/recommendations')
def recommendations(
    store_id: int | None = None,
    pagination: Pagination = Depends(),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_role(*STOCK_ROLES)),
):
    rows, total = list_recommendations(db, store_id=store_id, offset=pagination.offset, limit=pagination.limit)
    return envelope(_page('recommendations', rows, total, pagination), 'Procurement recommendations generated')


@router.post('/issue-materials')
def issue(
    body: IssueMaterialsRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*STOCK_ROLES)),
):
    with unit_of_work(db):
        outcome = issue_materials(db, principal=principal, request_id=body.request_id, lines=body.to_lines())
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='MATERIALS_ISSUED',
            request_id=body.request_id,
            ip=get_client_ip(request),
            metadata={
                'ref_no': outcome.ref_no,
                'status': outcome.status.value,
                'movement_ids': outcome.movement_ids,
            },
        )
    return envelope(
        {
            'request_id': outcome.request_id,
            'ref_no': outcome.ref_no,
            'status': outcome.status.value,
            'issued_items': outcome.issued_items,
            'stock_movements': outcome.movement_ids,
        },
        'Materials issued successfully',
    )


@router.post('')
def create(
    body: StockCreate,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*STOCK_ROLES)),
):
    with unit_of_work(db):
        stock = create_stock(
            db,
            store_id=body.store_id,
            material_id=body.material_id,
            qty_on_hand=body.qty_on_hand,
            reorder_level=body.reorder_level,
            low_stock_threshold=body.low_stock_threshold,
            actor_principal_id=principal.id,
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='STOCK_CREATED',
            request_id=None,
            ip=get_client_ip(request),
            metadata={'stock_id': stock.id, 'store_id': body.store_id, 'material_id': body.material_id},
        )
    return envelope(serialize_stock(db, stock), 'Stock record created successfully', status_code=201)


@router.post('/{stock_id}/adjust')
def adjust(
    stock_id: int,
    body: StockAdjust,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(Role.STOREKEEPER, Role.ADMIN)),
):
    with unit_of_work(db):
        movement = adjust_stock(
            db,
            stock_id=stock_id,
            qty_change=body.qty_change,
            actor_principal_id=principal.id,
            notes=body.notes,
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='STOCK_ADJUSTED',
            request_id=None,
            ip=get_client_ip(request),
            metadata={'stock_id': stock_id, 'qty_change': str(body.qty_change), 'movement_id': movement.id},
        )
    data = serialize_stock(db, db.get(Stock, stock_id))
    data['movement_id'] = movement.id
    return envelope(data, 'Stock adjusted successfully')


@router.put('/{stock_id}/threshold')
def threshold(
    stock_id: int,
    body: StockThreshold,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*STOCK_ROLES)),
):
    with unit_of_work(db):
        stock = set_low_stock_threshold(db, stock_id=stock_id, low_stock_threshold=body.low_stock_threshold)
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='STOCK_THRESHOLD_SET',
            request_id=None,
            ip=get_client_ip(request),
            metadata={'stock_id': stock_id, 'low_stock_threshold': str(body.low_stock_threshold)},
        )
    return envelope(serialize_stock(db, stock), 'Low stock threshold updated')


@router.post('/{stock_id}/acknowledge-alert')
def acknowledge_alert(
    stock_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_role(*STOCK_ROLES)),
):
    with unit_of_work(db):
        stock = acknowledge_low_stock_alert(db, stock_id=stock_id)
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='STOCK_ALERT_ACKNOWLEDGED',
            request_id=None,
            ip=get_client_ip(request),
            metadata={'stock_id': stock_id},
        )
    return envelope(serialize_stock(db, stock), 'Low stock alert acknowledged')
