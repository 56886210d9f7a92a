from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role
from supply_portal.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from supply_portal.models import MovementSource, Request, RequestStatus
from supply_portal.services.request_item_service import list_items, material_names
from supply_portal.services.request_lifecycle import RECEIVABLE_STATUSES, fulfilment_status, transition
from supply_portal.services.request_service import get_request
from supply_portal.services.stock_ledger_service import find_issue_movement, get_stock, record_acknowledgement

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


@dataclass(frozen=True)
class ReceiptLine:
    request_item_id: int
    qty_received: Decimal
    notes: str | None = None


@dataclass(frozen=True)
class ReceiptOutcome:
    request_id: int
    ref_no: str
    status: RequestStatus
    received_items: list[dict]
    all_items_received: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ensure_receiver(principal: Principal, request: Request) -> None:
    if principal.role == Role.SITE_ENGINEER and request.requested_by_principal_id != principal.id:
        raise ForbiddenError('You can only receive materials for your own requests')


def receive_materials(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    lines: list[ReceiptLine],
) -> ReceiptOutcome:
    """Record what arrived on site against what the store issued.

    Receipt is an acknowledgement: stock on hand does not move, but each line
    leaves a history row against the stock the item was issued from.
    """
    request = get_request(db, request_id)
    _ensure_receiver(principal, request)
    status = RequestStatus(request.status)
    if status not in RECEIVABLE_STATUSES:
        raise ConflictError(f'Materials can only be received for issued requests (current status: {status.value})')
    if not lines:
        raise ValidationError('At least one item is required')

    items_by_id = {item.id: item for item in list_items(db, request_id=request.id)}
    names = material_names(db, {item.material_id for item in items_by_id.values()})

    seen: set[int] = set()
    for line in lines:
        if line.request_item_id in seen:
            raise ValidationError(f'Request item {line.request_item_id} is listed more than once')
        seen.add(line.request_item_id)
        item = items_by_id.get(line.request_item_id)
        if item is None:
            raise NotFoundError(f'Request item {line.request_item_id} not found on this request')
        name = names.get(item.material_id, f'material {item.material_id}')
        qty = Decimal(line.qty_received)
        if qty <= ZERO:
            raise ValidationError(f'Received quantity for {name} must be greater than zero')
        if Decimal(item.qty_issued) <= ZERO:
            raise ConflictError(f'{name} has not been issued yet')
        cumulative = Decimal(item.qty_received) + qty
        if cumulative > Decimal(item.qty_issued):
            raise ValidationError(
                f'Received quantity for {name} ({cumulative}) would exceed issued quantity ({item.qty_issued})'
            )

    sources = {}
    for line in lines:
        item = items_by_id[line.request_item_id]
        issue = find_issue_movement(db, request_id=request.id, request_item_id=item.id)
        if issue is None:
            raise ConflictError(f'No issue record found for {names.get(item.material_id, item.material_id)}')
        stock = get_stock(db, store_id=issue.store_id, material_id=item.material_id)
        if stock is None:
            raise NotFoundError(f'Stock record for {names.get(item.material_id, item.material_id)} no longer exists')
        sources[line.request_item_id] = (issue, stock)

    now = _now()
    received_items: list[dict] = []
    for line in lines:
        item = items_by_id[line.request_item_id]
        issue, stock = sources[line.request_item_id]
        qty = Decimal(line.qty_received)
        record_acknowledgement(
            db,
            stock=stock,
            source_type=MovementSource.RECEIPT,
            source_id=request.id,
            request_item_id=item.id,
            actor_principal_id=principal.id,
            unit_price=issue.unit_price,
            notes=line.notes or f'Received {qty} on site for {request.ref_no}',
        )
        item.qty_received = Decimal(item.qty_received) + qty
        item.received_at = now
        item.received_by_principal_id = principal.id
        item.updated_at = now
        received_items.append(
            {
                'request_item_id': item.id,
                'material_id': item.material_id,
                'material_name': names.get(item.material_id),
                'qty_received': qty,
                'total_received': item.qty_received,
                'qty_issued': item.qty_issued,
                'store_id': stock.store_id,
            }
        )
    db.flush()

    target = fulfilment_status(items_by_id.values())
    all_received = target == RequestStatus.CLOSED
    request.received_at = now
    request.received_by_principal_id = principal.id
    transition(request, target)
    if all_received:
        request.closed_at = now
        request.closed_by_principal_id = principal.id
    request.updated_at = now
    db.flush()

    return ReceiptOutcome(
        request_id=request.id,
        ref_no=request.ref_no,
        status=RequestStatus(request.status),
        received_items=received_items,
        all_items_received=all_received,
    )


def close_requisition(db: Session, *, principal: Principal, request_id: int) -> Request:
    request = get_request(db, request_id)
    status = RequestStatus(request.status)
    if status != RequestStatus.ISSUED:
        raise ConflictError(f'Only issued requests can be closed (current status: {status.value})')
    transition(request, RequestStatus.CLOSED)
    now = _now()
    request.closed_at = now
    request.closed_by_principal_id = principal.id
    db.flush()
    logger.info('request %s closed manually by principal %s', request.ref_no, principal.id)
    return request
