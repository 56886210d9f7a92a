from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.auth import Principal
from supply_portal.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_portal.models import Material, MovementSource, MovementType, RequestItem, RequestStatus, Stock
from supply_portal.services.request_item_service import effective_approved_qty, list_items
from supply_portal.services.request_lifecycle import ISSUABLE_STATUSES, fulfilment_status, transition
from supply_portal.services.request_service import get_request
from supply_portal.services.stock_ledger_service import apply_movement, lock_stock

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


@dataclass(frozen=True)
class IssueLine:
    request_item_id: int
    qty_issued: Decimal
    store_id: int
    notes: str | None = None


@dataclass(frozen=True)
class IssueOutcome:
    request_id: int
    ref_no: str
    status: RequestStatus
    issued_items: list[dict]
    movement_ids: list[int]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _validate_lines(lines: list[IssueLine], items_by_id: dict[int, RequestItem], names: dict[int, str]) -> None:
    if not lines:
        raise ValidationError('At least one item is required')

    seen: set[int] = set()
    for line in lines:
        if line.request_item_id in seen:
            raise ValidationError(f'Request item {line.request_item_id} is listed more than once')
        seen.add(line.request_item_id)

        item = items_by_id.get(line.request_item_id)
        if item is None:
            raise NotFoundError(f'Request item {line.request_item_id} not found on this request')
        name = names.get(item.material_id, f'material {item.material_id}')
        qty = Decimal(line.qty_issued)
        if qty <= ZERO:
            raise ValidationError(f'Issued quantity for {name} must be greater than zero')
        if Decimal(item.qty_issued) > ZERO:
            raise ConflictError(f'{name} has already been issued')
        if qty > Decimal(item.qty_requested):
            raise ValidationError(
                f'Issued quantity for {name} ({qty}) exceeds requested quantity ({item.qty_requested})'
            )
        approved = effective_approved_qty(item)
        if qty > approved:
            raise ValidationError(f'Issued quantity for {name} ({qty}) exceeds approved quantity ({approved})')


def issue_materials(
    db: Session,
    *,
    principal: Principal,
    request_id: int,
    lines: list[IssueLine],
) -> IssueOutcome:
    """Decrement store stock for each line and mark the request items issued.

    Every check runs before the first write. Stock rows are locked in
    ``(store_id, material_id)`` order so concurrent batches touching the same
    rows cannot deadlock. Any failure leaves stock and items untouched once
    the caller rolls back.
    """
    request = get_request(db, request_id)
    status = RequestStatus(request.status)
    if status not in ISSUABLE_STATUSES:
        raise ConflictError(f'Materials can only be issued for approved requests (current status: {status.value})')

    items_by_id = {item.id: item for item in list_items(db, request_id=request.id)}
    materials = {
        material.id: material
        for material in db.execute(
            select(Material).where(Material.id.in_({item.material_id for item in items_by_id.values()}))
        ).scalars()
    }
    names = {material_id: material.name for material_id, material in materials.items()}
    _validate_lines(lines, items_by_id, names)

    keys = sorted({(line.store_id, items_by_id[line.request_item_id].material_id) for line in lines})
    stocks: dict[tuple[int, int], Stock] = {}
    for store_id, material_id in keys:
        stock = lock_stock(db, store_id=store_id, material_id=material_id)
        if stock is None:
            raise NotFoundError(f'No stock record for {names.get(material_id, material_id)} in store {store_id}')
        stocks[(store_id, material_id)] = stock

    demand: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
    for line in lines:
        demand[(line.store_id, items_by_id[line.request_item_id].material_id)] += Decimal(line.qty_issued)
    for key, qty in demand.items():
        available = Decimal(stocks[key].qty_on_hand)
        if available < qty:
            raise InsufficientStockError(names.get(key[1], f'material {key[1]}'), available, qty)

    now = _now()
    issued_items: list[dict] = []
    movements = []
    for line in lines:
        item = items_by_id[line.request_item_id]
        material = materials.get(item.material_id)
        qty = Decimal(line.qty_issued)
        movement = apply_movement(
            db,
            stock=stocks[(line.store_id, item.material_id)],
            movement_type=MovementType.OUT,
            source_type=MovementSource.ISSUE,
            qty_change=-qty,
            source_id=request.id,
            request_item_id=item.id,
            actor_principal_id=principal.id,
            unit_price=material.unit_price if material else None,
            notes=line.notes or f'Issued for {request.ref_no}',
            material_name=names.get(item.material_id),
        )
        movements.append(movement)

        item.qty_issued = qty
        item.issued_at = now
        item.issued_by_principal_id = principal.id
        item.updated_at = now
        if line.notes:
            item.notes = line.notes
        issued_items.append(
            {
                'request_item_id': item.id,
                'material_id': item.material_id,
                'material_name': names.get(item.material_id),
                'qty_issued': qty,
                'store_id': line.store_id,
            }
        )
    db.flush()

    target = fulfilment_status(items_by_id.values())
    transition(request, target)
    if target != RequestStatus.PARTIALLY_ISSUED:
        request.issued_at = now
        request.issued_by_principal_id = principal.id
    db.flush()

    logger.info(
        'issued %d items for request %s by principal %s, status %s',
        len(issued_items),
        request.ref_no,
        principal.id,
        RequestStatus(request.status).value,
    )
    return IssueOutcome(
        request_id=request.id,
        ref_no=request.ref_no,
        status=RequestStatus(request.status),
        issued_items=issued_items,
        movement_ids=[movement.id for movement in movements],
    )
