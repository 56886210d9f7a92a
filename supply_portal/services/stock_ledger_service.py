"""Stock quantities and their append-only movement trail.

Every change to ``Stock.qty_on_hand`` goes through :func:`apply_movement`,
which writes the matching ``StockMovement`` row in the same flush. The ledger
knows nothing about requests beyond the ``source_id`` and
``request_item_id`` it is handed.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_portal.models import Material, MovementSource, MovementType, Stock, StockMovement, Store

ZERO = Decimal('0')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def compute_low_stock_alert(qty_on_hand: Decimal, low_stock_threshold: Decimal | None) -> bool:
    if low_stock_threshold is None:
        return False
    return Decimal(qty_on_hand) <= Decimal(low_stock_threshold)


def get_stock(db: Session, *, store_id: int, material_id: int) -> Stock | None:
    return db.execute(
        select(Stock).where(Stock.store_id == store_id, Stock.material_id == material_id)
    ).scalar_one_or_none()


def lock_stock(db: Session, *, store_id: int, material_id: int) -> Stock | None:
    return db.execute(
        select(Stock)
        .where(Stock.store_id == store_id, Stock.material_id == material_id)
        .with_for_update()
    ).scalar_one_or_none()


def lock_stock_by_id(db: Session, *, stock_id: int) -> Stock:
    stock = db.execute(select(Stock).where(Stock.id == stock_id).with_for_update()).scalar_one_or_none()
    if stock is None:
        raise NotFoundError('Stock record not found')
    return stock


def apply_movement(
    db: Session,
    *,
    stock: Stock,
    movement_type: MovementType,
    source_type: MovementSource,
    qty_change: Decimal,
    source_id: int | None,
    actor_principal_id: int | None,
    unit_price: Decimal | None = None,
    notes: str | None = None,
    request_item_id: int | None = None,
    material_name: str | None = None,
) -> StockMovement:
    """Change ``stock`` by ``qty_change`` and append the movement that explains it.

    The caller must already hold the row lock on ``stock``.
    """
    qty_change = Decimal(qty_change)
    qty_before = Decimal(stock.qty_on_hand)
    qty_after = qty_before + qty_change
    if qty_after < ZERO:
        raise InsufficientStockError(material_name or f'material {stock.material_id}', qty_before, -qty_change)

    stock.qty_on_hand = qty_after
    stock.low_stock_alert = compute_low_stock_alert(qty_after, stock.low_stock_threshold)
    stock.updated_at = _now()

    movement = StockMovement(
        stock_id=stock.id,
        store_id=stock.store_id,
        material_id=stock.material_id,
        movement_type=movement_type,
        source_type=source_type,
        source_id=source_id,
        request_item_id=request_item_id,
        qty_before=qty_before,
        qty_change=qty_change,
        qty_after=qty_after,
        unit_price=unit_price,
        notes=notes,
        created_by_principal_id=actor_principal_id,
        created_at=_now(),
    )
    db.add(movement)
    return movement


def record_acknowledgement(
    db: Session,
    *,
    stock: Stock,
    source_type: MovementSource,
    source_id: int | None,
    actor_principal_id: int | None,
    unit_price: Decimal | None = None,
    notes: str | None = None,
    request_item_id: int | None = None,
) -> StockMovement:
    """Append a history row that leaves ``qty_on_hand`` untouched."""
    on_hand = Decimal(stock.qty_on_hand)
    movement = StockMovement(
        stock_id=stock.id,
        store_id=stock.store_id,
        material_id=stock.material_id,
        movement_type=MovementType.IN,
        source_type=source_type,
        source_id=source_id,
        request_item_id=request_item_id,
        qty_before=on_hand,
        qty_change=ZERO,
        qty_after=on_hand,
        unit_price=unit_price,
        notes=notes,
        created_by_principal_id=actor_principal_id,
        created_at=_now(),
    )
    db.add(movement)
    return movement


def create_stock(
    db: Session,
    *,
    store_id: int,
    material_id: int,
    qty_on_hand: Decimal,
    reorder_level: Decimal | None,
    low_stock_threshold: Decimal | None,
    actor_principal_id: int | None,
) -> Stock:
    if Decimal(qty_on_hand) < ZERO:
        raise ValidationError('Quantity on hand cannot be negative')
    store_exists = db.execute(select(Store.id).where(Store.id == store_id, Store.active.is_(True))).scalar_one_or_none()
    if not store_exists:
        raise ValidationError('Store not found')
    material = db.get(Material, material_id)
    if material is None:
        raise ValidationError('Material not found')
    if get_stock(db, store_id=store_id, material_id=material_id) is not None:
        raise ConflictError('Stock record already exists for this material in this store')

    stock = Stock(
        store_id=store_id,
        material_id=material_id,
        qty_on_hand=ZERO,
        reorder_level=Decimal(reorder_level or 0),
        low_stock_threshold=low_stock_threshold,
        low_stock_alert=compute_low_stock_alert(ZERO, low_stock_threshold),
    )
    db.add(stock)
    db.flush()

    if Decimal(qty_on_hand) > ZERO:
        apply_movement(
            db,
            stock=stock,
            movement_type=MovementType.IN,
            source_type=MovementSource.ADJUSTMENT,
            qty_change=Decimal(qty_on_hand),
            source_id=None,
            actor_principal_id=actor_principal_id,
            unit_price=material.unit_price,
            notes='Opening balance',
            material_name=material.name,
        )
    db.flush()
    return stock


def adjust_stock(
    db: Session,
    *,
    stock_id: int,
    qty_change: Decimal,
    actor_principal_id: int | None,
    notes: str | None,
) -> StockMovement:
    qty_change = Decimal(qty_change)
    if qty_change == ZERO:
        raise ValidationError('Adjustment quantity cannot be zero')

    stock = lock_stock_by_id(db, stock_id=stock_id)
    material = db.get(Material, stock.material_id)
    movement = apply_movement(
        db,
        stock=stock,
        movement_type=MovementType.ADJUSTMENT,
        source_type=MovementSource.ADJUSTMENT,
        qty_change=qty_change,
        source_id=None,
        actor_principal_id=actor_principal_id,
        unit_price=material.unit_price if material else None,
        notes=notes,
        material_name=material.name if material else None,
    )
    db.flush()
    return movement


def set_low_stock_threshold(db: Session, *, stock_id: int, low_stock_threshold: Decimal) -> Stock:
    if Decimal(low_stock_threshold) < ZERO:
        raise ValidationError('Low stock threshold cannot be negative')
    stock = lock_stock_by_id(db, stock_id=stock_id)
    stock.low_stock_threshold = Decimal(low_stock_threshold)
    stock.low_stock_alert = compute_low_stock_alert(stock.qty_on_hand, stock.low_stock_threshold)
    stock.updated_at = _now()
    db.flush()
    return stock


def acknowledge_low_stock_alert(db: Session, *, stock_id: int) -> Stock:
    stock = db.get(Stock, stock_id)
    if stock is None:
        raise NotFoundError('Stock record not found')
    stock.low_stock_alert = False
    stock.updated_at = _now()
    db.flush()
    return stock


def find_issue_movement(db: Session, *, request_id: int, request_item_id: int) -> StockMovement | None:
    """Return the OUT movement that issued ``request_item_id``."""
    return db.execute(
        select(StockMovement)
        .where(
            StockMovement.source_type == MovementSource.ISSUE,
            StockMovement.source_id == request_id,
            StockMovement.request_item_id == request_item_id,
        )
        .order_by(StockMovement.id.desc())
    ).scalars().first()
