from __future__ import annotations

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from supply_portal.models import Material, MovementSource, MovementType, Stock, StockMovement, Store, Unit
from supply_portal.services.procurement_recommendation_service import StockLevelInput, recommend


def _count(db: Session, query: Select) -> int:
    return db.execute(select(func.count()).select_from(query.order_by(None).subquery())).scalar_one()


def _stock_query() -> Select:
    return (
        select(Stock, Store.name, Material.name, Unit.name)
        .join(Store, Store.id == Stock.store_id)
        .join(Material, Material.id == Stock.material_id)
        .outerjoin(Unit, Unit.id == Material.unit_id)
    )


def _stock_row(stock: Stock, store_name: str, material_name: str, unit_name: str | None) -> dict:
    return {
        'id': stock.id,
        'store_id': stock.store_id,
        'store_name': store_name,
        'material_id': stock.material_id,
        'material_name': material_name,
        'unit_name': unit_name,
        'qty_on_hand': stock.qty_on_hand,
        'reorder_level': stock.reorder_level,
        'low_stock_threshold': stock.low_stock_threshold,
        'low_stock_alert': stock.low_stock_alert,
        'updated_at': stock.updated_at,
    }


def serialize_stock(db: Session, stock: Stock) -> dict:
    row = db.execute(_stock_query().where(Stock.id == stock.id)).one()
    return _stock_row(*row)


def list_stock(
    db: Session,
    *,
    store_id: int | None = None,
    material_id: int | None = None,
    low_stock_only: bool = False,
    offset: int = 0,
    limit: int = 10,
) -> tuple[list[dict], int]:
    query = _stock_query()
    if store_id is not None:
        query = query.where(Stock.store_id == store_id)
    if material_id is not None:
        query = query.where(Stock.material_id == material_id)
    if low_stock_only:
        query = query.where(Stock.low_stock_alert.is_(True))

    total = _count(db, query)
    rows = db.execute(query.order_by(Stock.updated_at.desc(), Stock.id.desc()).offset(offset).limit(limit)).all()
    return [_stock_row(*row) for row in rows], total


def list_movements(
    db: Session,
    *,
    store_id: int | None = None,
    material_id: int | None = None,
    movement_type: MovementType | None = None,
    source_type: MovementSource | None = None,
    request_id: int | None = None,
    offset: int = 0,
    limit: int = 10,
) -> tuple[list[dict], int]:
    query = (
        select(StockMovement, Store.name, Material.name)
        .join(Store, Store.id == StockMovement.store_id)
        .join(Material, Material.id == StockMovement.material_id)
    )
    if store_id is not None:
        query = query.where(StockMovement.store_id == store_id)
    if material_id is not None:
        query = query.where(StockMovement.material_id == material_id)
    if movement_type is not None:
        query = query.where(StockMovement.movement_type == movement_type)
    if source_type is not None:
        query = query.where(StockMovement.source_type == source_type)
    if request_id is not None:
        query = query.where(StockMovement.source_id == request_id)

    total = _count(db, query)
    rows = db.execute(query.order_by(StockMovement.id.desc()).offset(offset).limit(limit)).all()
    return [
        {
            'id': movement.id,
            'stock_id': movement.stock_id,
            'store_id': movement.store_id,
            'store_name': store_name,
            'material_id': movement.material_id,
            'material_name': material_name,
            'movement_type': movement.movement_type.value,
            'source_type': movement.source_type.value,
            'source_id': movement.source_id,
            'request_item_id': movement.request_item_id,
            'qty_before': movement.qty_before,
            'qty_change': movement.qty_change,
            'qty_after': movement.qty_after,
            'unit_price': movement.unit_price,
            'notes': movement.notes,
            'created_by': movement.created_by_principal_id,
            'created_at': movement.created_at,
        }
        for movement, store_name, material_name in rows
    ], total


def list_recommendations(
    db: Session,
    *,
    store_id: int | None = None,
    offset: int = 0,
    limit: int = 10,
) -> tuple[list[dict], int]:
    query = _stock_query().where(
        or_(
            Stock.low_stock_alert.is_(True),
            Stock.qty_on_hand <= Stock.reorder_level,
            Stock.qty_on_hand == 0,
        )
    )
    if store_id is not None:
        query = query.where(Stock.store_id == store_id)

    total = _count(db, query)
    rows = db.execute(
        query.order_by(Stock.low_stock_alert.desc(), Stock.qty_on_hand.asc()).offset(offset).limit(limit)
    ).all()

    out = []
    for row in rows:
        stock = row[0]
        result = recommend(
            StockLevelInput(
                qty_on_hand=stock.qty_on_hand,
                reorder_level=stock.reorder_level,
                low_stock_threshold=stock.low_stock_threshold,
                low_stock_alert=stock.low_stock_alert,
            )
        )
        out.append(
            {
                **_stock_row(*row),
                'recommendation': {
                    'priority': result.priority.value,
                    'suggested_qty': result.suggested_qty,
                    'reason': result.reason,
                },
            }
        )
    return out, total
