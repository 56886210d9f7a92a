from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.errors import ConflictError, NotFoundError, ValidationError
from supply_portal.models import Material, Request, RequestItem, Unit

ZERO = Decimal('0')


@dataclass(frozen=True)
class NewItem:
    material_id: int
    unit_id: int
    qty_requested: Decimal
    qty_approved: Decimal | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ItemChange:
    request_item_id: int
    qty_requested: Decimal | None = None
    qty_approved: Decimal | None = None
    material_id: int | None = None
    unit_id: int | None = None
    notes: str | None = None


@dataclass
class ItemChangeSet:
    modifications: list[ItemChange] = field(default_factory=list)
    additions: list[NewItem] = field(default_factory=list)
    removals: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.modifications or self.additions or self.removals)


@dataclass(frozen=True)
class ItemChangeSummary:
    items_modified: int
    items_added: int
    items_removed: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def list_items(db: Session, *, request_id: int) -> list[RequestItem]:
    return db.execute(
        select(RequestItem).where(RequestItem.request_id == request_id).order_by(RequestItem.id.asc())
    ).scalars().all()


def material_names(db: Session, material_ids: set[int]) -> dict[int, str]:
    if not material_ids:
        return {}
    rows = db.execute(select(Material.id, Material.name).where(Material.id.in_(material_ids))).all()
    return {row.id: row.name for row in rows}


def ensure_materials_and_units(db: Session, *, material_ids: set[int], unit_ids: set[int]) -> None:
    if material_ids:
        found = set(
            db.execute(
                select(Material.id).where(Material.id.in_(material_ids), Material.active.is_(True))
            ).scalars().all()
        )
        missing = sorted(material_ids - found)
        if missing:
            raise ValidationError(f'Material not found: {", ".join(str(m) for m in missing)}')
    if unit_ids:
        found = set(db.execute(select(Unit.id).where(Unit.id.in_(unit_ids))).scalars().all())
        missing = sorted(unit_ids - found)
        if missing:
            raise ValidationError(f'Unit not found: {", ".join(str(u) for u in missing)}')


def _check_quantity(value: Decimal | None, *, field_name: str) -> None:
    if value is not None and value <= ZERO:
        raise ValidationError(f'{field_name} must be greater than zero')


def validate_new_items(db: Session, items: list[NewItem]) -> None:
    if not items:
        raise ValidationError('At least one item is required')
    for item in items:
        _check_quantity(item.qty_requested, field_name='qty_requested')
        _check_quantity(item.qty_approved, field_name='qty_approved')
    ensure_materials_and_units(
        db,
        material_ids={item.material_id for item in items},
        unit_ids={item.unit_id for item in items},
    )


def add_items(db: Session, *, request_id: int, items: list[NewItem]) -> list[RequestItem]:
    rows = [
        RequestItem(
            request_id=request_id,
            material_id=item.material_id,
            unit_id=item.unit_id,
            qty_requested=Decimal(item.qty_requested),
            qty_approved=Decimal(item.qty_approved) if item.qty_approved is not None else None,
            qty_issued=ZERO,
            qty_received=ZERO,
            notes=item.notes,
        )
        for item in items
    ]
    db.add_all(rows)
    db.flush()
    return rows


def replace_items(db: Session, *, request_id: int, items: list[NewItem]) -> list[RequestItem]:
    validate_new_items(db, items)
    for existing in list_items(db, request_id=request_id):
        db.delete(existing)
    db.flush()
    return add_items(db, request_id=request_id, items=items)


def apply_item_changes(db: Session, *, request: Request, changes: ItemChangeSet) -> ItemChangeSummary:
    """Apply removals, additions and edits to the items of ``request``.

    Every reference is checked before the first write. Items that already
    carry issued stock are frozen.
    """
    items_by_id = {item.id: item for item in list_items(db, request_id=request.id)}

    removal_ids = set(changes.removals)
    unknown = sorted(removal_ids - items_by_id.keys())
    if unknown:
        raise NotFoundError(f'Request item not found: {unknown[0]}')

    seen: set[int] = set()
    for change in changes.modifications:
        item = items_by_id.get(change.request_item_id)
        if item is None:
            raise NotFoundError(f'Request item not found: {change.request_item_id}')
        if change.request_item_id in seen:
            raise ValidationError(f'Request item {change.request_item_id} is listed more than once')
        if change.request_item_id in removal_ids:
            raise ValidationError(f'Request item {change.request_item_id} cannot be both modified and removed')
        seen.add(change.request_item_id)
        _check_quantity(change.qty_requested, field_name='qty_requested')
        _check_quantity(change.qty_approved, field_name='qty_approved')

    for item_id in removal_ids | seen:
        if Decimal(items_by_id[item_id].qty_issued) > ZERO:
            raise ConflictError(f'Request item {item_id} has already been issued and cannot be changed')

    for item in changes.additions:
        _check_quantity(item.qty_requested, field_name='qty_requested')
        _check_quantity(item.qty_approved, field_name='qty_approved')

    ensure_materials_and_units(
        db,
        material_ids={c.material_id for c in changes.modifications if c.material_id is not None}
        | {a.material_id for a in changes.additions},
        unit_ids={c.unit_id for c in changes.modifications if c.unit_id is not None}
        | {a.unit_id for a in changes.additions},
    )

    if len(items_by_id) - len(removal_ids) + len(changes.additions) <= 0:
        raise ValidationError('A request must keep at least one item')

    for item_id in removal_ids:
        db.delete(items_by_id[item_id])

    for change in changes.modifications:
        item = items_by_id[change.request_item_id]
        if change.qty_requested is not None:
            item.qty_requested = Decimal(change.qty_requested)
        if change.qty_approved is not None:
            item.qty_approved = Decimal(change.qty_approved)
        if change.material_id is not None:
            item.material_id = change.material_id
        if change.unit_id is not None:
            item.unit_id = change.unit_id
        if change.notes is not None:
            item.notes = change.notes
        item.updated_at = _now()

    if changes.additions:
        add_items(db, request_id=request.id, items=changes.additions)

    db.flush()
    return ItemChangeSummary(
        items_modified=len(changes.modifications),
        items_added=len(changes.additions),
        items_removed=len(removal_ids),
    )


def default_unset_approvals(db: Session, *, request_id: int) -> int:
    updated = 0
    for item in list_items(db, request_id=request_id):
        if item.qty_approved is None:
            item.qty_approved = item.qty_requested
            item.updated_at = _now()
            updated += 1
    db.flush()
    return updated


def effective_approved_qty(item: RequestItem) -> Decimal:
    return Decimal(item.qty_approved if item.qty_approved is not None else item.qty_requested)
