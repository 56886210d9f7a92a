from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from supply_portal.models import ApprovalLevel
from supply_portal.services.issuance_service import IssueLine
from supply_portal.services.receipt_service import ReceiptLine
from supply_portal.services.request_item_service import ItemChange, ItemChangeSet, NewItem


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RequestItemIn(BaseModel):
    """A line on a new or replaced request."""
    material_id: int
    unit_id: int
    qty_requested: Decimal = Field(..., gt=0)
    qty_approved: Decimal | None = Field(default=None, gt=0)
    notes: str | None = None

    def to_new_item(self) -> NewItem:
        return NewItem(
            material_id=self.material_id,
            unit_id=self.unit_id,
            qty_requested=self.qty_requested,
            qty_approved=self.qty_approved,
            notes=self.notes,
        )


class RequestCreate(BaseModel):
    site_id: int
    notes: str | None = None
    items: list[RequestItemIn]


class RequestUpdate(BaseModel):
    """Partial update; ``items`` replaces the whole item set when given."""
    site_id: int | None = None
    notes: str | None = None
    items: list[RequestItemIn] | None = None


class ItemModificationIn(BaseModel):
    request_item_id: int
    qty_requested: Decimal | None = Field(default=None, gt=0)
    qty_approved: Decimal | None = Field(default=None, gt=0)
    material_id: int | None = None
    unit_id: int | None = None
    notes: str | None = None

    def to_change(self) -> ItemChange:
        return ItemChange(
            request_item_id=self.request_item_id,
            qty_requested=self.qty_requested,
            qty_approved=self.qty_approved,
            material_id=self.material_id,
            unit_id=self.unit_id,
            notes=self.notes,
        )


class ItemChangesIn(BaseModel):
    item_modifications: list[ItemModificationIn] = Field(default_factory=list)
    items_to_add: list[RequestItemIn] = Field(default_factory=list)
    items_to_remove: list[int] = Field(default_factory=list)

    def to_change_set(self) -> ItemChangeSet:
        return ItemChangeSet(
            modifications=[m.to_change() for m in self.item_modifications],
            additions=[a.to_new_item() for a in self.items_to_add],
            removals=list(self.items_to_remove),
        )


class ApproveRequest(ItemChangesIn):
    level: ApprovalLevel | None = None
    comment: str | None = None


class RejectRequest(BaseModel):
    level: ApprovalLevel | None = None
    comment: str | None = None


class ModifyRequest(ItemChangesIn):
    notes: str | None = None
    comment: str | None = None


class IssueItemIn(BaseModel):
    request_item_id: int
    qty_issued: Decimal = Field(..., gt=0)
    store_id: int
    notes: str | None = None


class IssueMaterialsRequest(BaseModel):
    request_id: int
    items: list[IssueItemIn] = Field(..., min_length=1)

    def to_lines(self) -> list[IssueLine]:
        return [
            IssueLine(
                request_item_id=item.request_item_id,
                qty_issued=item.qty_issued,
                store_id=item.store_id,
                notes=item.notes,
            )
            for item in self.items
        ]


class ReceiveItemIn(BaseModel):
    request_item_id: int
    qty_received: Decimal = Field(..., gt=0)
    notes: str | None = None


class ReceiveMaterialsRequest(BaseModel):
    items: list[ReceiveItemIn] = Field(..., min_length=1)

    def to_lines(self) -> list[ReceiptLine]:
        return [
            ReceiptLine(request_item_id=item.request_item_id, qty_received=item.qty_received, notes=item.notes)
            for item in self.items
        ]


class StockCreate(BaseModel):
    store_id: int
    material_id: int
    qty_on_hand: Decimal = Field(default=Decimal('0'), ge=0)
    reorder_level: Decimal | None = Field(default=None, ge=0)
    low_stock_threshold: Decimal | None = Field(default=None, ge=0)


class StockAdjust(BaseModel):
    qty_change: Decimal
    notes: str | None = None


class StockThreshold(BaseModel):
    low_stock_threshold: Decimal = Field(..., ge=0)
