from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from db_fixtures import World, make_session_factory
from supply_portal.db import unit_of_work
from supply_portal.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_portal.models import MovementSource, MovementType, RequestItem, RequestStatus, StockMovement
from supply_portal.services.approval_service import approve_request
from supply_portal.services.issuance_service import IssueLine, issue_materials
from supply_portal.services.request_service import create_request, get_request


class IssuanceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.world = World(self.db)
        self.cement_stock = self.world.add_stock(self.world.cement, 50, threshold=45)
        self.rebar_stock = self.world.add_stock(self.world.rebar, 20)
        self.request = create_request(
            self.db,
            principal=self.world.engineer,
            site_id=self.world.site.id,
            notes=None,
            items=self.world.items(cement_qty='10', rebar_qty='5'),
        )
        approve_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)
        self.db.commit()
        self.cement_item, self.rebar_item = self._items()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _items(self) -> list[RequestItem]:
        return self.db.execute(
            select(RequestItem).where(RequestItem.request_id == self.request.id).order_by(RequestItem.id)
        ).scalars().all()

    def _line(self, item: RequestItem, qty) -> IssueLine:
        return IssueLine(request_item_id=item.id, qty_issued=Decimal(str(qty)), store_id=self.world.store.id)

    def _movement_count(self) -> int:
        return self.db.execute(select(func.count()).select_from(StockMovement)).scalar_one()

    def _issue(self, lines):
        with unit_of_work(self.db):
            return issue_materials(
                self.db,
                principal=self.world.storekeeper,
                request_id=self.request.id,
                lines=lines,
            )

    def test_full_issue_decrements_stock_and_marks_issued(self) -> None:
        outcome = self._issue([self._line(self.cement_item, 10), self._line(self.rebar_item, 5)])

        self.assertEqual(outcome.status, RequestStatus.ISSUED)
        self.assertEqual(len(outcome.movement_ids), 2)
        self.assertEqual(self.world.stock_for(self.world.cement).qty_on_hand, Decimal('40'))
        self.assertEqual(self.world.stock_for(self.world.rebar).qty_on_hand, Decimal('15'))

        request = get_request(self.db, self.request.id)
        self.assertIsNotNone(request.issued_at)
        self.assertEqual(request.issued_by_principal_id, self.world.storekeeper.id)

        movements = self.db.execute(select(StockMovement).order_by(StockMovement.id)).scalars().all()
        for movement in movements:
            self.assertEqual(movement.movement_type, MovementType.OUT)
            self.assertEqual(movement.source_type, MovementSource.ISSUE)
            self.assertEqual(movement.source_id, self.request.id)
            self.assertEqual(movement.qty_after, movement.qty_before + movement.qty_change)
        self.assertEqual(movements[0].unit_price, Decimal('12.50'))

    def test_issue_recomputes_low_stock_alert(self) -> None:
        self._issue([self._line(self.cement_item, 10)])
        self.assertTrue(self.world.stock_for(self.world.cement).low_stock_alert)

    def test_partial_issue_then_remaining_item(self) -> None:
        first = self._issue([self._line(self.cement_item, 10)])
        self.assertEqual(first.status, RequestStatus.PARTIALLY_ISSUED)

        second = self._issue([self._line(self.rebar_item, 5)])
        self.assertEqual(second.status, RequestStatus.ISSUED)

    def test_insufficient_stock_fails_whole_batch(self) -> None:
        self.cement_stock.qty_on_hand = Decimal('3')
        self.db.commit()

        with self.assertRaises(InsufficientStockError) as ctx:
            self._issue([self._line(self.rebar_item, 5), self._line(self.cement_item, 10)])

        self.assertIn('Cement', ctx.exception.message)
        self.assertIn('Available: 3', ctx.exception.message)
        self.assertEqual(self._movement_count(), 0)
        self.assertEqual(self.world.stock_for(self.world.cement).qty_on_hand, Decimal('3'))
        self.assertEqual(self.world.stock_for(self.world.rebar).qty_on_hand, Decimal('20'))
        for item in self._items():
            self.assertEqual(item.qty_issued, Decimal('0'))
        self.assertEqual(get_request(self.db, self.request.id).status, RequestStatus.APPROVED)

    def test_item_is_issued_at_most_once(self) -> None:
        self._issue([self._line(self.cement_item, 4)])
        with self.assertRaises(ConflictError):
            self._issue([self._line(self.cement_item, 4)])

    def test_cannot_exceed_approved_quantity(self) -> None:
        self.cement_item.qty_approved = Decimal('6')
        self.db.commit()
        with self.assertRaises(ValidationError):
            self._issue([self._line(self.cement_item, 8)])

    def test_cannot_exceed_requested_quantity(self) -> None:
        with self.assertRaises(ValidationError):
            self._issue([self._line(self.rebar_item, 6)])

    def test_rejects_duplicate_and_foreign_items(self) -> None:
        with self.assertRaises(ValidationError):
            self._issue([self._line(self.cement_item, 1), self._line(self.cement_item, 1)])
        with self.assertRaises(NotFoundError):
            self._issue([IssueLine(request_item_id=424242, qty_issued=Decimal('1'), store_id=self.world.store.id)])

    def test_missing_stock_record(self) -> None:
        with self.assertRaises(NotFoundError):
            self._issue([IssueLine(request_item_id=self.cement_item.id, qty_issued=Decimal('1'), store_id=777)])

    def test_request_must_be_approved(self) -> None:
        other = create_request(
            self.db,
            principal=self.world.engineer,
            site_id=self.world.site.id,
            notes=None,
            items=self.world.items(),
        )
        self.db.commit()
        item = self.db.execute(select(RequestItem).where(RequestItem.request_id == other.id)).scalars().first()
        with self.assertRaises(ConflictError):
            with unit_of_work(self.db):
                issue_materials(
                    self.db,
                    principal=self.world.storekeeper,
                    request_id=other.id,
                    lines=[IssueLine(request_item_id=item.id, qty_issued=Decimal('1'), store_id=self.world.store.id)],
                )


if __name__ == '__main__':
    unittest.main()
