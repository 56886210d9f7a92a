from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select

from db_fixtures import World, make_session_factory
from supply_portal.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_portal.models import MovementSource, MovementType, StockMovement
from supply_portal.services.stock_ledger_service import (
    acknowledge_low_stock_alert,
    adjust_stock,
    apply_movement,
    compute_low_stock_alert,
    create_stock,
    record_acknowledgement,
    set_low_stock_threshold,
)
from supply_portal.services.stock_query_service import list_movements, list_recommendations, list_stock


class StockLedgerServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.world = World(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _movements(self) -> list[StockMovement]:
        return self.db.execute(select(StockMovement).order_by(StockMovement.id.asc())).scalars().all()

    def test_low_stock_alert_needs_a_threshold(self) -> None:
        self.assertFalse(compute_low_stock_alert(Decimal('0'), None))
        self.assertTrue(compute_low_stock_alert(Decimal('5'), Decimal('5')))
        self.assertFalse(compute_low_stock_alert(Decimal('6'), Decimal('5')))

    def test_apply_movement_balances_before_and_after(self) -> None:
        stock = self.world.add_stock(self.world.cement, 20, threshold=5)
        movement = apply_movement(
            self.db,
            stock=stock,
            movement_type=MovementType.OUT,
            source_type=MovementSource.ISSUE,
            qty_change=Decimal('-16'),
            source_id=99,
            actor_principal_id=self.world.storekeeper.id,
        )
        self.db.flush()

        self.assertEqual(stock.qty_on_hand, Decimal('4'))
        self.assertTrue(stock.low_stock_alert)
        self.assertEqual(movement.qty_before, Decimal('20'))
        self.assertEqual(movement.qty_after, movement.qty_before + movement.qty_change)

    def test_apply_movement_refuses_negative_stock(self) -> None:
        stock = self.world.add_stock(self.world.cement, 3)
        with self.assertRaises(InsufficientStockError) as ctx:
            apply_movement(
                self.db,
                stock=stock,
                movement_type=MovementType.OUT,
                source_type=MovementSource.ISSUE,
                qty_change=Decimal('-10'),
                source_id=1,
                actor_principal_id=None,
                material_name='Cement',
            )
        self.assertIn('Cement', ctx.exception.message)
        self.assertEqual(stock.qty_on_hand, Decimal('3'))
        self.assertEqual(self._movements(), [])

    def test_acknowledgement_leaves_quantity_alone(self) -> None:
        stock = self.world.add_stock(self.world.rebar, 12)
        movement = record_acknowledgement(
            self.db,
            stock=stock,
            source_type=MovementSource.RECEIPT,
            source_id=7,
            actor_principal_id=self.world.engineer.id,
        )
        self.db.flush()
        self.assertEqual(stock.qty_on_hand, Decimal('12'))
        self.assertEqual(movement.qty_change, Decimal('0'))
        self.assertEqual(movement.qty_before, movement.qty_after)

    def test_create_stock_writes_opening_balance(self) -> None:
        stock = create_stock(
            self.db,
            store_id=self.world.store.id,
            material_id=self.world.cement.id,
            qty_on_hand=Decimal('40'),
            reorder_level=Decimal('10'),
            low_stock_threshold=Decimal('5'),
            actor_principal_id=self.world.storekeeper.id,
        )
        self.assertEqual(stock.qty_on_hand, Decimal('40'))
        movements = self._movements()
        self.assertEqual(len(movements), 1)
        self.assertEqual(movements[0].source_type, MovementSource.ADJUSTMENT)
        self.assertEqual(movements[0].qty_change, Decimal('40'))

    def test_create_stock_is_unique_per_store_and_material(self) -> None:
        self.world.add_stock(self.world.cement, 1)
        with self.assertRaises(ConflictError):
            create_stock(
                self.db,
                store_id=self.world.store.id,
                material_id=self.world.cement.id,
                qty_on_hand=Decimal('5'),
                reorder_level=None,
                low_stock_threshold=None,
                actor_principal_id=None,
            )

    def test_create_stock_rejects_unknown_material(self) -> None:
        with self.assertRaises(ValidationError):
            create_stock(
                self.db,
                store_id=self.world.store.id,
                material_id=9999,
                qty_on_hand=Decimal('5'),
                reorder_level=None,
                low_stock_threshold=None,
                actor_principal_id=None,
            )

    def test_adjust_stock_both_directions(self) -> None:
        stock = self.world.add_stock(self.world.cement, 10)
        adjust_stock(self.db, stock_id=stock.id, qty_change=Decimal('5'), actor_principal_id=None, notes='count')
        adjust_stock(self.db, stock_id=stock.id, qty_change=Decimal('-3'), actor_principal_id=None, notes='damaged')
        self.assertEqual(stock.qty_on_hand, Decimal('12'))
        self.assertEqual([m.movement_type for m in self._movements()], [MovementType.ADJUSTMENT] * 2)

    def test_adjust_stock_rejects_zero_and_unknown(self) -> None:
        stock = self.world.add_stock(self.world.cement, 10)
        with self.assertRaises(ValidationError):
            adjust_stock(self.db, stock_id=stock.id, qty_change=Decimal('0'), actor_principal_id=None, notes=None)
        with self.assertRaises(NotFoundError):
            adjust_stock(self.db, stock_id=404, qty_change=Decimal('1'), actor_principal_id=None, notes=None)

    def test_threshold_and_acknowledge(self) -> None:
        stock = self.world.add_stock(self.world.cement, 4)
        set_low_stock_threshold(self.db, stock_id=stock.id, low_stock_threshold=Decimal('5'))
        self.assertTrue(stock.low_stock_alert)
        acknowledge_low_stock_alert(self.db, stock_id=stock.id)
        self.assertFalse(stock.low_stock_alert)

    def test_listing_filters_and_recommendations(self) -> None:
        low = self.world.add_stock(self.world.cement, 2, threshold=5, reorder_level=20)
        low.low_stock_alert = True
        self.world.add_stock(self.world.rebar, 500, reorder_level=10)
        self.db.flush()

        rows, total = list_stock(self.db, low_stock_only=True)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0]['material_name'], 'Cement')

        rows, total = list_recommendations(self.db)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0]['recommendation']['priority'], 'HIGH')

        adjust_stock(self.db, stock_id=low.id, qty_change=Decimal('1'), actor_principal_id=None, notes=None)
        rows, total = list_movements(self.db, material_id=self.world.cement.id)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0]['movement_type'], 'ADJUSTMENT')


if __name__ == '__main__':
    unittest.main()
