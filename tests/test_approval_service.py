from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from db_fixtures import World, make_session_factory
from supply_portal.db import unit_of_work
from supply_portal.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from supply_portal.models import Approval, ApprovalAction, ApprovalLevel, RequestItem, RequestStatus
from supply_portal.services.approval_service import approve_request, modify_request, reject_request
from supply_portal.services.request_item_service import ItemChange, ItemChangeSet, NewItem
from supply_portal.services.request_service import create_request, get_request


class ApprovalServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.world = World(self.db)
        self.request = create_request(
            self.db,
            principal=self.world.engineer,
            site_id=self.world.site.id,
            notes=None,
            items=self.world.items(),
        )
        self.db.commit()
        self.cement_item, self.rebar_item = self._items()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _items(self) -> list[RequestItem]:
        return self.db.execute(
            select(RequestItem).where(RequestItem.request_id == self.request.id).order_by(RequestItem.id)
        ).scalars().all()

    def _approvals(self, action: ApprovalAction | None = None) -> list[Approval]:
        query = select(Approval).where(Approval.request_id == self.request.id)
        if action is not None:
            query = query.where(Approval.action == action)
        return self.db.execute(query.order_by(Approval.id)).scalars().all()

    def _set_status(self, status: RequestStatus) -> None:
        self.request.status = status
        self.db.flush()

    def test_dse_approval_with_modification_verifies(self) -> None:
        outcome = approve_request(
            self.db,
            principal=self.world.dse,
            request_id=self.request.id,
            level=ApprovalLevel.DSE,
            comment='Reduce cement',
            changes=ItemChangeSet(
                modifications=[ItemChange(request_item_id=self.cement_item.id, qty_approved=Decimal('6'))]
            ),
        )

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.approval.level, ApprovalLevel.DSE)
        self.assertEqual(self.request.status, RequestStatus.VERIFIED)
        self.assertEqual(self.cement_item.qty_approved, Decimal('6'))
        self.assertIsNone(self.rebar_item.qty_approved)

    def test_padiri_approval_defaults_unset_quantities(self) -> None:
        self._set_status(RequestStatus.VERIFIED)
        approve_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)

        self.assertEqual(self.request.status, RequestStatus.APPROVED)
        for item in self._items():
            self.assertEqual(item.qty_approved, item.qty_requested)

    def test_padiri_keeps_explicit_dse_quantity(self) -> None:
        approve_request(
            self.db,
            principal=self.world.dse,
            request_id=self.request.id,
            level=None,
            comment=None,
            changes=ItemChangeSet(
                modifications=[ItemChange(request_item_id=self.cement_item.id, qty_approved=Decimal('6'))]
            ),
        )
        approve_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)
        self.assertEqual(self.cement_item.qty_approved, Decimal('6'))
        self.assertEqual(self.rebar_item.qty_approved, Decimal('5'))

    def test_repeated_approval_creates_one_record(self) -> None:
        first = approve_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)
        second = approve_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(second.approval.id, first.approval.id)
        count = self.db.execute(
            select(func.count()).select_from(Approval).where(
                Approval.request_id == self.request.id,
                Approval.action == ApprovalAction.APPROVED,
            )
        ).scalar_one()
        self.assertEqual(count, 1)

    def test_dse_cannot_approve_at_padiri_level(self) -> None:
        with self.assertRaises(ForbiddenError):
            approve_request(
                self.db,
                principal=self.world.dse,
                request_id=self.request.id,
                level=ApprovalLevel.PADIRI,
                comment=None,
            )

    def test_storekeeper_cannot_approve(self) -> None:
        with self.assertRaises(ForbiddenError):
            approve_request(self.db, principal=self.world.storekeeper, request_id=self.request.id, level=None, comment=None)

    def test_dse_cannot_step_back_an_approved_request(self) -> None:
        self._set_status(RequestStatus.APPROVED)
        with self.assertRaises(ConflictError):
            approve_request(self.db, principal=self.world.dse, request_id=self.request.id, level=None, comment=None)

    def test_failed_item_change_leaves_request_untouched(self) -> None:
        with self.assertRaises(NotFoundError):
            with unit_of_work(self.db):
                approve_request(
                    self.db,
                    principal=self.world.padiri,
                    request_id=self.request.id,
                    level=None,
                    comment=None,
                    changes=ItemChangeSet(
                        modifications=[ItemChange(request_item_id=self.cement_item.id, qty_approved=Decimal('1'))],
                        removals=[self.rebar_item.id, 987654],
                    ),
                )

        request = get_request(self.db, self.request.id)
        self.assertEqual(request.status, RequestStatus.PENDING)
        items = self._items()
        self.assertEqual(len(items), 2)
        self.assertTrue(all(item.qty_approved is None for item in items))
        self.assertEqual(self._approvals(), [])

    def test_unknown_material_in_additions_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            approve_request(
                self.db,
                principal=self.world.admin,
                request_id=self.request.id,
                level=None,
                comment=None,
                changes=ItemChangeSet(
                    additions=[NewItem(material_id=555, unit_id=self.world.bag.id, qty_requested=Decimal('1'))]
                ),
            )

    def test_reject_records_and_forces_rejected(self) -> None:
        self._set_status(RequestStatus.APPROVED)
        approval = reject_request(
            self.db,
            principal=self.world.padiri,
            request_id=self.request.id,
            level=None,
            comment='Budget exhausted',
        )
        self.assertEqual(approval.action, ApprovalAction.REJECTED)
        self.assertEqual(approval.comment, 'Budget exhausted')
        self.assertEqual(self.request.status, RequestStatus.REJECTED)

    def test_reject_twice_keeps_both_records(self) -> None:
        reject_request(self.db, principal=self.world.dse, request_id=self.request.id, level=None, comment=None)
        reject_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)
        self.assertEqual(len(self._approvals(ApprovalAction.REJECTED)), 2)
        self.assertEqual(self.request.status, RequestStatus.REJECTED)

    def test_reject_closed_request_is_refused(self) -> None:
        self._set_status(RequestStatus.CLOSED)
        with self.assertRaises(ConflictError):
            reject_request(self.db, principal=self.world.padiri, request_id=self.request.id, level=None, comment=None)

    def test_reject_after_issue_logs_warning(self) -> None:
        self.cement_item.qty_approved = Decimal('10')
        self.cement_item.qty_issued = Decimal('10')
        self._set_status(RequestStatus.PARTIALLY_ISSUED)
        with self.assertLogs('supply_portal.services.approval_service', level='WARNING'):
            reject_request(self.db, principal=self.world.admin, request_id=self.request.id, level=None, comment=None)
        self.assertEqual(self.request.status, RequestStatus.REJECTED)

    def test_dse_modify_returns_to_dse_review(self) -> None:
        self._set_status(RequestStatus.VERIFIED)
        outcome = modify_request(
            self.db,
            principal=self.world.dse,
            request_id=self.request.id,
            changes=ItemChangeSet(
                modifications=[ItemChange(request_item_id=self.rebar_item.id, qty_requested=Decimal('7'))],
                additions=[NewItem(material_id=self.world.cement.id, unit_id=self.world.bag.id, qty_requested=Decimal('2'))],
            ),
        )
        self.assertEqual(outcome.previous_status, RequestStatus.VERIFIED)
        self.assertEqual(self.request.status, RequestStatus.DSE_REVIEW)
        self.assertEqual(outcome.items.items_modified, 1)
        self.assertEqual(outcome.items.items_added, 1)
        self.assertEqual(len(self._items()), 3)
        self.assertEqual(outcome.approval.action, ApprovalAction.MODIFIED)

    def test_dse_cannot_modify_approved_request(self) -> None:
        self._set_status(RequestStatus.APPROVED)
        with self.assertRaises(ForbiddenError):
            modify_request(
                self.db,
                principal=self.world.dse,
                request_id=self.request.id,
                changes=ItemChangeSet(removals=[self.rebar_item.id]),
            )

    def test_padiri_modify_of_approved_request_needs_reapproval(self) -> None:
        self._set_status(RequestStatus.APPROVED)
        outcome = modify_request(
            self.db,
            principal=self.world.padiri,
            request_id=self.request.id,
            changes=ItemChangeSet(removals=[self.rebar_item.id]),
        )
        self.assertEqual(self.request.status, RequestStatus.WAITING_PADIRI_REVIEW)
        self.assertEqual(outcome.items.items_removed, 1)
        self.assertEqual(len(self._items()), 1)

    def test_modify_cannot_remove_every_item(self) -> None:
        with self.assertRaises(ValidationError):
            modify_request(
                self.db,
                principal=self.world.admin,
                request_id=self.request.id,
                changes=ItemChangeSet(removals=[self.cement_item.id, self.rebar_item.id]),
            )

    def test_modify_cannot_touch_issued_item(self) -> None:
        self.cement_item.qty_approved = Decimal('10')
        self.cement_item.qty_issued = Decimal('10')
        self._set_status(RequestStatus.PARTIALLY_ISSUED)
        with self.assertRaises(ConflictError):
            modify_request(
                self.db,
                principal=self.world.admin,
                request_id=self.request.id,
                changes=ItemChangeSet(
                    modifications=[ItemChange(request_item_id=self.cement_item.id, qty_approved=Decimal('4'))]
                ),
            )

    def test_modify_without_changes_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            modify_request(self.db, principal=self.world.admin, request_id=self.request.id, changes=ItemChangeSet())

    def test_zero_approved_quantity_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            approve_request(
                self.db,
                principal=self.world.padiri,
                request_id=self.request.id,
                level=None,
                comment=None,
                changes=ItemChangeSet(
                    modifications=[ItemChange(request_item_id=self.rebar_item.id, qty_approved=Decimal('0'))]
                ),
            )
        self.assertIsNone(self.rebar_item.qty_approved)
        self.assertEqual(self.request.status, RequestStatus.PENDING)

    def test_zero_approved_quantity_on_added_item_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            modify_request(
                self.db,
                principal=self.world.dse,
                request_id=self.request.id,
                changes=ItemChangeSet(
                    additions=[
                        NewItem(
                            material_id=self.world.cement.id,
                            unit_id=self.world.bag.id,
                            qty_requested=Decimal('2'),
                            qty_approved=Decimal('0'),
                        )
                    ]
                ),
            )
        self.assertEqual(len(self._items()), 2)

    def test_padiri_modify_of_partially_issued_request_follows_issuance(self) -> None:
        self.cement_item.qty_approved = Decimal('10')
        self.cement_item.qty_issued = Decimal('10')
        self._set_status(RequestStatus.PARTIALLY_ISSUED)
        modify_request(
            self.db,
            principal=self.world.padiri,
            request_id=self.request.id,
            changes=ItemChangeSet(removals=[self.rebar_item.id]),
        )
        self.assertEqual(self.request.status, RequestStatus.ISSUED)
        self.assertEqual(len(self._approvals(ApprovalAction.MODIFIED)), 1)

    def test_modify_of_issued_request_notes_only_keeps_status(self) -> None:
        for item in self._items():
            item.qty_issued = item.qty_requested
        self._set_status(RequestStatus.ISSUED)
        modify_request(
            self.db,
            principal=self.world.admin,
            request_id=self.request.id,
            changes=ItemChangeSet(),
            notes='Delivered by lorry',
        )
        self.assertEqual(self.request.status, RequestStatus.ISSUED)
        self.assertEqual(self.request.notes, 'Delivered by lorry')


if __name__ == '__main__':
    unittest.main()
