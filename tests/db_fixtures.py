from __future__ import annotations

import os
from decimal import Decimal

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from supply_portal.auth import Principal, Role  # noqa: E402
from supply_portal.models import (  # noqa: E402
    Base,
    Material,
    PrincipalRole,
    Site,
    SiteAssignment,
    SiteAssignmentStatus,
    Stock,
    Store,
    Unit,
)
from supply_portal.models import Principal as PrincipalModel  # noqa: E402
from supply_portal.services.request_item_service import NewItem  # noqa: E402


def make_session_factory():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def as_principal(model: PrincipalModel) -> Principal:
    return Principal(
        id=model.id,
        username=model.username,
        full_name=model.full_name,
        role=Role(model.role.value),
        active=model.active,
    )


class World:
    """Demo site, store, materials and one user per role."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.admin = self.add_principal('admin', PrincipalRole.ADMIN)
        self.engineer = self.add_principal('engineer', PrincipalRole.SITE_ENGINEER)
        self.other_engineer = self.add_principal('engineer2', PrincipalRole.SITE_ENGINEER)
        self.dse = self.add_principal('dse', PrincipalRole.DIOCESAN_SITE_ENGINEER)
        self.padiri = self.add_principal('padiri', PrincipalRole.PADIRI)
        self.storekeeper = self.add_principal('store', PrincipalRole.STOREKEEPER)

        self.site = Site(name='St. Mary Chapel', location='Huye')
        self.store = Store(name='Central Store', location='Huye', active=True)
        self.bag = Unit(name='Bag', symbol='bag')
        self.piece = Unit(name='Piece', symbol='pc')
        db.add_all([self.site, self.store, self.bag, self.piece])
        db.flush()

        db.add(
            SiteAssignment(
                site_id=self.site.id,
                principal_id=self.engineer.id,
                assigned_by_principal_id=self.admin.id,
                status=SiteAssignmentStatus.ACTIVE,
            )
        )
        self.cement = Material(name='Cement', code='CEM', unit_id=self.bag.id, unit_price=Decimal('12.50'), active=True)
        self.rebar = Material(name='Rebar', code='RBR', unit_id=self.piece.id, unit_price=Decimal('8.00'), active=True)
        db.add_all([self.cement, self.rebar])
        db.flush()

    def add_principal(self, username: str, role: PrincipalRole) -> Principal:
        model = PrincipalModel(
            username=username,
            full_name=username.title(),
            password_hash='not-a-real-hash',
            role=role,
            active=True,
        )
        self.db.add(model)
        self.db.flush()
        return as_principal(model)

    def add_stock(self, material: Material, qty, *, threshold=None, reorder_level='0', store=None) -> Stock:
        stock = Stock(
            store_id=(store or self.store).id,
            material_id=material.id,
            qty_on_hand=Decimal(str(qty)),
            reorder_level=Decimal(str(reorder_level)),
            low_stock_threshold=Decimal(str(threshold)) if threshold is not None else None,
            low_stock_alert=False,
        )
        self.db.add(stock)
        self.db.flush()
        return stock

    def items(self, cement_qty='10', rebar_qty='5') -> list[NewItem]:
        return [
            NewItem(material_id=self.cement.id, unit_id=self.bag.id, qty_requested=Decimal(cement_qty)),
            NewItem(material_id=self.rebar.id, unit_id=self.piece.id, qty_requested=Decimal(rebar_qty)),
        ]

    def add_store(self, name: str) -> Store:
        store = Store(name=name, location='Huye', active=True)
        self.db.add(store)
        self.db.flush()
        return store

    def stock_for(self, material: Material, store=None) -> Stock:
        return self.db.execute(
            select(Stock).where(Stock.store_id == (store or self.store).id, Stock.material_id == material.id)
        ).scalar_one()
