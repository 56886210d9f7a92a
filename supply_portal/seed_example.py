from decimal import Decimal

from sqlalchemy import select

from supply_portal.db import SessionLocal
from supply_portal.models import (
    Material,
    Principal,
    PrincipalRole,
    Site,
    SiteAssignment,
    SiteAssignmentStatus,
    Stock,
    Store,
    Unit,
)
from supply_portal.security.passwords import hash_password
from supply_portal.services.stock_ledger_service import create_stock

DEMO_USERS = [
    ('admin', 'System Administrator', PrincipalRole.ADMIN, 'adminpass'),
    ('engineer1', 'Site Engineer One', PrincipalRole.SITE_ENGINEER, 'engineerpass'),
    ('dse1', 'Diocesan Site Engineer', PrincipalRole.DIOCESAN_SITE_ENGINEER, 'dsepass'),
    ('padiri', 'Padiri Reviewer', PrincipalRole.PADIRI, 'padiripass'),
    ('store1', 'Main Storekeeper', PrincipalRole.STOREKEEPER, 'storepass'),
]

DEMO_MATERIALS = [
    ('Cement 50kg', 'CEM-50', 'Bag', Decimal('12.50'), Decimal('200')),
    ('Steel Rebar 12mm', 'RBR-12', 'Piece', Decimal('8.75'), Decimal('150')),
    ('River Sand', 'SND-RV', 'Ton', Decimal('30.00'), Decimal('20')),
]


def _principal(db, username: str, full_name: str, role: PrincipalRole, password: str) -> Principal:
    principal = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
    if not principal:
        principal = Principal(
            username=username,
            full_name=full_name,
            password_hash=hash_password(password),
            role=role,
            active=True,
        )
        db.add(principal)
        db.flush()
    return principal


def seed() -> None:
    with SessionLocal() as db:
        users = {username: _principal(db, username, name, role, pw) for username, name, role, pw in DEMO_USERS}

        site = db.execute(select(Site).where(Site.name == 'St. Joseph Parish Hall')).scalar_one_or_none()
        if not site:
            site = Site(name='St. Joseph Parish Hall', location='Kigali')
            db.add(site)
            db.flush()

        engineer = users['engineer1']
        assignment = db.execute(
            select(SiteAssignment).where(
                SiteAssignment.site_id == site.id,
                SiteAssignment.principal_id == engineer.id,
            )
        ).scalar_one_or_none()
        if not assignment:
            db.add(
                SiteAssignment(
                    site_id=site.id,
                    principal_id=engineer.id,
                    assigned_by_principal_id=users['admin'].id,
                    status=SiteAssignmentStatus.ACTIVE,
                )
            )

        store = db.execute(select(Store).where(Store.name == 'Diocesan Central Store')).scalar_one_or_none()
        if not store:
            store = Store(name='Diocesan Central Store', location='Kigali', active=True)
            db.add(store)
            db.flush()

        for name, code, unit_name, price, opening in DEMO_MATERIALS:
            unit = db.execute(select(Unit).where(Unit.name == unit_name)).scalar_one_or_none()
            if not unit:
                unit = Unit(name=unit_name, symbol=unit_name.lower())
                db.add(unit)
                db.flush()

            material = db.execute(select(Material).where(Material.code == code)).scalar_one_or_none()
            if not material:
                material = Material(name=name, code=code, unit_id=unit.id, unit_price=price, active=True)
                db.add(material)
                db.flush()

            stock = db.execute(
                select(Stock).where(Stock.store_id == store.id, Stock.material_id == material.id)
            ).scalar_one_or_none()
            if not stock:
                create_stock(
                    db,
                    store_id=store.id,
                    material_id=material.id,
                    qty_on_hand=opening,
                    reorder_level=opening / 4,
                    low_stock_threshold=opening / 10,
                    actor_principal_id=users['store1'].id,
                )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
