from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys.
Id = BigInteger().with_variant(Integer, 'sqlite')
Quantity = Numeric(12, 3)


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    SITE_ENGINEER = 'SITE_ENGINEER'
    DIOCESAN_SITE_ENGINEER = 'DIOCESAN_SITE_ENGINEER'
    PADIRI = 'PADIRI'
    STOREKEEPER = 'STOREKEEPER'


class SiteAssignmentStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    INACTIVE = 'INACTIVE'


class RequestStatus(str, Enum):
    PENDING = 'PENDING'
    DSE_REVIEW = 'DSE_REVIEW'
    VERIFIED = 'VERIFIED'
    WAITING_PADIRI_REVIEW = 'WAITING_PADIRI_REVIEW'
    APPROVED = 'APPROVED'
    PARTIALLY_ISSUED = 'PARTIALLY_ISSUED'
    ISSUED = 'ISSUED'
    RECEIVED = 'RECEIVED'
    REJECTED = 'REJECTED'
    CLOSED = 'CLOSED'


class ApprovalLevel(str, Enum):
    DSE = 'DSE'
    PADIRI = 'PADIRI'


class ApprovalAction(str, Enum):
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    VERIFIED = 'VERIFIED'
    MODIFIED = 'MODIFIED'


class MovementType(str, Enum):
    IN = 'IN'
    OUT = 'OUT'
    ADJUSTMENT = 'ADJUSTMENT'


class MovementSource(str, Enum):
    ISSUE = 'ISSUE'
    GRN = 'GRN'
    ADJUSTMENT = 'ADJUSTMENT'
    RECEIPT = 'RECEIPT'


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    username: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ApiSession(Base):
    __tablename__ = 'api_sessions'
    __table_args__ = (
        UniqueConstraint('token', name='api_sessions_token_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(Id, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Site(Base):
    __tablename__ = 'sites'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SiteAssignment(Base):
    __tablename__ = 'site_assignments'
    __table_args__ = (
        UniqueConstraint('site_id', 'principal_id', name='site_assignments_site_principal_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    site_id: Mapped[int] = mapped_column(Id, ForeignKey('sites.id', ondelete='CASCADE'), nullable=False)
    principal_id: Mapped[int] = mapped_column(Id, ForeignKey('principals.id', ondelete='CASCADE'), nullable=False)
    assigned_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    status: Mapped[SiteAssignmentStatus] = mapped_column(
        SQLEnum(SiteAssignmentStatus, name='site_assignment_status'),
        nullable=False,
        default=SiteAssignmentStatus.ACTIVE,
        server_default='ACTIVE',
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Unit(Base):
    __tablename__ = 'units'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str | None] = mapped_column(String(20))


class Material(Base):
    __tablename__ = 'materials'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), unique=True)
    unit_id: Mapped[int | None] = mapped_column(Id, ForeignKey('units.id'))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReferenceCounter(Base):
    __tablename__ = 'reference_counters'

    scope: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class Request(Base):
    __tablename__ = 'requests'
    __table_args__ = (
        UniqueConstraint('ref_no', name='requests_ref_no_key'),
        Index('requests_status_idx', 'status'),
        Index('requests_site_idx', 'site_id'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    ref_no: Mapped[str] = mapped_column(String(50), nullable=False)
    site_id: Mapped[int] = mapped_column(Id, ForeignKey('sites.id'), nullable=False)
    requested_by_principal_id: Mapped[int] = mapped_column(Id, ForeignKey('principals.id'), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        SQLEnum(RequestStatus, name='request_status'),
        nullable=False,
        default=RequestStatus.PENDING,
        server_default='PENDING',
    )
    notes: Mapped[str | None] = mapped_column(Text)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    issued_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RequestItem(Base):
    __tablename__ = 'request_items'
    __table_args__ = (
        CheckConstraint('qty_requested > 0', name='request_items_qty_requested_positive_ck'),
        CheckConstraint('qty_approved IS NULL OR qty_approved > 0', name='request_items_qty_approved_positive_ck'),
        CheckConstraint('qty_issued >= 0', name='request_items_qty_issued_non_negative_ck'),
        CheckConstraint('qty_received >= 0', name='request_items_qty_received_non_negative_ck'),
        CheckConstraint('qty_received <= qty_issued', name='request_items_received_within_issued_ck'),
        Index('request_items_request_idx', 'request_id'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    request_id: Mapped[int] = mapped_column(Id, ForeignKey('requests.id', ondelete='CASCADE'), nullable=False)
    material_id: Mapped[int] = mapped_column(Id, ForeignKey('materials.id'), nullable=False)
    unit_id: Mapped[int] = mapped_column(Id, ForeignKey('units.id'), nullable=False)
    qty_requested: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    qty_approved: Mapped[Decimal | None] = mapped_column(Quantity)
    qty_issued: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    qty_received: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    issued_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Approval(Base):
    __tablename__ = 'approvals'
    __table_args__ = (
        Index('approvals_request_level_idx', 'request_id', 'level'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    request_id: Mapped[int] = mapped_column(Id, ForeignKey('requests.id', ondelete='CASCADE'), nullable=False)
    level: Mapped[ApprovalLevel] = mapped_column(SQLEnum(ApprovalLevel, name='approval_level'), nullable=False)
    reviewer_principal_id: Mapped[int] = mapped_column(Id, ForeignKey('principals.id'), nullable=False)
    action: Mapped[ApprovalAction] = mapped_column(SQLEnum(ApprovalAction, name='approval_action'), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Stock(Base):
    __tablename__ = 'stock'
    __table_args__ = (
        UniqueConstraint('store_id', 'material_id', name='stock_store_material_key'),
        CheckConstraint('qty_on_hand >= 0', name='stock_qty_on_hand_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    store_id: Mapped[int] = mapped_column(Id, ForeignKey('stores.id'), nullable=False)
    material_id: Mapped[int] = mapped_column(Id, ForeignKey('materials.id'), nullable=False)
    qty_on_hand: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    reorder_level: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    low_stock_threshold: Mapped[Decimal | None] = mapped_column(Quantity)
    low_stock_alert: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockMovement(Base):
    __tablename__ = 'stock_movements'
    __table_args__ = (
        CheckConstraint('qty_after = qty_before + qty_change', name='stock_movements_balanced_ck'),
        Index('stock_movements_stock_created_idx', 'stock_id', 'created_at'),
        Index('stock_movements_source_idx', 'source_type', 'source_id'),
        Index('stock_movements_request_item_idx', 'request_item_id'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    stock_id: Mapped[int] = mapped_column(Id, ForeignKey('stock.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(Id, ForeignKey('stores.id'), nullable=False)
    material_id: Mapped[int] = mapped_column(Id, ForeignKey('materials.id'), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(SQLEnum(MovementType, name='movement_type'), nullable=False)
    source_type: Mapped[MovementSource] = mapped_column(SQLEnum(MovementSource, name='movement_source'), nullable=False)
    source_id: Mapped[int | None] = mapped_column(BigInteger)
    request_item_id: Mapped[int | None] = mapped_column(Id, ForeignKey('request_items.id', ondelete='SET NULL'))
    qty_before: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    qty_change: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    qty_after: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    notes: Mapped[str | None] = mapped_column(Text)
    created_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    request_id: Mapped[int | None] = mapped_column(Id, ForeignKey('requests.id'))
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
