from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, Role
from supply_portal.config import settings
from supply_portal.models import ApiSession
from supply_portal.models import Principal as PrincipalModel


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_expiry() -> datetime:
    return _now() + timedelta(minutes=settings.api_token_ttl_minutes)


def create_api_session(db: Session, principal_id: int, ip: str | None, user_agent: str | None) -> str:
    token = secrets.token_urlsafe(48)
    api_session = ApiSession(
        token=token,
        principal_id=principal_id,
        ip=ip,
        user_agent=user_agent,
        expires_at=_session_expiry(),
    )
    db.add(api_session)
    db.flush()
    return token


def revoke_api_session(db: Session, token: str) -> None:
    session = db.execute(select(ApiSession).where(ApiSession.token == token)).scalar_one_or_none()
    if not session or session.revoked_at is not None:
        return
    session.revoked_at = _now()


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(ApiSession, PrincipalModel)
        .join(PrincipalModel, PrincipalModel.id == ApiSession.principal_id)
        .where(ApiSession.token == token)
    ).one_or_none()
    if not row:
        return None

    api_session, principal = row
    now = _now()
    if api_session.revoked_at is not None or _as_utc(api_session.expires_at) <= now:
        return None

    api_session.last_seen_at = now
    api_session.expires_at = _session_expiry()
    role = Role(principal.role.value if hasattr(principal.role, 'value') else principal.role)
    return Principal(
        id=principal.id,
        username=principal.username,
        full_name=principal.full_name,
        role=role,
        active=principal.active,
    )
