from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_portal.auth import Principal, UnauthorizedError, bearer_token, get_current_principal
from supply_portal.db import get_db, unit_of_work
from supply_portal.dependencies import get_client_ip
from supply_portal.models import Principal as PrincipalModel
from supply_portal.responses import envelope
from supply_portal.schemas import LoginRequest
from supply_portal.security.passwords import verify_password
from supply_portal.security.sessions import create_api_session, revoke_api_session
from supply_portal.services.audit_service import log_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/auth', tags=['auth'])


def _login_failed(db: Session, *, username: str, reason: str, principal_id: int | None, ip: str | None) -> None:
    with unit_of_work(db):
        log_audit(
            db,
            actor_principal_id=principal_id,
            action='AUTH_LOGIN_FAILED',
            request_id=None,
            ip=ip,
            metadata={'username': username, 'reason': reason},
        )
    logger.info('login failed for %r: %s', username, reason)
    raise UnauthorizedError('Invalid username or password')


@router.post('/login')
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = body.username.strip()
    ip = get_client_ip(request)

    principal = db.execute(select(PrincipalModel).where(PrincipalModel.username == username)).scalar_one_or_none()
    if not principal:
        _login_failed(db, username=username, reason='UNKNOWN_USERNAME', principal_id=None, ip=ip)
    if not principal.active:
        _login_failed(db, username=username, reason='INACTIVE_PRINCIPAL', principal_id=principal.id, ip=ip)
    if not verify_password(body.password, principal.password_hash):
        _login_failed(db, username=username, reason='BAD_PASSWORD', principal_id=principal.id, ip=ip)

    with unit_of_work(db):
        token = create_api_session(db, principal.id, ip=ip, user_agent=request.headers.get('user-agent'))
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='AUTH_LOGIN',
            request_id=None,
            ip=ip,
            metadata={'username': username},
        )
    return envelope(
        {
            'token': token,
            'token_type': 'bearer',
            'user': {
                'id': principal.id,
                'username': principal.username,
                'full_name': principal.full_name,
                'role': principal.role.value,
            },
        },
        'Login successful',
    )


@router.post('/logout')
def logout(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    with unit_of_work(db):
        revoke_api_session(db, bearer_token(request))
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='AUTH_LOGOUT',
            request_id=None,
            ip=get_client_ip(request),
        )
    return envelope(None, 'Logged out successfully')
