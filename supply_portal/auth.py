from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from supply_portal.db import get_db
from supply_portal.errors import DomainError, ForbiddenError


class Role(str, Enum):
    ADMIN = "ADMIN"
    SITE_ENGINEER = "SITE_ENGINEER"
    DIOCESAN_SITE_ENGINEER = "DIOCESAN_SITE_ENGINEER"
    PADIRI = "PADIRI"
    STOREKEEPER = "STOREKEEPER"


REVIEWER_ROLES = frozenset({Role.ADMIN, Role.PADIRI, Role.DIOCESAN_SITE_ENGINEER})
FINAL_APPROVER_ROLES = frozenset({Role.ADMIN, Role.PADIRI})


@dataclass
class Principal:
    id: int
    username: str
    full_name: str
    role: Role
    active: bool


class UnauthorizedError(DomainError):
    status_code = 401
    default_message = "Authentication required"


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    from supply_portal.security.sessions import load_principal_from_token

    principal = load_principal_from_token(db, bearer_token(request))
    db.commit()
    if not principal:
        raise UnauthorizedError()
    if not principal.active:
        raise ForbiddenError("Account is disabled")
    request.state.principal = principal
    return principal


def is_reviewer_role(role: Role) -> bool:
    return role in REVIEWER_ROLES


def is_final_approver(role: Role) -> bool:
    return role in FINAL_APPROVER_ROLES


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise ForbiddenError("You do not have permission to perform this action")
        return principal

    return _dep
