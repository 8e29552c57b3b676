from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    WORKSHOP = "WORKSHOP"


@dataclass
class Principal:
    user_id: int
    dealer_id: int
    role: Role
    name: str | None = None
    email: str | None = None
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


sales_access = require_role(Role.OWNER, Role.ADMIN, Role.STAFF)
admin_access = require_role(Role.OWNER, Role.ADMIN)
member_access = require_role(Role.OWNER, Role.ADMIN, Role.STAFF, Role.WORKSHOP)
