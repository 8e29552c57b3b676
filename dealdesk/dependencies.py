from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from dealdesk.auth import Principal
from dealdesk.db import get_db
from dealdesk.errors import (
    ComputationError,
    ConflictError,
    DealdeskError,
    NotFoundError,
    ShareLinkGoneError,
    StateTransitionError,
    ValidationError,
)
from dealdesk.services.audit_service import Actor
from dealdesk.services.provider_factory import get_records_provider
from dealdesk.services.records_provider import RecordsProvider

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (StateTransitionError, 409),
    (ConflictError, 409),
    (ShareLinkGoneError, 410),
    (ComputationError, 422),
)


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_provider(db: Session = Depends(get_db)) -> RecordsProvider:
    return get_records_provider(db)


def actor_for(request: Request, principal: Principal) -> Actor:
    return Actor(user_id=principal.user_id, name=principal.name, email=principal.email, ip=get_client_ip(request))


def http_error(exc: DealdeskError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
