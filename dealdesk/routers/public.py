from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dealdesk.db import get_db
from dealdesk.dependencies import http_error
from dealdesk.errors import DealdeskError
from dealdesk.services import document_service

router = APIRouter(prefix='/public', tags=['public'])


@router.get('/documents/{token}')
def shared_document(token: str, db: Session = Depends(get_db)):
    try:
        document = document_service.resolve_share_token(db, token)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    payload = document_service.serialize_document(document)
    return {
        'doc_type': payload['doc_type'],
        'document_number': payload['document_number'],
        'status': payload['status'],
        'issued_at': payload['issued_at'],
        'snapshot': payload['snapshot'],
    }
