from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from dealdesk.auth import Principal, admin_access, member_access, sales_access
from dealdesk.db import get_db
from dealdesk.dependencies import actor_for, get_provider, http_error
from dealdesk.errors import DealdeskError
from dealdesk.models import DocumentType
from dealdesk.schemas import ReasonBody, SelfBillCreate
from dealdesk.services import document_service
from dealdesk.services.records_provider import RecordsProvider

router = APIRouter(prefix='/documents', tags=['documents'])


@router.get('')
def list_documents(
    deal_id: int | None = None,
    vehicle_id: int | None = None,
    doc_type: DocumentType | None = None,
    principal: Principal = Depends(member_access),
    db: Session = Depends(get_db),
):
    documents = document_service.list_documents(
        db, dealer_id=principal.dealer_id, deal_id=deal_id, vehicle_id=vehicle_id, doc_type=doc_type
    )
    return [document_service.serialize_document(document, include_snapshot=False) for document in documents]


@router.get('/{document_id}')
def get_document(document_id: int, principal: Principal = Depends(member_access), db: Session = Depends(get_db)):
    try:
        document = document_service.get_document(db, dealer_id=principal.dealer_id, document_id=document_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    return document_service.serialize_document(document)


@router.post('/{document_id}/void')
def void_document(
    document_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        document = document_service.void_document(
            db,
            dealer_id=principal.dealer_id,
            document_id=document_id,
            reason=body.reason,
            actor=actor_for(request, principal),
        )
        payload = document_service.serialize_document(document)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{document_id}/share-link')
def renew_share_link(
    document_id: int,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        issued = document_service.renew_share_link(db, dealer_id=principal.dealer_id, document_id=document_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return {'share_token': issued.share_token, 'share_expires_at': issued.document.share_expires_at}


@router.post('/self-bill-invoices', status_code=201)
def issue_self_bill_invoice(
    body: SelfBillCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        issued = document_service.issue_self_bill_invoice(
            db,
            provider,
            dealer_id=principal.dealer_id,
            vehicle_id=body.vehicle_id,
            actor=actor_for(request, principal),
        )
        payload = {'document': document_service.serialize_document(issued.document), 'share_token': issued.share_token}
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload
