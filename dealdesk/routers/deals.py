from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dealdesk.auth import Principal, admin_access, member_access, sales_access
from dealdesk.db import get_db
from dealdesk.dependencies import actor_for, get_provider, http_error
from dealdesk.errors import DealdeskError, ValidationError
from dealdesk.models import DealStatus, SaleType, VatScheme
from dealdesk.schemas import (
    AddOnCreate,
    BalancePaymentCreate,
    DealCreate,
    DealDetailsUpdate,
    DeliverBody,
    DeliveryUpdate,
    DepositCreate,
    FinanceUpdate,
    PartExchangeUpdate,
    PaymentCreate,
    PricingUpdate,
    ReasonBody,
    RequestAdvance,
    RequestCreate,
)
from dealdesk.services import deal_service, deal_state_service, document_service
from dealdesk.services.document_service import IssuedDocument
from dealdesk.services.records_provider import RecordsProvider

router = APIRouter(prefix='/deals', tags=['deals'])


def _issued_payload(db: Session, issued: IssuedDocument, *, dealer_id: int) -> dict:
    deal = deal_service.get_deal(db, dealer_id=dealer_id, deal_id=issued.document.deal_id)
    return {
        'document': document_service.serialize_document(issued.document),
        'share_token': issued.share_token,
        'deal': deal_service.deal_detail(db, deal),
    }


@router.get('')
def list_deals(
    status: str | None = Query(default=None, description='One status or a comma separated list'),
    vehicle_id: int | None = None,
    customer_id: int | None = None,
    sales_person_id: int | None = None,
    sale_type: SaleType | None = None,
    vat_scheme: VatScheme | None = None,
    vehicle_vrm: str | None = None,
    principal: Principal = Depends(member_access),
    db: Session = Depends(get_db),
):
    statuses = None
    if status and status != 'all':
        try:
            statuses = [DealStatus(value.strip().upper()) for value in status.split(',') if value.strip()]
        except ValueError as exc:
            raise http_error(ValidationError(f'Unknown deal status in {status!r}')) from exc
    deals = deal_service.list_deals(
        db,
        dealer_id=principal.dealer_id,
        statuses=statuses,
        vehicle_id=vehicle_id,
        customer_id=customer_id,
        sales_person_id=sales_person_id,
        sale_type=sale_type,
        vat_scheme=vat_scheme,
        vehicle_vrm=vehicle_vrm,
    )
    return [deal_service.serialize_deal(deal) for deal in deals]


@router.post('', status_code=201)
def create_deal(
    body: DealCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_service.create_deal(
            db,
            provider,
            dealer_id=principal.dealer_id,
            actor=actor_for(request, principal),
            vehicle_id=body.vehicle_id,
            vehicle_price_gross=body.vehicle_price_gross,
            vehicle_price_net=body.vehicle_price_net,
            vat_scheme=body.vat_scheme,
            sold_to_contact_id=body.sold_to_contact_id,
            invoice_to_contact_id=body.invoice_to_contact_id,
            sale_type=body.sale_type,
            buyer_use=body.buyer_use,
            buyer_type=body.buyer_type,
            sale_channel=body.sale_channel,
            payment_type=body.payment_type,
            delivery_address=body.delivery_address.model_dump(exclude_none=True) if body.delivery_address else None,
            notes=body.notes,
            internal_notes=body.internal_notes,
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.get('/{deal_id}')
def get_deal(deal_id: int, principal: Principal = Depends(member_access), db: Session = Depends(get_db)):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id)
        return deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc


@router.patch('/{deal_id}')
def update_deal(
    deal_id: int,
    body: DealDetailsUpdate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.update_details(db, provider, deal, actor=actor_for(request, principal), **body.model_dump(exclude_unset=True))
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.put('/{deal_id}/pricing')
def update_pricing(
    deal_id: int,
    body: PricingUpdate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.update_pricing(
            db,
            deal,
            actor=actor_for(request, principal),
            vehicle_price_gross=body.vehicle_price_gross,
            vehicle_price_net=body.vehicle_price_net,
            vat_scheme=body.vat_scheme,
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/payments', status_code=201)
def add_payment(
    deal_id: int,
    body: PaymentCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.add_payment(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/payments/{payment_id}/refund')
def refund_payment(
    deal_id: int,
    payment_id: int,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.refund_payment(db, deal, actor=actor_for(request, principal), payment_id=payment_id)
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/add-ons', status_code=201)
def add_add_on(
    deal_id: int,
    body: AddOnCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.add_add_on(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.delete('/{deal_id}/add-ons/{add_on_id}')
def remove_add_on(
    deal_id: int,
    add_on_id: int,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.remove_add_on(db, deal, actor=actor_for(request, principal), add_on_id=add_on_id)
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.put('/{deal_id}/part-exchange')
def set_part_exchange(
    deal_id: int,
    body: PartExchangeUpdate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.set_part_exchange(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.delete('/{deal_id}/part-exchange')
def clear_part_exchange(
    deal_id: int,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.clear_part_exchange(db, deal, actor=actor_for(request, principal))
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.put('/{deal_id}/delivery')
def set_delivery(
    deal_id: int,
    body: DeliveryUpdate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.set_delivery(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.put('/{deal_id}/finance')
def set_finance(
    deal_id: int,
    body: FinanceUpdate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        deal_service.set_finance(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/requests', status_code=201)
def add_request(
    deal_id: int,
    body: RequestCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        row = deal_service.add_request(db, deal, actor=actor_for(request, principal), **body.model_dump())
        payload = deal_service.serialize_request(row)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/requests/{request_id}/status')
def advance_request(
    deal_id: int,
    request_id: int,
    body: RequestAdvance,
    request: Request,
    principal: Principal = Depends(member_access),
    db: Session = Depends(get_db),
):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id, for_update=True)
        row = deal_service.advance_request(
            db, deal, actor=actor_for(request, principal), request_id=request_id, status=body.status
        )
        payload = deal_service.serialize_request(row)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/take-deposit', status_code=201)
def take_deposit(
    deal_id: int,
    body: DepositCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        issued = deal_state_service.take_deposit(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            **body.model_dump(),
        )
        payload = _issued_payload(db, issued, dealer_id=principal.dealer_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/invoice', status_code=201)
def invoice_deal(
    deal_id: int,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        issued = deal_state_service.invoice_deal(
            db, provider, dealer_id=principal.dealer_id, deal_id=deal_id, actor=actor_for(request, principal)
        )
        payload = _issued_payload(db, issued, dealer_id=principal.dealer_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/void-invoice')
def void_invoice(
    deal_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_state_service.void_invoice(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            reason=body.reason,
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/reissue-invoice', status_code=201)
def reissue_invoice(
    deal_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        issued = deal_state_service.reissue_invoice(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            reason=body.reason,
        )
        payload = _issued_payload(db, issued, dealer_id=principal.dealer_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/balance-payments', status_code=201)
def record_balance_payment(
    deal_id: int,
    body: BalancePaymentCreate,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        issued = deal_state_service.record_balance_payment(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            **body.model_dump(),
        )
        payload = _issued_payload(db, issued, dealer_id=principal.dealer_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/deliver')
def mark_delivered(
    deal_id: int,
    body: DeliverBody,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_state_service.mark_delivered(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            **body.model_dump(),
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/complete')
def complete_deal(
    deal_id: int,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_state_service.complete(
            db, provider, dealer_id=principal.dealer_id, deal_id=deal_id, actor=actor_for(request, principal)
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.post('/{deal_id}/cancel')
def cancel_deal(
    deal_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(sales_access),
    db: Session = Depends(get_db),
    provider: RecordsProvider = Depends(get_provider),
):
    try:
        deal = deal_state_service.cancel(
            db,
            provider,
            dealer_id=principal.dealer_id,
            deal_id=deal_id,
            actor=actor_for(request, principal),
            reason=body.reason,
        )
        payload = deal_service.deal_detail(db, deal)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    db.commit()
    return payload


@router.get('/{deal_id}/documents')
def deal_documents(deal_id: int, principal: Principal = Depends(member_access), db: Session = Depends(get_db)):
    try:
        deal = deal_service.get_deal(db, dealer_id=principal.dealer_id, deal_id=deal_id)
    except DealdeskError as exc:
        raise http_error(exc) from exc
    documents = document_service.list_documents(db, dealer_id=principal.dealer_id, deal_id=deal.id)
    return [document_service.serialize_document(document, include_snapshot=False) for document in documents]
