from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from dealdesk.errors import StateTransitionError

# SQLite only autoincrements an INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')
Money = Numeric(14, 2)
Rate = Numeric(6, 4)


class Base(DeclarativeBase):
    pass


class SaleType(str, Enum):
    RETAIL = 'RETAIL'
    TRADE = 'TRADE'
    EXPORT = 'EXPORT'


class BuyerUse(str, Enum):
    PERSONAL = 'PERSONAL'
    BUSINESS = 'BUSINESS'


class SaleChannel(str, Enum):
    IN_PERSON = 'IN_PERSON'
    DISTANCE = 'DISTANCE'


class PaymentType(str, Enum):
    CASH = 'CASH'
    CARD = 'CARD'
    FINANCE = 'FINANCE'
    BANK_TRANSFER = 'BANK_TRANSFER'
    MIXED = 'MIXED'


class VatScheme(str, Enum):
    MARGIN = 'MARGIN'
    VAT_QUALIFYING = 'VAT_QUALIFYING'
    NO_VAT = 'NO_VAT'


class VatTreatment(str, Enum):
    STANDARD = 'STANDARD'
    NO_VAT = 'NO_VAT'
    ZERO = 'ZERO'
    EXEMPT = 'EXEMPT'


class DealStatus(str, Enum):
    DRAFT = 'DRAFT'
    DEPOSIT_TAKEN = 'DEPOSIT_TAKEN'
    INVOICED = 'INVOICED'
    DELIVERED = 'DELIVERED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class PaymentKind(str, Enum):
    DEPOSIT = 'DEPOSIT'
    BALANCE = 'BALANCE'
    FINANCE_ADVANCE = 'FINANCE_ADVANCE'
    OTHER = 'OTHER'


class PaymentMethod(str, Enum):
    CASH = 'CASH'
    CARD = 'CARD'
    BANK_TRANSFER = 'BANK_TRANSFER'
    FINANCE = 'FINANCE'
    OTHER = 'OTHER'


class FinanceType(str, Enum):
    HP = 'HP'
    PCP = 'PCP'
    LEASE = 'LEASE'
    PERSONAL_LOAN = 'PERSONAL_LOAN'
    OTHER = 'OTHER'


class SalesRequestType(str, Enum):
    PREP = 'PREP'
    ACCESSORY = 'ACCESSORY'
    COSMETIC = 'COSMETIC'
    ADMIN = 'ADMIN'
    OTHER = 'OTHER'


class SalesRequestStatus(str, Enum):
    REQUESTED = 'REQUESTED'
    IN_PROGRESS = 'IN_PROGRESS'
    DONE = 'DONE'
    CANCELLED = 'CANCELLED'


class VehicleSaleStatus(str, Enum):
    AVAILABLE = 'AVAILABLE'
    IN_DEAL = 'IN_DEAL'
    SOLD_IN_PROGRESS = 'SOLD_IN_PROGRESS'
    DELIVERED = 'DELIVERED'
    COMPLETED = 'COMPLETED'


class DocumentType(str, Enum):
    DEPOSIT_RECEIPT = 'DEPOSIT_RECEIPT'
    INVOICE = 'INVOICE'
    SELF_BILL_INVOICE = 'SELF_BILL_INVOICE'
    PAYMENT_RECEIPT = 'PAYMENT_RECEIPT'


class DocumentStatus(str, Enum):
    DRAFT = 'DRAFT'
    ISSUED = 'ISSUED'
    VOID = 'VOID'


class NotificationStatus(str, Enum):
    PENDING = 'PENDING'
    SENT = 'SENT'


class Dealer(Base):
    __tablename__ = 'dealers'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    company_name: Mapped[str | None] = mapped_column(Text)
    company_address: Mapped[str | None] = mapped_column(Text)
    company_phone: Mapped[str | None] = mapped_column(Text)
    company_email: Mapped[str | None] = mapped_column(Text)
    company_number: Mapped[str | None] = mapped_column(Text)
    vat_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    vat_number: Mapped[str | None] = mapped_column(Text)
    logo_url: Mapped[str | None] = mapped_column(Text)
    bank_account_name: Mapped[str | None] = mapped_column(Text)
    bank_sort_code: Mapped[str | None] = mapped_column(Text)
    bank_account_number: Mapped[str | None] = mapped_column(Text)
    bank_iban: Mapped[str | None] = mapped_column(Text)
    terms_consumer_in_person: Mapped[str | None] = mapped_column(Text)
    terms_consumer_distance: Mapped[str | None] = mapped_column(Text)
    terms_business_in_person: Mapped[str | None] = mapped_column(Text)
    terms_business_distance: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Contact(Base):
    __tablename__ = 'contacts'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('dealers.id'), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    company_name: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    vat_number: Mapped[str | None] = mapped_column(Text)
    address_line1: Mapped[str | None] = mapped_column(Text)
    address_line2: Mapped[str | None] = mapped_column(Text)
    town: Mapped[str | None] = mapped_column(Text)
    county: Mapped[str | None] = mapped_column(Text)
    postcode: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Vehicle(Base):
    __tablename__ = 'vehicles'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('dealers.id'), nullable=False, index=True)
    reg_current: Mapped[str | None] = mapped_column(Text)
    vin: Mapped[str | None] = mapped_column(Text)
    make: Mapped[str | None] = mapped_column(Text)
    model: Mapped[str | None] = mapped_column(Text)
    derivative: Mapped[str | None] = mapped_column(Text)
    year: Mapped[int | None] = mapped_column(Integer)
    mileage_current: Mapped[int | None] = mapped_column(Integer)
    colour: Mapped[str | None] = mapped_column(Text)
    vat_scheme: Mapped[VatScheme | None] = mapped_column(SQLEnum(VatScheme, name='vat_scheme'))
    sale_status: Mapped[VehicleSaleStatus] = mapped_column(
        SQLEnum(VehicleSaleStatus, name='vehicle_sale_status'),
        nullable=False,
        default=VehicleSaleStatus.AVAILABLE,
        server_default='AVAILABLE',
    )
    purchase_price_net: Mapped[Decimal | None] = mapped_column(Money)
    purchase_vat: Mapped[Decimal | None] = mapped_column(Money)
    purchase_date: Mapped[date | None] = mapped_column(Date)
    purchased_from_contact_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('contacts.id'))
    purchase_invoice_ref: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Deal(Base):
    __tablename__ = 'deals'
    __table_args__ = (
        UniqueConstraint('dealer_id', 'deal_number', name='deals_dealer_number_key'),
        CheckConstraint('part_exchange_allowance >= 0', name='deals_px_allowance_ck'),
        CheckConstraint('part_exchange_settlement >= 0', name='deals_px_settlement_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('dealers.id'), nullable=False, index=True)
    deal_number: Mapped[int] = mapped_column(Integer, nullable=False)
    vehicle_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('vehicles.id'), nullable=False)
    status: Mapped[DealStatus] = mapped_column(
        SQLEnum(DealStatus, name='deal_status'), nullable=False, default=DealStatus.DRAFT, server_default='DRAFT'
    )

    sold_to_contact_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('contacts.id'))
    invoice_to_contact_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('contacts.id'))
    delivery_address: Mapped[dict | None] = mapped_column(JSON)

    sale_type: Mapped[SaleType] = mapped_column(
        SQLEnum(SaleType, name='sale_type'), nullable=False, default=SaleType.RETAIL, server_default='RETAIL'
    )
    buyer_use: Mapped[BuyerUse | None] = mapped_column(SQLEnum(BuyerUse, name='buyer_use'))
    sale_channel: Mapped[SaleChannel | None] = mapped_column(SQLEnum(SaleChannel, name='sale_channel'))
    payment_type: Mapped[PaymentType] = mapped_column(
        SQLEnum(PaymentType, name='payment_type'), nullable=False, default=PaymentType.CASH, server_default='CASH'
    )

    vat_scheme: Mapped[VatScheme] = mapped_column(SQLEnum(VatScheme, name='vat_scheme'), nullable=False)
    vat_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False, default=Decimal('0.20'), server_default='0.20')
    vehicle_price_net: Mapped[Decimal | None] = mapped_column(Money)
    vehicle_vat_amount: Mapped[Decimal | None] = mapped_column(Money)
    vehicle_price_gross: Mapped[Decimal | None] = mapped_column(Money)
    purchase_price_net: Mapped[Decimal | None] = mapped_column(Money)

    part_exchange_allowance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    part_exchange_settlement: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    px_vrm: Mapped[str | None] = mapped_column(Text)
    px_make: Mapped[str | None] = mapped_column(Text)
    px_model: Mapped[str | None] = mapped_column(Text)
    px_has_finance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    px_finance_company_name: Mapped[str | None] = mapped_column(Text)
    px_settlement_in_writing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    px_finance_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')

    delivery_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    delivery_is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    delivery_notes: Mapped[str | None] = mapped_column(Text)

    finance_provider: Mapped[str | None] = mapped_column(Text)
    finance_type: Mapped[FinanceType | None] = mapped_column(SQLEnum(FinanceType, name='finance_type'))
    finance_amount: Mapped[Decimal | None] = mapped_column(Money)
    finance_reference: Mapped[str | None] = mapped_column(Text)

    terms_snapshot_text: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    internal_notes: Mapped[str | None] = mapped_column(Text)

    deposit_taken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invoiced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivery_mileage: Mapped[int | None] = mapped_column(Integer)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    sales_person_id: Mapped[int | None] = mapped_column(BigInteger)
    created_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    updated_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DealPayment(Base):
    __tablename__ = 'deal_payments'
    __table_args__ = (
        CheckConstraint('amount > 0', name='deal_payments_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    deal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('deals.id'), nullable=False, index=True)
    kind: Mapped[PaymentKind] = mapped_column(SQLEnum(PaymentKind, name='payment_kind'), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod, name='payment_method'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    is_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DealAddOn(Base):
    __tablename__ = 'deal_add_ons'
    __table_args__ = (
        CheckConstraint('qty >= 1', name='deal_add_ons_qty_ck'),
        CheckConstraint('unit_price_net >= 0', name='deal_add_ons_price_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    deal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('deals.id'), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    unit_price_net: Mapped[Decimal] = mapped_column(Money, nullable=False)
    vat_treatment: Mapped[VatTreatment] = mapped_column(
        SQLEnum(VatTreatment, name='vat_treatment'),
        nullable=False,
        default=VatTreatment.STANDARD,
        server_default='STANDARD',
    )
    vat_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False, default=Decimal('0.20'), server_default='0.20')
    cost_price: Mapped[Decimal | None] = mapped_column(Money)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DealRequest(Base):
    __tablename__ = 'deal_requests'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    deal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('deals.id'), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text)
    request_type: Mapped[SalesRequestType] = mapped_column(
        SQLEnum(SalesRequestType, name='sales_request_type'),
        nullable=False,
        default=SalesRequestType.OTHER,
        server_default='OTHER',
    )
    status: Mapped[SalesRequestStatus] = mapped_column(
        SQLEnum(SalesRequestStatus, name='sales_request_status'),
        nullable=False,
        default=SalesRequestStatus.REQUESTED,
        server_default='REQUESTED',
    )
    estimated_cost_net: Mapped[Decimal | None] = mapped_column(Money)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SalesDocument(Base):
    __tablename__ = 'sales_documents'
    __table_args__ = (
        UniqueConstraint('dealer_id', 'doc_type', 'document_number', name='sales_documents_number_key'),
        UniqueConstraint('share_token_hash', name='sales_documents_share_token_hash_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('dealers.id'), nullable=False, index=True)
    deal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('deals.id'), index=True)
    vehicle_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('vehicles.id'))
    doc_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType, name='document_type'), nullable=False)
    document_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        SQLEnum(DocumentStatus, name='document_status'),
        nullable=False,
        default=DocumentStatus.DRAFT,
        server_default='DRAFT',
    )
    snapshot_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    voided_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    void_reason: Mapped[str | None] = mapped_column(Text)
    share_token_hash: Mapped[str | None] = mapped_column(String(64))
    share_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SequenceCounter(Base):
    __tablename__ = 'sequence_counters'
    __table_args__ = (
        UniqueConstraint('dealer_id', 'kind', name='sequence_counters_dealer_kind_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    actor_user_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    deal_id: Mapped[int | None] = mapped_column(BigInteger)
    document_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NotificationOutbox(Base):
    __tablename__ = 'notification_outbox'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    event: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(NotificationStatus, name='notification_status'),
        nullable=False,
        default=NotificationStatus.PENDING,
        server_default='PENDING',
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


IMMUTABLE_AFTER_ISSUE = ('snapshot_data', 'document_number', 'doc_type', 'dealer_id', 'deal_id', 'vehicle_id', 'issued_at')


def _original_value(obj, field: str):
    history = inspect(obj).attrs[field].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(obj, field)


@event.listens_for(Session, 'before_flush')
def _guard_ledger_records(session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, Deal):
            raise StateTransitionError('Deals are never deleted; cancel the deal instead')
        if isinstance(obj, SalesDocument) and obj.status != DocumentStatus.DRAFT:
            raise StateTransitionError('Issued documents cannot be deleted; void the document instead')

    for obj in session.dirty:
        if not isinstance(obj, SalesDocument):
            continue
        previous_status = _original_value(obj, 'status')
        if previous_status == DocumentStatus.DRAFT:
            continue
        state = inspect(obj)
        changed = [field for field in IMMUTABLE_AFTER_ISSUE if state.attrs[field].history.has_changes()]
        if changed:
            raise StateTransitionError(f'Document {obj.document_number} is {previous_status.value}; {", ".join(changed)} cannot change')
        if previous_status == DocumentStatus.VOID and state.attrs.status.history.has_changes():
            raise StateTransitionError(f'Document {obj.document_number} is already void')
        if previous_status == DocumentStatus.ISSUED and obj.status not in {DocumentStatus.ISSUED, DocumentStatus.VOID}:
            raise StateTransitionError(f'Document {obj.document_number} can only move from ISSUED to VOID')
