from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from dealdesk.models import AuditLog, Deal


@dataclass(frozen=True)
class Actor:
    """Who performed a write, as resolved from the request."""

    user_id: int | None
    name: str | None = None
    email: str | None = None
    ip: str | None = None


def log_audit(
    db: Session,
    *,
    dealer_id: int,
    actor_user_id: int | None,
    action: str,
    deal_id: int | None = None,
    document_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            dealer_id=dealer_id,
            actor_user_id=actor_user_id,
            action=action,
            deal_id=deal_id,
            document_id=document_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def log_deal_audit(
    db: Session,
    deal: Deal,
    actor: Actor,
    action: str,
    *,
    document_id: int | None = None,
    metadata: dict | None = None,
) -> None:
    log_audit(
        db,
        dealer_id=deal.dealer_id,
        actor_user_id=actor.user_id,
        action=action,
        deal_id=deal.id,
        document_id=document_id,
        ip=actor.ip,
        metadata=metadata,
    )
