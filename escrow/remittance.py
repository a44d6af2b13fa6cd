"""
Remittance: releasing an order's collected funds to the organization.

The organization's bank profile is copied onto the order and into the
record at processing time, so later profile edits never change what a
settlement says was paid where. Records are never updated; the
organization's receipt confirmation is stored alongside.
"""

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError

from escrow import events, orders
from escrow.errors import (
    AlreadyRemitted,
    InvalidTransition,
    MissingBankDetails,
    NotFound,
    ValidationError,
)
from escrow.idempotency import request_hash
from escrow.models import (
    DeliveryConfirmation,
    Order,
    OrganizationBankProfile,
    RemittanceAcknowledgement,
    RemittanceRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


def _parse_date(value) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
        raise ValidationError(f"Invalid settlement date: {value!r}", field="settlement_date")
    raise ValidationError("Settlement date is required", field="settlement_date")


def _required_text(value, field: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} is required", field=field)
    return value


def _validate_amount(amount, order: Order) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount remitted must be a positive integer", field="amount_remitted")
    if amount > order.total_amount_paid:
        raise ValidationError(
            f"Amount remitted ({amount}) exceeds the amount paid on the order ({order.total_amount_paid})",
            field="amount_remitted",
        )
    return amount


def _replay_or_conflict(existing: RemittanceRecord, fingerprint: str) -> RemittanceRecord:
    if existing.request_hash == fingerprint:
        return existing
    raise AlreadyRemitted(f"Order {existing.order_id} has already been remitted")


def process_remittance(
    db,
    order_id: str,
    amount_remitted: int,
    settlement_date,
    operator_bank_name: str,
    operator_account_number: str,
    evidence_url: str,
    processed_by: str = None,
) -> RemittanceRecord:
    fingerprint = request_hash("remittance", {
        "order_id": order_id,
        "amount_remitted": amount_remitted,
        "settlement_date": str(settlement_date),
        "operator_bank_name": (operator_bank_name or "").strip(),
        "operator_account_number": (operator_account_number or "").strip(),
        "evidence_url": (evidence_url or "").strip(),
    })
    try:
        order = orders.lock_order(db, order_id)
        existing = db.query(RemittanceRecord).filter_by(order_id=order_id).first()
        if existing is not None:
            record = _replay_or_conflict(existing, fingerprint)
            db.rollback()
            return record

        amount = _validate_amount(amount_remitted, order)
        settled_on = _parse_date(settlement_date)
        operator_bank_name = _required_text(operator_bank_name, "operator_bank_name", "Operator bank name")
        operator_account_number = _required_text(
            operator_account_number, "operator_account_number", "Operator account number"
        )
        evidence_url = _required_text(evidence_url, "evidence_url", "Payment evidence")

        if db.query(DeliveryConfirmation).filter_by(order_id=order_id).first() is None:
            raise InvalidTransition(f"Delivery for order {order_id} has not been confirmed")

        profile = db.get(OrganizationBankProfile, order.organization_id)
        if profile is None:
            raise MissingBankDetails(
                f"Organization {order.organization_id} has not registered bank details"
            )
        snapshot = profile.snapshot()
        order.organization_bank_details = snapshot
        orders.touch(order)

        record = RemittanceRecord(
            order_id=order.id,
            organization_bank_name=snapshot["bank_name"],
            organization_account_number=snapshot["account_number"],
            organization_account_name=snapshot["account_name"],
            amount_remitted=amount,
            settlement_date=settled_on,
            super_admin_bank_name=operator_bank_name,
            super_admin_account_number=operator_account_number,
            payment_evidence_url=evidence_url,
            processed_by=processed_by,
            request_hash=fingerprint,
            created_at=utcnow(),
        )
        db.add(record)
        events.record_event(db, order, events.REMITTANCE_SETTLED,
                            amount_remitted=amount, settlement_date=settled_on,
                            bank_name=snapshot["bank_name"])
        orders.commit(db)
    except IntegrityError:
        db.rollback()
        existing = db.query(RemittanceRecord).filter_by(order_id=order_id).first()
        if existing is None:
            raise
        return _replay_or_conflict(existing, fingerprint)
    except Exception:
        db.rollback()
        raise

    logger.info("order %s remitted %s to organization %s", order_id, amount, record.organization_bank_name)
    return record


def get_remittance(db, order_id: str) -> RemittanceRecord:
    record = db.query(RemittanceRecord).filter_by(order_id=order_id).first()
    if record is None:
        raise NotFound("Remittance", order_id)
    return record


def acknowledge_remittance(db, order_id: str, organization_id: str = None, comment: str = None,
                           acknowledged_by: str = None) -> RemittanceAcknowledgement:
    """The organization confirms the transfer arrived. Repeats return the first acknowledgement."""
    try:
        record = get_remittance(db, order_id)
        order = record.order
        if organization_id is not None and order.organization_id != organization_id:
            raise NotFound("Remittance", order_id)
        if record.acknowledgement is not None:
            ack = record.acknowledgement
            db.rollback()
            return ack

        ack = RemittanceAcknowledgement(
            remittance_id=record.id,
            comment=(comment or "").strip() or None,
            acknowledged_by=acknowledged_by,
            created_at=utcnow(),
        )
        db.add(ack)
        events.record_event(db, order, events.REMITTANCE_ACKNOWLEDGED, comment=ack.comment)
        db.commit()
    except IntegrityError:
        db.rollback()
        ack = db.query(RemittanceAcknowledgement).filter_by(remittance_id=record.id).first()
        if ack is None:
            raise
        return ack
    except Exception:
        db.rollback()
        raise
    return ack


def list_settlements(db, organization_id: str):
    return (
        db.query(RemittanceRecord)
        .join(Order, Order.id == RemittanceRecord.order_id)
        .filter(Order.organization_id == organization_id)
        .order_by(RemittanceRecord.settlement_date.desc(), RemittanceRecord.created_at.desc())
        .all()
    )
