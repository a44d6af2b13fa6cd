from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from escrow import bank_profiles, delivery, orders, payments, remittance
from escrow.auth import (
    ensure_customer_access,
    ensure_order_access,
    ensure_organization_access,
    listing_scope,
    require_operator,
    verify_token,
)
from escrow.database import SessionLocal
from escrow.events import dispatch_in_background
from escrow.schemas import (
    AcknowledgementRequest,
    BankDetailsIn,
    BankDetailsOut,
    CancelRequest,
    DeliveryConfirmationOut,
    DeliveryConfirmationRequest,
    NewOrderPaymentRequest,
    OrderOut,
    OrderPage,
    PaymentInitiationOut,
    PaymentRequest,
    PaymentVerificationOut,
    RemittanceOut,
    RemittanceRequest,
)

router = APIRouter()


def _charges(items):
    if items is None:
        return None
    return [item.model_dump() for item in items]


@router.post("/orders/payments", response_model=PaymentInitiationOut)
def initiate_new_order_payment(
    request: NewOrderPaymentRequest,
    background_tasks: BackgroundTasks,
    claims=Depends(verify_token)
):
    ensure_customer_access(claims, request.customer_id)
    context = payments.OrderContext(
        **request.model_dump(exclude={"payment_type", "sub_service_charges"})
    )
    db = SessionLocal()
    try:
        result = payments.initiate_payment(
            db, context, request.payment_type, _charges(request.sub_service_charges)
        )
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return asdict(result)


@router.post("/orders/{order_id}/payments", response_model=PaymentInitiationOut)
def initiate_order_payment(
    order_id: str,
    request: PaymentRequest,
    claims=Depends(verify_token)
):
    db = SessionLocal()
    try:
        ensure_customer_access(claims, orders.get_order(db, order_id).customer_id)
        result = payments.initiate_payment(
            db,
            payments.OrderContext(order_id=order_id),
            request.payment_type,
            _charges(request.sub_service_charges),
        )
    finally:
        db.close()
    return asdict(result)


@router.get("/payments/{reference}", response_model=PaymentVerificationOut)
def verify_payment(reference: str, background_tasks: BackgroundTasks, claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        ensure_order_access(claims, payments.get_intent(db, reference).order)
        result = payments.verify_payment(db, reference)
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return asdict(result)


@router.get("/orders", response_model=OrderPage)
def list_orders(
    status: Optional[str] = None,
    organization_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    claims=Depends(verify_token)
):
    filters = {"organization_id": organization_id, "customer_id": customer_id}
    filters.update(listing_scope(claims))
    db = SessionLocal()
    try:
        items, total = orders.list_orders(
            db, status=status, search=search, page=page, limit=limit, **filters
        )
        return {
            "orders": [OrderOut.model_validate(o) for o in items],
            "total": total,
            "page": page,
            "limit": limit,
        }
    finally:
        db.close()


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        order = orders.get_order(db, order_id)
        ensure_order_access(claims, order)
        return OrderOut.model_validate(order)
    finally:
        db.close()


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: str,
    request: CancelRequest,
    background_tasks: BackgroundTasks,
    claims=Depends(verify_token)
):
    db = SessionLocal()
    try:
        ensure_order_access(claims, orders.get_order(db, order_id))
        order = orders.cancel_order(db, order_id, reason=request.reason, cancelled_by=claims.get("sub"))
        result = OrderOut.model_validate(order)
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return result


@router.post("/orders/{order_id}/reminders")
def send_reminder(order_id: str, background_tasks: BackgroundTasks, claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        ensure_organization_access(claims, orders.get_order(db, order_id).organization_id)
        event = orders.send_payment_reminder(db, order_id, requested_by=claims.get("sub"))
        result = {"status": "queued", "event_id": event.id}
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return result


@router.get("/orders/{order_id}/delivery-template")
def get_delivery_template(order_id: str, claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        ensure_customer_access(claims, orders.get_order(db, order_id).customer_id)
        return {"template": delivery.delivery_template(db, order_id)}
    finally:
        db.close()


@router.post("/orders/{order_id}/delivery-confirmation", response_model=DeliveryConfirmationOut)
def confirm_delivery(
    order_id: str,
    request: DeliveryConfirmationRequest,
    background_tasks: BackgroundTasks,
    claims=Depends(verify_token)
):
    db = SessionLocal()
    try:
        # only the customer can release the escrow, never the seller
        ensure_customer_access(claims, orders.get_order(db, order_id).customer_id)
        record = delivery.confirm_delivery(
            db,
            order_id,
            request.delivery_mode,
            delivery_address=request.delivery_address,
            pickup_center_name=request.pickup_center_name,
            evidence=request.evidence.model_dump(),
            satisfaction_declaration=request.satisfaction_declaration,
            confirmed_by=claims.get("sub"),
        )
        result = DeliveryConfirmationOut.model_validate(record)
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return result


@router.get("/deliveries", response_model=list[DeliveryConfirmationOut])
def list_deliveries(organization_id: Optional[str] = None, claims=Depends(verify_token)):
    filters = {"organization_id": organization_id}
    filters.update(listing_scope(claims))
    db = SessionLocal()
    try:
        records = delivery.list_confirmed_deliveries(db, **filters)
        return [DeliveryConfirmationOut.model_validate(r) for r in records]
    finally:
        db.close()


@router.post("/orders/{order_id}/remittance", response_model=RemittanceOut)
def process_remittance(
    order_id: str,
    request: RemittanceRequest,
    background_tasks: BackgroundTasks,
    claims=Depends(require_operator)
):
    db = SessionLocal()
    try:
        record = remittance.process_remittance(
            db,
            order_id,
            request.amount_remitted,
            request.settlement_date,
            request.operator_bank_name,
            request.operator_account_number,
            request.evidence_url,
            processed_by=claims.get("sub"),
        )
        result = RemittanceOut.model_validate(record)
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return result


@router.post("/orders/{order_id}/remittance/acknowledgement", response_model=RemittanceOut)
def acknowledge_remittance(
    order_id: str,
    request: AcknowledgementRequest,
    background_tasks: BackgroundTasks,
    claims=Depends(verify_token)
):
    db = SessionLocal()
    try:
        record = remittance.get_remittance(db, order_id)
        ensure_organization_access(claims, record.order.organization_id)
        remittance.acknowledge_remittance(
            db, order_id, comment=request.comment, acknowledged_by=claims.get("sub")
        )
        result = RemittanceOut.model_validate(remittance.get_remittance(db, order_id))
    finally:
        db.close()
    background_tasks.add_task(dispatch_in_background)
    return result


@router.get("/organizations/{organization_id}/settlements", response_model=list[RemittanceOut])
def list_settlements(organization_id: str, claims=Depends(verify_token)):
    ensure_organization_access(claims, organization_id)
    db = SessionLocal()
    try:
        records = remittance.list_settlements(db, organization_id)
        return [RemittanceOut.model_validate(r) for r in records]
    finally:
        db.close()


@router.put("/organizations/{organization_id}/bank-details", response_model=BankDetailsOut)
def save_bank_details(organization_id: str, request: BankDetailsIn, claims=Depends(verify_token)):
    ensure_organization_access(claims, organization_id)
    db = SessionLocal()
    try:
        profile = bank_profiles.upsert_bank_profile(
            db, organization_id, request.bank_name, request.account_number, request.account_name
        )
        return BankDetailsOut.model_validate(profile)
    finally:
        db.close()


@router.get("/organizations/{organization_id}/bank-details", response_model=BankDetailsOut)
def get_bank_details(organization_id: str, claims=Depends(verify_token)):
    ensure_organization_access(claims, organization_id)
    db = SessionLocal()
    try:
        return BankDetailsOut.model_validate(bank_profiles.get_bank_profile(db, organization_id))
    finally:
        db.close()
