from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow.calculator import PaymentType
from escrow.models import DeliveryMode


class SubServiceChargeIn(BaseModel):
    code: str = Field(min_length=1)
    price: int = Field(ge=0)


class NewOrderPaymentRequest(BaseModel):
    product_id: str
    organization_id: str
    customer_id: str
    product_price: int = Field(ge=0)
    upfront_payment_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    payment_type: PaymentType = PaymentType.FULL
    sub_service_charges: List[SubServiceChargeIn] = []
    currency: Optional[str] = None
    product_name: Optional[str] = None
    organization_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    idempotency_key: Optional[str] = None


class PaymentRequest(BaseModel):
    payment_type: PaymentType
    sub_service_charges: Optional[List[SubServiceChargeIn]] = None


class PaymentInitiationOut(BaseModel):
    order_id: str
    amount_due: int
    payment_reference: str
    client_secret: Optional[str] = None
    payment_type: str


class PaymentVerificationOut(BaseModel):
    payment_reference: str
    status: str
    amount: int
    order_id: str
    order_status: str
    total_amount_paid: int


class SubServiceChargeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    price: int


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    organization_id: str
    customer_id: str
    product_name: Optional[str] = None
    organization_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    product_price: int
    currency: str
    upfront_payment_percentage: int
    sub_service_charges: List[SubServiceChargeOut]
    payment_type: str
    total_amount_paid: int
    required_amount: int
    upfront_remaining_balance: int
    order_status: str
    organization_bank_details: Optional[dict] = None
    created_at: datetime
    updated_at: datetime


class OrderPage(BaseModel):
    orders: List[OrderOut]
    total: int
    page: int
    limit: int


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class DeliveryEvidence(BaseModel):
    product_image: Optional[str] = None
    representative_image: Optional[str] = None
    user_image: Optional[str] = None
    image_comment: Optional[str] = None
    video_url: Optional[str] = None


class DeliveryConfirmationRequest(BaseModel):
    delivery_mode: str
    delivery_address: Optional[str] = None
    pickup_center_name: Optional[str] = None
    evidence: DeliveryEvidence = DeliveryEvidence()
    satisfaction_declaration: str

    @field_validator("delivery_mode")
    @classmethod
    def known_mode(cls, value):
        if value not in DeliveryMode.ALL:
            raise ValueError(f"delivery_mode must be one of {', '.join(DeliveryMode.ALL)}")
        return value


class DeliveryConfirmationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    delivery_mode: str
    delivery_address: Optional[str] = None
    pickup_center_name: Optional[str] = None
    product_image: Optional[str] = None
    representative_image: Optional[str] = None
    user_image: Optional[str] = None
    image_comment: Optional[str] = None
    video_url: Optional[str] = None
    satisfaction_declaration: str
    confirmed_by: Optional[str] = None
    created_at: datetime


class RemittanceRequest(BaseModel):
    amount_remitted: int
    settlement_date: date
    operator_bank_name: str
    operator_account_number: str
    evidence_url: str


class RemittanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    organization_bank_name: str
    organization_account_number: str
    organization_account_name: str
    amount_remitted: int
    settlement_date: date
    super_admin_bank_name: str
    super_admin_account_number: str
    payment_evidence_url: str
    processed_by: Optional[str] = None
    remittance_status: str
    created_at: datetime


class AcknowledgementRequest(BaseModel):
    comment: Optional[str] = None


class BankDetailsIn(BaseModel):
    bank_name: str = Field(min_length=1)
    account_number: str = Field(min_length=10, pattern=r"^\d+$")
    account_name: str = Field(min_length=1)


class BankDetailsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    organization_id: str
    bank_name: str
    account_number: str
    account_name: str
    updated_at: datetime
