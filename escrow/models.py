import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from escrow.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class OrderStatus:
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"
    CANCELLED = "cancelled"

    ALL = (PENDING, PARTIALLY_PAID, FULLY_PAID, CANCELLED)


class DeliveryMode:
    PICKUP_CENTER = "pickup_center"
    SHIPPING = "shipping"
    ORGANIZATION_LOCATION = "organization_location"

    ALL = (PICKUP_CENTER, SHIPPING, ORGANIZATION_LOCATION)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    product_id = Column(String, nullable=False, index=True)
    organization_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)

    product_name = Column(String)
    organization_name = Column(String)
    customer_name = Column(String)
    customer_email = Column(String)

    product_price = Column(Integer, nullable=False)            # minor units
    currency = Column(String(3), nullable=False)
    upfront_payment_percentage = Column(Integer, nullable=False, default=50)
    payment_type = Column(String, nullable=False)              # full | upfront | remaining
    total_amount_paid = Column(Integer, nullable=False, default=0)
    order_status = Column(String, nullable=False, default=OrderStatus.PENDING, index=True)
    organization_bank_details = Column(JSON)                   # snapshot taken at remittance
    idempotency_key = Column(String, unique=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    sub_service_charges = relationship(
        "SubServiceCharge",
        order_by="SubServiceCharge.position",
        cascade="all, delete-orphan",
    )
    payment_intents = relationship("PaymentIntent", back_populates="order")
    delivery_confirmation = relationship("DeliveryConfirmation", uselist=False, back_populates="order")
    remittance = relationship("RemittanceRecord", uselist=False, back_populates="order")

    __mapper_args__ = {"version_id_col": version}

    @property
    def sub_service_total(self) -> int:
        return sum(charge.price for charge in self.sub_service_charges)

    @property
    def required_amount(self) -> int:
        return self.product_price + self.sub_service_total

    @property
    def upfront_remaining_balance(self) -> int:
        if self.payment_type == "upfront" and self.order_status == OrderStatus.PARTIALLY_PAID:
            return self.required_amount - self.total_amount_paid
        return 0


class SubServiceCharge(Base):
    __tablename__ = "sub_service_charges"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    code = Column(String, nullable=False)
    price = Column(Integer, nullable=False)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)                      # Stripe PaymentIntent ID
    reference = Column(String, unique=True, index=True)        # "<order id>:<payment type>"
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    payment_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    client_secret = Column(String)
    status = Column(String, nullable=False)                    # created | succeeded | refunded | cancelled
    created_at = Column(DateTime, nullable=False, default=utcnow)
    confirmed_at = Column(DateTime)

    order = relationship("Order", back_populates="payment_intents")


class DeliveryConfirmation(Base):
    __tablename__ = "delivery_confirmations"

    id = Column(String(32), primary_key=True, default=new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), unique=True, nullable=False)
    delivery_mode = Column(String, nullable=False)
    delivery_address = Column(Text)
    pickup_center_name = Column(String)

    product_image = Column(String)
    representative_image = Column(String)
    user_image = Column(String)
    image_comment = Column(Text)
    video_url = Column(String)

    satisfaction_declaration = Column(Text, nullable=False)
    confirmed_by = Column(String)
    request_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="delivery_confirmation")


class RemittanceRecord(Base):
    __tablename__ = "remittance_records"

    id = Column(String(32), primary_key=True, default=new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), unique=True, nullable=False)

    organization_bank_name = Column(String, nullable=False)
    organization_account_number = Column(String, nullable=False)
    organization_account_name = Column(String, nullable=False)

    amount_remitted = Column(Integer, nullable=False)
    settlement_date = Column(Date, nullable=False)
    super_admin_bank_name = Column(String, nullable=False)
    super_admin_account_number = Column(String, nullable=False)
    payment_evidence_url = Column(String, nullable=False)

    processed_by = Column(String)
    request_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="remittance")
    acknowledgement = relationship("RemittanceAcknowledgement", uselist=False, back_populates="remittance")

    @property
    def remittance_status(self) -> str:
        return "confirmed" if self.acknowledgement is not None else "pending"


class RemittanceAcknowledgement(Base):
    __tablename__ = "remittance_acknowledgements"

    id = Column(Integer, primary_key=True)
    remittance_id = Column(String(32), ForeignKey("remittance_records.id"), unique=True, nullable=False)
    comment = Column(Text)
    acknowledged_by = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    remittance = relationship("RemittanceRecord", back_populates="acknowledgement")


class OrganizationBankProfile(Base):
    __tablename__ = "organization_bank_profiles"

    organization_id = Column(String, primary_key=True)
    bank_name = Column(String, nullable=False)
    account_number = Column(String, nullable=False)
    account_name = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def snapshot(self) -> dict:
        return {
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "account_name": self.account_name,
        }


class OrderEvent(Base):
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(80), nullable=False, index=True)
    order_id = Column(String(32), index=True)
    customer_id = Column(String)
    organization_id = Column(String)
    payload_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    delivered_at = Column(DateTime, index=True)
    attempts = Column(Integer, nullable=False, default=0)

    def payload(self) -> dict:
        return json.loads(self.payload_json or "{}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "organization_id": self.organization_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "payload": self.payload(),
        }
