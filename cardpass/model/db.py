from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class ActivationCode(Base):
    __tablename__ = "activation_codes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=False, unique=True)

    # available | sold | activated | expired
    status = Column(String, nullable=False, default="available")
    plan = Column(String, nullable=False, default="basic")
    amount_cents = Column(Integer, nullable=True)

    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    # at most one code per payment
    payment_id = Column(String, nullable=True, unique=True)
    notes = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    sold_at = Column(Float, nullable=True)
    activated_at = Column(Float, nullable=True)
    expired_at = Column(Float, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    payment_id = Column(String, primary_key=True)

    # pending | processing | paid | failed | refunded | cancelled
    status = Column(String, nullable=False, default="pending")
    plan = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="brl")
    payment_method = Column(String, nullable=False)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)
    customer_document = Column(String, nullable=True)

    gateway = Column(String, nullable=False, default="mockpay")
    gateway_response = Column(Text, nullable=True)  # JSON, opaque
    pix_code = Column(String, nullable=True)
    expires_at = Column(Float, nullable=True)

    activation_code = Column(String, nullable=True, unique=True)
    artifact_id = Column(String, nullable=True, unique=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)
    artifact_linked_at = Column(Float, nullable=True)


class Card(Base):
    __tablename__ = "cards"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    slug = Column(String, nullable=False, unique=True)
    # at most one card per activation code
    activation_code = Column(String, nullable=True, unique=True)
    payment_id = Column(String, nullable=True)
    plan = Column(String, nullable=False)

    owner_name = Column(String, nullable=False)
    owner_email = Column(String, nullable=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    whatsapp = Column(String, nullable=True)
    job_title = Column(String, nullable=True)
    company = Column(String, nullable=True)
    website = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    color_theme = Column(String, nullable=False, default="blue")

    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    payment_id = Column(String, nullable=True)
    reported_status = Column(String, nullable=True)
    payload = Column(Text, nullable=False)
    received_at = Column(Float, nullable=False)

    # received | applied | duplicate | ignored | flagged
    outcome = Column(String, nullable=False, default="received")
    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(String, nullable=True)
    processed_at = Column(Float, nullable=True)


Index("idx_codes_status", ActivationCode.status)
Index("idx_payments_created_at", Payment.created_at)
Index("idx_webhook_events_review", WebhookEvent.needs_review)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
