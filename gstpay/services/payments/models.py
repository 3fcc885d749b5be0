"""Payment service database models.

This DB is the source of truth for payment and order state, the transition
timeline, and the webhook inbox used to deduplicate gateway notifications.
Money columns hold integer paise; GST rates hold basis points.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from gstpay.common.db import Base, JsonColumn
from gstpay.common.tax import bps_to_rate


class Payment(Base):
    """One payment per order, with its gross-up GST breakdown."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    amount_paise: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    payment_method: Mapped[str] = mapped_column(String)
    payment_provider: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    gst_rate_bps: Mapped[int] = mapped_column(Integer, default=1800)
    gst_number: Mapped[str | None] = mapped_column(String, nullable=True)
    inter_state: Mapped[bool] = mapped_column(Boolean, default=False)
    billing_state: Mapped[str] = mapped_column(String)
    shipping_state: Mapped[str] = mapped_column(String)
    taxable_amount_paise: Mapped[int] = mapped_column(BigInteger)
    cgst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    sgst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    igst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    total_gst_paise: Mapped[int] = mapped_column(BigInteger, default=0)

    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_address: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    gateway_order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    instrument_details: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    refund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    refund_amount_paise: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    data_retention_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def gst_rate(self) -> Decimal:
        return bps_to_rate(self.gst_rate_bps)


class Order(Base):
    """Order paired 1:1 with a payment by `order_id`, with its add-on GST breakdown."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    items: Mapped[list] = mapped_column(JsonColumn, default=list)
    shipping_address: Mapped[dict] = mapped_column(JsonColumn)
    billing_address: Mapped[dict] = mapped_column(JsonColumn)
    shipping_state: Mapped[str] = mapped_column(String)
    billing_state: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    subtotal_paise: Mapped[int] = mapped_column(BigInteger)
    gst_rate_bps: Mapped[int] = mapped_column(Integer, default=1800)
    gst_amount_paise: Mapped[int] = mapped_column(BigInteger)
    total_amount_paise: Mapped[int] = mapped_column(BigInteger)
    inter_state: Mapped[bool] = mapped_column(Boolean, default=False)
    cgst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    sgst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    igst_paise: Mapped[int] = mapped_column(BigInteger, default=0)
    gst_number: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    payment_status: Mapped[str] = mapped_column(String, index=True, default="pending")
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    data_retention_until: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @property
    def gst_rate(self) -> Decimal:
        return bps_to_rate(self.gst_rate_bps)


class PaymentTimeline(Base):
    """Immutable audit trail of every payment state transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookEvent(Base):
    """Deduplication table for gateway notifications already applied."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
