"""API request/response schemas for payment, order and webhook endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from gstpay.common.tax import to_rupees

PaymentMethod = Literal["upi", "card", "netbanking", "wallet", "cash_on_delivery"]

INDIAN_MOBILE = r"^(\+91[\-\s]?)?[6-9]\d{9}$"
GSTIN = r"^\d{2}[A-Z]{5}\d{4}[A-Z][1-9A-Z]Z[0-9A-Z]$"


class Address(BaseModel):
    name: str | None = None
    street: str | None = None
    city: str | None = None
    state: str = Field(min_length=1)
    pincode: str | None = Field(default=None, pattern=r"^\d{6}$")
    country: str = "India"
    phone: str | None = None
    landmark: str | None = None


class LineItem(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    unit_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    quantity: int = Field(gt=0, le=10000)


class PaymentCreateRequest(BaseModel):
    """Payment creation payload. Tax fields are computed, never accepted."""

    order_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = "INR"
    payment_method: PaymentMethod
    customer_phone: str = Field(pattern=INDIAN_MOBILE)
    customer_email: str | None = None
    customer_name: str | None = None
    billing_address: Address
    shipping_address: Address
    items: list[LineItem] | None = None
    gst_number: str | None = Field(default=None, pattern=GSTIN)
    gst_rate: Decimal | None = Field(default=None, ge=0, le=100, decimal_places=2)


class PaymentConfirmRequest(BaseModel):
    """Provider proof returned by checkout. Empty for cash on delivery."""

    gateway_payment_id: str | None = None
    gateway_signature: str | None = None


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    reason: str | None = None


class OrderCreateRequest(BaseModel):
    order_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    items: list[LineItem] = Field(min_length=1)
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod | None = None
    gst_number: str | None = Field(default=None, pattern=GSTIN)
    gst_rate: Decimal | None = Field(default=None, ge=0, le=100, decimal_places=2)


class GstDetails(BaseModel):
    gst_rate: Decimal
    inter_state: bool
    taxable_amount: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    total_gst: Decimal


class RefundDetails(BaseModel):
    refund_id: str | None
    refund_amount: Decimal | None
    refund_reason: str | None
    refunded_at: datetime | None
    refund_status: str | None


class PaymentResponse(BaseModel):
    """Read-only projection of a payment record."""

    payment_id: str
    order_id: str
    amount: Decimal
    currency: str
    payment_method: str
    payment_provider: str
    status: str
    gst_details: GstDetails
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    refund_details: RefundDetails | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    data_retention_until: datetime | None = None

    @classmethod
    def from_model(cls, payment) -> "PaymentResponse":
        refund = None
        if payment.refund_status is not None:
            refund = RefundDetails(
                refund_id=payment.refund_id,
                refund_amount=to_rupees(payment.refund_amount_paise) if payment.refund_amount_paise else None,
                refund_reason=payment.refund_reason,
                refunded_at=payment.refunded_at,
                refund_status=payment.refund_status,
            )
        return cls(
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            amount=to_rupees(payment.amount_paise),
            currency=payment.currency,
            payment_method=payment.payment_method,
            payment_provider=payment.payment_provider,
            status=payment.status,
            gst_details=GstDetails(
                gst_rate=payment.gst_rate,
                inter_state=payment.inter_state,
                taxable_amount=to_rupees(payment.taxable_amount_paise),
                cgst=to_rupees(payment.cgst_paise),
                sgst=to_rupees(payment.sgst_paise),
                igst=to_rupees(payment.igst_paise),
                total_gst=to_rupees(payment.total_gst_paise),
            ),
            gateway_order_id=payment.gateway_order_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_details=refund,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            data_retention_until=payment.data_retention_until,
        )


class PaymentCreatedResponse(PaymentResponse):
    """Creation response carrying the checkout metadata the client needs."""

    checkout: dict[str, Any] = Field(default_factory=dict)


class OrderResponse(BaseModel):
    order_id: str
    user_id: str
    items: list[dict[str, Any]]
    subtotal: Decimal
    gst_amount: Decimal
    total_amount: Decimal
    gst_details: GstDetails
    status: str
    payment_status: str
    data_retention_until: datetime | None = None

    @classmethod
    def from_model(cls, order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            items=order.items or [],
            subtotal=to_rupees(order.subtotal_paise),
            gst_amount=to_rupees(order.gst_amount_paise),
            total_amount=to_rupees(order.total_amount_paise),
            gst_details=GstDetails(
                gst_rate=order.gst_rate,
                inter_state=order.inter_state,
                taxable_amount=to_rupees(order.subtotal_paise),
                cgst=to_rupees(order.cgst_paise),
                sgst=to_rupees(order.sgst_paise),
                igst=to_rupees(order.igst_paise),
                total_gst=to_rupees(order.gst_amount_paise),
            ),
            status=order.status,
            payment_status=order.payment_status,
            data_retention_until=order.data_retention_until,
        )


class UnsyncedOrder(BaseModel):
    payment_id: str
    order_id: str
    payment_status: str
    expected_order_payment_status: str
    order_payment_status: str | None


class WebhookEnvelope(BaseModel):
    """Gateway notification envelope; only `event` and `payload` drive state."""

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
