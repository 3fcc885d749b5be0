"""Shared fixtures: a throwaway SQLite database and a scripted gateway."""

import asyncio
import os
import tempfile
from decimal import Decimal

# Settings are read at import time; point them at disposable local resources.
_TMP = tempfile.mkdtemp(prefix="gstpay-tests-")
os.environ.setdefault("POSTGRES_DSN", f"sqlite:///{_TMP}/default.db")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gstpay.common.config import CommonSettings
from gstpay.common.db import Base
from gstpay.gateways.base import GatewayOrder, GatewayRefund, Verification
from gstpay.gateways.cod import CashOnDeliveryGateway
from gstpay.services.payments import models  # noqa: F401  registers tables on Base
from gstpay.services.payments.schemas import Address, LineItem, OrderCreateRequest, PaymentCreateRequest
from gstpay.services.payments.service import PaymentService
from gstpay.services.payments.webhooks import WebhookReconciler

WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    """Scripted stand-in for a remote provider."""

    provider = "razorpay"

    def __init__(self) -> None:
        self.delay = 0.0
        self.initiate_error: Exception | None = None
        self.verification = Verification(verified=True)
        self.refund_error: Exception | None = None
        self.calls: list[tuple] = []
        self._seq = 0

    async def initiate(self, amount_paise, currency, order_id, customer):
        self.calls.append(("initiate", order_id, amount_paise))
        await asyncio.sleep(self.delay)
        if self.initiate_error is not None:
            raise self.initiate_error
        self._seq += 1
        gateway_order_id = f"order_fake_{self._seq}"
        return GatewayOrder(correlation_id=gateway_order_id, metadata={"gateway_order_id": gateway_order_id})

    async def verify(self, correlation_id, proof):
        self.calls.append(("verify", correlation_id))
        await asyncio.sleep(self.delay)
        return self.verification

    async def refund(self, payment_correlation_id, amount_paise, reason):
        self.calls.append(("refund", payment_correlation_id, amount_paise))
        await asyncio.sleep(self.delay)
        if self.refund_error is not None:
            raise self.refund_error
        return GatewayRefund(refund_id=f"rfnd_fake_{len(self.calls)}")

    async def close(self) -> None:
        return None


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def config():
    return CommonSettings(
        _env_file=None,
        postgres_dsn="sqlite://",
        api_key="test-api-key",
        otel_enabled=False,
        webhook_secret=WEBHOOK_SECRET,
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        gateway_timeout_seconds=0.5,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(session_factory, config, gateway):
    return PaymentService(session_factory, config, {"razorpay": gateway, "cod": CashOnDeliveryGateway()})


@pytest.fixture
def reconciler(service, config):
    return WebhookReconciler(service, config)


def make_payment_request(**overrides) -> PaymentCreateRequest:
    """Intra-state UPI payment of Rs 1180.00 unless overridden."""

    billing_state = overrides.pop("billing_state", "Maharashtra")
    shipping_state = overrides.pop("shipping_state", "Maharashtra")
    data = {
        "order_id": "ORD-1001",
        "user_id": "user-1",
        "amount": Decimal("1180.00"),
        "payment_method": "upi",
        "customer_phone": "9876543210",
        "customer_name": "Asha Rao",
        "billing_address": Address(state=billing_state, city="Pune", pincode="411001"),
        "shipping_address": Address(state=shipping_state, city="Pune", pincode="411001"),
    }
    data.update(overrides)
    return PaymentCreateRequest(**data)


def make_items() -> list[LineItem]:
    return [
        LineItem(name="Kurta", sku="KRT-1", unit_price=Decimal("400.00"), quantity=2),
        LineItem(name="Dupatta", sku="DPT-1", unit_price=Decimal("200.00"), quantity=1),
    ]


def make_order_request(**overrides) -> OrderCreateRequest:
    billing_state = overrides.pop("billing_state", "Maharashtra")
    shipping_state = overrides.pop("shipping_state", "Maharashtra")
    data = {
        "order_id": "ORD-1001",
        "user_id": "user-1",
        "items": make_items(),
        "billing_address": Address(state=billing_state, city="Pune"),
        "shipping_address": Address(state=shipping_state, city="Pune"),
        "payment_method": "upi",
    }
    data.update(overrides)
    return OrderCreateRequest(**data)


def create(service: PaymentService, **overrides):
    payment, _ = asyncio.run(service.create_payment(make_payment_request(**overrides)))
    return payment
