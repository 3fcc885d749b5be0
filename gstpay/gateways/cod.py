"""Cash on delivery: no provider, collection is confirmed on delivery."""

from typing import Any
from uuid import uuid4

from gstpay.gateways.base import GatewayOrder, GatewayRefund, Verification


class CashOnDeliveryGateway:
    provider = "cod"

    async def initiate(
        self, amount_paise: int, currency: str, order_id: str, customer: dict[str, Any]
    ) -> GatewayOrder:
        return GatewayOrder(correlation_id=None, metadata={"message": "Order created for cash on delivery"})

    async def verify(self, correlation_id: str | None, proof: dict[str, Any]) -> Verification:
        # Delivery confirmation is the proof.
        return Verification(verified=True)

    async def refund(self, payment_correlation_id: str | None, amount_paise: int, reason: str | None) -> GatewayRefund:
        # Cash refunds are settled offline; record a local reference.
        return GatewayRefund(refund_id=f"cod_rfnd_{uuid4().hex[:14]}", status="processed")

    async def close(self) -> None:
        return None
