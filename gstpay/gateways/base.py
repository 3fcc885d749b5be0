"""Contract every payment provider integration implements.

The payment service depends only on this protocol; provider wire formats stay
inside the implementations. Implementations raise `GatewayError` when the
provider rejects a call or cannot be reached.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class GatewayOrder:
    """Provider-side order/intent created for a local payment."""

    correlation_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Verification:
    verified: bool
    reason: str | None = None


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    status: str = "processed"


class PaymentGateway(Protocol):
    provider: str

    async def initiate(
        self, amount_paise: int, currency: str, order_id: str, customer: dict[str, Any]
    ) -> GatewayOrder: ...

    async def verify(self, correlation_id: str | None, proof: dict[str, Any]) -> Verification: ...

    async def refund(self, payment_correlation_id: str | None, amount_paise: int, reason: str | None) -> GatewayRefund: ...

    async def close(self) -> None: ...
