"""Razorpay integration over its REST API."""

from typing import Any

import httpx

from gstpay.common.errors import GatewayError, GatewayTimeout
from gstpay.common.logging import logger
from gstpay.common.signing import signature_matches
from gstpay.gateways.base import GatewayOrder, GatewayRefund, Verification


class RazorpayGateway:
    """Creates Razorpay orders, checks checkout signatures and issues refunds.

    Checkout signatures are `HMAC-SHA256(key_secret, "<order_id>|<payment_id>")`
    and are checked locally, so `verify` never goes to the network.
    """

    provider = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, json=body)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"razorpay timed out on {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"razorpay unreachable: {exc}") from exc
        if resp.status_code >= 400:
            description = resp.text
            try:
                description = resp.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            logger.warning("razorpay_rejected path=%s status=%s", path, resp.status_code)
            raise GatewayError(f"razorpay rejected {path}: {description}")
        return resp.json()

    async def initiate(
        self, amount_paise: int, currency: str, order_id: str, customer: dict[str, Any]
    ) -> GatewayOrder:
        notes = {k: v for k, v in customer.items() if v}
        data = await self._post(
            "/orders",
            {"amount": amount_paise, "currency": currency, "receipt": order_id, "notes": notes},
        )
        gateway_order_id = data.get("id")
        if not gateway_order_id:
            raise GatewayError("razorpay order response missing id")
        return GatewayOrder(
            correlation_id=gateway_order_id,
            metadata={"key": self.key_id, "gateway_order_id": gateway_order_id},
        )

    async def verify(self, correlation_id: str | None, proof: dict[str, Any]) -> Verification:
        payment_id = proof.get("gateway_payment_id")
        signature = proof.get("gateway_signature")
        if not correlation_id or not payment_id or not signature:
            return Verification(verified=False, reason="missing payment id or signature")
        message = f"{correlation_id}|{payment_id}".encode("utf-8")
        if not signature_matches(self.key_secret, message, signature):
            return Verification(verified=False, reason="signature mismatch")
        return Verification(verified=True)

    async def refund(self, payment_correlation_id: str | None, amount_paise: int, reason: str | None) -> GatewayRefund:
        if not payment_correlation_id:
            raise GatewayError("payment has no razorpay payment id to refund")
        data = await self._post(
            f"/payments/{payment_correlation_id}/refund",
            {"amount": amount_paise, "notes": {"reason": reason or ""}},
        )
        refund_id = data.get("id")
        if not refund_id:
            raise GatewayError("razorpay refund response missing id")
        return GatewayRefund(refund_id=refund_id, status=data.get("status", "processed"))

    async def close(self) -> None:
        await self._client.aclose()
