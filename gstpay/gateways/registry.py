"""Method -> provider routing and gateway construction."""

from gstpay.common.config import CommonSettings
from gstpay.gateways.base import PaymentGateway
from gstpay.gateways.cod import CashOnDeliveryGateway
from gstpay.gateways.razorpay import RazorpayGateway

PAYMENT_METHODS = ("upi", "card", "netbanking", "wallet", "cash_on_delivery")
COD_METHOD = "cash_on_delivery"
COD_PROVIDER = "cod"

METHOD_LABELS = {
    "upi": "UPI",
    "card": "Credit / Debit Card",
    "netbanking": "Net Banking",
    "wallet": "Wallet",
    "cash_on_delivery": "Cash on Delivery",
}


def provider_for_method(method: str, primary_gateway: str) -> str:
    """Cash on delivery settles locally; every other rail goes to the primary gateway."""

    if method not in PAYMENT_METHODS:
        raise ValueError(f"unsupported payment method: {method}")
    if method == COD_METHOD:
        return COD_PROVIDER
    return primary_gateway


def build_gateways(config: CommonSettings) -> dict[str, PaymentGateway]:
    """Instantiate one gateway per provider the configuration can route to."""

    gateways: dict[str, PaymentGateway] = {COD_PROVIDER: CashOnDeliveryGateway()}
    if config.primary_gateway == "razorpay":
        gateways["razorpay"] = RazorpayGateway(
            key_id=config.razorpay_key_id,
            key_secret=config.razorpay_key_secret,
            base_url=config.razorpay_base_url,
            timeout_seconds=config.gateway_timeout_seconds,
        )
    if config.primary_gateway not in gateways:
        raise ValueError(f"no gateway implementation for provider {config.primary_gateway!r}")
    return gateways
