"""HTTP surface for payments, orders, reconciliation and gateway webhooks."""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from gstpay.common.config import settings
from gstpay.common.db import SessionLocal
from gstpay.common.errors import PaymentError
from gstpay.common.logging import configure_logging, logger, order_id_ctx, payment_id_ctx, trace_id_ctx
from gstpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    payment_latency_seconds,
    payment_requests_total,
)
from gstpay.common.rate_limit import TokenBucketLimiter
from gstpay.common.startup import log_startup_config
from gstpay.common.tracing import instrument_app, setup_tracing
from gstpay.gateways.registry import build_gateways
from gstpay.services.payments.schemas import (
    OrderCreateRequest,
    OrderResponse,
    PaymentConfirmRequest,
    PaymentCreatedResponse,
    PaymentCreateRequest,
    PaymentResponse,
    RefundRequest,
    UnsyncedOrder,
)
from gstpay.services.payments.service import PaymentService
from gstpay.services.payments.webhooks import WebhookReconciler

configure_logging()
setup_tracing(settings)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "PRIMARY_GATEWAY",
        "RAZORPAY_KEY_ID",
        "WEBHOOK_SECRET",
        "WEBHOOK_INSECURE_MODE",
        "GATEWAY_TIMEOUT_SECONDS",
    ],
)
service = PaymentService(SessionLocal, settings, build_gateways(settings))
reconciler = WebhookReconciler(service, settings)
limiter = TokenBucketLimiter.from_url(settings.redis_url, settings.rate_limit_per_minute)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close gateway HTTP clients on shutdown."""

    yield
    for gateway in service.gateways.values():
        await gateway.close()


app = FastAPI(title="GST Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_token = trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        trace_id_ctx.reset(trace_token)
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(PaymentError)
async def payment_error_handler(_: Request, exc: PaymentError):
    """Map the payment error taxonomy onto HTTP responses."""

    if exc.status_code >= 500:
        logger.error("payment_error code=%s detail=%s", exc.code, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})


def get_payment_service() -> PaymentService:
    return service


def get_reconciler() -> WebhookReconciler:
    return reconciler


def get_rate_limiter() -> TokenBucketLimiter:
    return limiter


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.get("/payments/methods")
def payment_methods(payments: PaymentService = Depends(get_payment_service)):
    """Supported payment methods and the provider each one routes to."""

    return {"methods": payments.list_supported_methods(), "country": "India", "currency": settings.currency}


@app.post(
    "/payments",
    response_model=PaymentCreatedResponse,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
async def create_payment(
    req: PaymentCreateRequest,
    payments: PaymentService = Depends(get_payment_service),
    rate_limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    """Create a `pending` payment for an order and return checkout metadata."""

    rate_limiter.consume(req.user_id)
    order_id_ctx.set(req.order_id)
    payment_requests_total.labels(service=settings.service_name).inc()
    with payment_latency_seconds.labels(service=settings.service_name).time():
        payment, checkout = await payments.create_payment(req)
    payment_id_ctx.set(payment.payment_id)
    return PaymentCreatedResponse(**PaymentResponse.from_model(payment).model_dump(), checkout=checkout)


@app.post(
    "/payments/{payment_id}/confirm",
    response_model=PaymentResponse,
    dependencies=[Depends(require_api_key)],
)
async def confirm_payment(
    payment_id: str,
    req: PaymentConfirmRequest,
    payments: PaymentService = Depends(get_payment_service),
):
    """Verify checkout proof and complete the payment."""

    payment_id_ctx.set(payment_id)
    payment = await payments.confirm_payment(payment_id, req)
    return PaymentResponse.from_model(payment)


@app.post(
    "/payments/{payment_id}/refund",
    response_model=PaymentResponse,
    dependencies=[Depends(require_api_key)],
)
async def refund_payment(
    payment_id: str,
    req: RefundRequest,
    payments: PaymentService = Depends(get_payment_service),
):
    """Refund a completed payment, in full unless an amount is given."""

    payment_id_ctx.set(payment_id)
    payment = await payments.refund_payment(payment_id, amount=req.amount, reason=req.reason)
    return PaymentResponse.from_model(payment)


@app.get(
    "/payments/by-order/{order_id}",
    response_model=PaymentResponse,
    dependencies=[Depends(require_api_key)],
)
def get_payment_by_order(order_id: str, payments: PaymentService = Depends(get_payment_service)):
    return PaymentResponse.from_model(payments.get_payment_by_order(order_id))


@app.get("/payments/{payment_id}", response_model=PaymentResponse, dependencies=[Depends(require_api_key)])
def get_payment(payment_id: str, payments: PaymentService = Depends(get_payment_service)):
    """Fetch current status and GST breakdown for one payment."""

    return PaymentResponse.from_model(payments.get_payment(payment_id))


@app.post("/orders", response_model=OrderResponse, status_code=201, dependencies=[Depends(require_api_key)])
def create_order(req: OrderCreateRequest, payments: PaymentService = Depends(get_payment_service)):
    order_id_ctx.set(req.order_id)
    return OrderResponse.from_model(payments.create_order(req))


@app.get("/orders/{order_id}", response_model=OrderResponse, dependencies=[Depends(require_api_key)])
def get_order(order_id: str, payments: PaymentService = Depends(get_payment_service)):
    return OrderResponse.from_model(payments.get_order(order_id))


@app.get(
    "/reconciliation/orders",
    response_model=list[UnsyncedOrder],
    dependencies=[Depends(require_api_key)],
)
def unsynced_orders(limit: int = 100, payments: PaymentService = Depends(get_payment_service)):
    """Settled payments whose paired order does not reflect them yet."""

    return payments.find_unsynced_orders(limit)


@app.post("/reconciliation/orders/repair", dependencies=[Depends(require_api_key)])
def repair_all_orders(limit: int = 100, payments: PaymentService = Depends(get_payment_service)):
    return payments.repair_all(limit)


@app.post(
    "/reconciliation/orders/{order_id}/repair",
    response_model=OrderResponse,
    dependencies=[Depends(require_api_key)],
)
def repair_order(order_id: str, payments: PaymentService = Depends(get_payment_service)):
    """Re-apply the payment-driven order update. Safe to retry."""

    order_id_ctx.set(order_id)
    return OrderResponse.from_model(payments.repair_order_sync(order_id))


@app.post("/webhooks/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    webhooks: WebhookReconciler = Depends(get_reconciler),
):
    """Apply a Razorpay notification. The raw body is what gets signed."""

    raw_body = await request.body()
    return await webhooks.handle(raw_body, x_razorpay_signature, x_razorpay_event_id)


@app.get("/webhooks/verify")
def webhook_status():
    """Liveness check gateways can call when registering the webhook URL."""

    return {"ok": True, "providers": [reconciler.provider], "signed": bool(settings.webhook_secret)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
