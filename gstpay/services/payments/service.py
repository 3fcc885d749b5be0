"""Payment lifecycle: creation, confirmation, refund and order pairing.

Every payment transition is a compare-and-swap on `(status, state_version)`.
Confirmation and refund run as a two-step saga: the payment transition commits
first, then the paired order is updated. An order update that does not land
is visible through `find_unsynced_orders` and re-applied by
`repair_order_sync`, which is idempotent.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from time import perf_counter

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from gstpay.common.config import CommonSettings
from gstpay.common.errors import (
    ConcurrentUpdate,
    DuplicateOrder,
    DuplicatePayment,
    GatewayError,
    GatewayInitiationFailed,
    GatewayTimeout,
    InvalidState,
    NotFound,
    PaymentError,
    RefundAmountExceeded,
    RefundFailed,
    ValidationFailed,
    VerificationFailed,
)
from gstpay.common.logging import logger
from gstpay.common.metrics import (
    gateway_call_seconds,
    gateway_errors_total,
    order_sync_failures_total,
    payment_e2e_seconds,
    payment_failure_total,
    payment_success_total,
    refunds_total,
)
from gstpay.common.state_machine import (
    COMPLETED,
    CONFIRMABLE,
    FAILED,
    ORDER_PAYMENT_STATUS_FOR,
    PENDING,
    REFUNDED,
    SETTLED,
    validate_order_payment_transition,
    validate_transition,
)
from gstpay.common.tax import add_on, check_rate, gross_up, is_inter_state, rate_to_bps, to_paise
from gstpay.gateways.base import PaymentGateway
from gstpay.gateways.registry import COD_PROVIDER, METHOD_LABELS, PAYMENT_METHODS, provider_for_method
from gstpay.services.payments.models import Order, Payment, PaymentTimeline
from gstpay.services.payments.schemas import (
    Address,
    LineItem,
    OrderCreateRequest,
    PaymentConfirmRequest,
    PaymentCreateRequest,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """Owns payment state machine progression and the payment/order pairing."""

    def __init__(
        self,
        session_factory,
        config: CommonSettings,
        gateways: dict[str, PaymentGateway],
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.gateways = gateways
        self.service_name = service_name or config.service_name

    def _gateway(self, provider: str) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise GatewayError(f"no gateway configured for provider {provider}")
        return gateway

    async def _call_gateway(self, provider: str, operation: str, call, error_cls: type[GatewayError]):
        """Await one gateway call bounded by the configured timeout.

        Timeouts surface as `GatewayTimeout`; other provider failures are
        re-raised as `error_cls`.
        """

        started = perf_counter()
        try:
            return await asyncio.wait_for(call, timeout=self.config.gateway_timeout_seconds)
        except (asyncio.TimeoutError, GatewayTimeout) as exc:
            gateway_errors_total.labels(
                service=self.service_name, provider=provider, operation=operation, error_type="timeout"
            ).inc()
            logger.warning("gateway_timeout provider=%s operation=%s", provider, operation)
            raise GatewayTimeout(f"{provider} {operation} timed out") from exc
        except GatewayError as exc:
            gateway_errors_total.labels(
                service=self.service_name, provider=provider, operation=operation, error_type="error"
            ).inc()
            logger.warning("gateway_error provider=%s operation=%s error=%s", provider, operation, exc)
            if isinstance(exc, error_cls):
                raise
            raise error_cls(str(exc)) from exc
        finally:
            gateway_call_seconds.labels(
                service=self.service_name, provider=provider, operation=operation
            ).observe(max(0.0, perf_counter() - started))

    def _load(self, payment_id: str) -> Payment:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"payment {payment_id} not found")
        return payment

    def _retention_until(self, created_at: datetime) -> datetime:
        return created_at + timedelta(days=self.config.data_retention_days)

    def _cas(self, db, payment: Payment, **values) -> None:
        """Write `values` only if the payment still has the status/version we read."""

        current_version = payment.state_version
        values = {**values, "state_version": current_version + 1, "updated_at": _now()}
        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == payment.status,
                Payment.state_version == current_version,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdate(
                f"optimistic concurrency conflict for payment {payment.payment_id} "
                f"(expected version {current_version})"
            )
        for key, value in values.items():
            setattr(payment, key, value)

    def _transition(
        self, db, payment: Payment, new_status: str, reason: str, event_id: str | None = None, **values
    ) -> None:
        """Apply one validated state transition and record it on the timeline."""

        validate_transition(payment.status, new_status)
        from_status = payment.status
        self._cas(db, payment, status=new_status, **values)
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                event_id=event_id,
            )
        )

    def _observe_terminal_e2e(self, payment: Payment, terminal_state: str) -> None:
        if payment.created_at is None:
            return
        created_at = payment.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (_now() - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    def _build_order(
        self,
        order_id: str,
        user_id: str,
        items: list[LineItem],
        billing_address: Address,
        shipping_address: Address,
        rate: Decimal,
        payment_method: str | None,
        gst_number: str | None,
    ) -> Order:
        subtotal = sum(to_paise(item.unit_price) * item.quantity for item in items)
        breakdown = add_on(subtotal, rate, is_inter_state(billing_address.state, shipping_address.state))
        now = _now()
        return Order(
            order_id=order_id,
            user_id=user_id,
            items=[item.model_dump(mode="json") for item in items],
            shipping_address=shipping_address.model_dump(mode="json"),
            billing_address=billing_address.model_dump(mode="json"),
            shipping_state=shipping_address.state,
            billing_state=billing_address.state,
            currency=self.config.currency,
            subtotal_paise=subtotal,
            gst_rate_bps=rate_to_bps(rate),
            gst_amount_paise=breakdown.total_gst,
            total_amount_paise=breakdown.total_amount,
            inter_state=breakdown.inter_state,
            cgst_paise=breakdown.cgst,
            sgst_paise=breakdown.sgst,
            igst_paise=breakdown.igst,
            gst_number=gst_number,
            status="pending",
            payment_status="pending",
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
            data_retention_until=self._retention_until(now),
        )

    async def create_payment(self, req: PaymentCreateRequest) -> tuple[Payment, dict]:
        """Create the payment for an order and open the provider-side intent.

        Returns the persisted payment and the provider checkout metadata.
        Nothing is written unless the gateway call succeeds.
        """

        currency = req.currency.upper()
        if currency != self.config.currency:
            raise ValidationFailed(f"currency must be {self.config.currency}")
        rate = check_rate(req.gst_rate if req.gst_rate is not None else self.config.default_gst_rate)
        amount_paise = to_paise(req.amount)
        inter_state = is_inter_state(req.billing_address.state, req.shipping_address.state)
        breakdown = gross_up(amount_paise, rate, inter_state)
        try:
            provider = provider_for_method(req.payment_method, self.config.primary_gateway)
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc
        gateway = self._gateway(provider)

        with self.session_factory() as db:
            existing = db.execute(
                select(Payment.payment_id).where(Payment.order_id == req.order_id)
            ).scalar_one_or_none()
            if existing:
                raise DuplicatePayment(f"payment already exists for order {req.order_id}")
            order = db.get(Order, req.order_id)
            if order is not None and order.inter_state != inter_state:
                raise ValidationFailed("billing/shipping jurisdiction differs from the recorded order")
            create_order = order is None and bool(req.items)

        customer = {
            "user_id": req.user_id,
            "customer_name": req.customer_name,
            "customer_email": req.customer_email,
            "customer_phone": req.customer_phone,
        }
        gateway_order = await self._call_gateway(
            provider,
            "initiate",
            gateway.initiate(amount_paise, currency, req.order_id, customer),
            GatewayInitiationFailed,
        )

        now = _now()
        payment = Payment(
            order_id=req.order_id,
            user_id=req.user_id,
            amount_paise=amount_paise,
            currency=currency,
            payment_method=req.payment_method,
            payment_provider=provider,
            status=PENDING,
            state_version=0,
            gst_rate_bps=rate_to_bps(rate),
            gst_number=req.gst_number,
            inter_state=breakdown.inter_state,
            billing_state=req.billing_address.state,
            shipping_state=req.shipping_address.state,
            taxable_amount_paise=breakdown.taxable_amount,
            cgst_paise=breakdown.cgst,
            sgst_paise=breakdown.sgst,
            igst_paise=breakdown.igst,
            total_gst_paise=breakdown.total_gst,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            customer_phone=req.customer_phone,
            delivery_address=req.shipping_address.model_dump(mode="json") if provider == COD_PROVIDER else None,
            gateway_order_id=gateway_order.correlation_id,
            created_at=now,
            updated_at=now,
            data_retention_until=self._retention_until(now),
        )
        with self.session_factory() as db:
            try:
                db.add(payment)
                db.flush()
                db.add(
                    PaymentTimeline(
                        payment_id=payment.payment_id,
                        from_state=None,
                        to_state=PENDING,
                        reason="payment_created",
                        event_id=None,
                    )
                )
                if create_order:
                    db.add(
                        self._build_order(
                            req.order_id,
                            req.user_id,
                            req.items,
                            req.billing_address,
                            req.shipping_address,
                            rate,
                            req.payment_method,
                            req.gst_number,
                        )
                    )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                logger.warning(
                    "payment insert rejected by constraint order_id=%s gateway_order_id=%s",
                    req.order_id,
                    gateway_order.correlation_id,
                )
                duplicate = db.execute(
                    select(Payment.payment_id).where(Payment.order_id == req.order_id)
                ).scalar_one_or_none()
                if duplicate is None and create_order:
                    raise DuplicateOrder(f"order {req.order_id} already exists") from exc
                raise DuplicatePayment(f"payment already exists for order {req.order_id}") from exc

        logger.info(
            "payment_created payment_id=%s order_id=%s provider=%s amount_paise=%s inter_state=%s",
            payment.payment_id,
            payment.order_id,
            provider,
            amount_paise,
            breakdown.inter_state,
        )
        return payment, gateway_order.metadata

    async def confirm_payment(self, payment_id: str, proof: PaymentConfirmRequest) -> Payment:
        """Verify provider proof and complete the payment, or fail it."""

        payment = self._load(payment_id)
        if payment.status not in CONFIRMABLE:
            raise InvalidState(
                f"payment {payment_id} is {payment.status}; only pending or processing payments can be confirmed"
            )
        provider = payment.payment_provider
        gateway = self._gateway(provider)
        verification = await self._call_gateway(
            provider,
            "verify",
            gateway.verify(payment.gateway_order_id, proof.model_dump()),
            GatewayError,
        )

        if not verification.verified:
            reason = verification.reason or "payment verification failed"
            self.fail_payment(payment, reason=f"verification_failed:{reason}")
            raise VerificationFailed(reason)

        fields = {}
        if provider != COD_PROVIDER:
            fields = {
                "gateway_payment_id": proof.gateway_payment_id,
                "gateway_signature": proof.gateway_signature,
            }
            if payment.payment_method == "upi":
                fields["instrument_details"] = {"upi_transaction_id": proof.gateway_payment_id}
        return self.complete_payment(payment, reason="client_confirmed", **fields)

    def complete_payment(self, payment: Payment, reason: str, event_id: str | None = None, **fields) -> Payment:
        """Move a payment to `completed`, then mark its order paid."""

        fields = {key: value for key, value in fields.items() if value is not None}
        with self.session_factory() as db:
            self._transition(db, payment, COMPLETED, reason=reason, event_id=event_id, **fields)
            db.commit()
        logger.info("payment_completed payment_id=%s reason=%s", payment.payment_id, reason)
        payment_success_total.labels(service=self.service_name).inc()
        self._observe_terminal_e2e(payment, COMPLETED)
        self._sync_order_after(payment)
        return payment

    def fail_payment(self, payment: Payment, reason: str, event_id: str | None = None) -> Payment:
        """Move a payment to `failed`. The paired order is left as it is."""

        with self.session_factory() as db:
            self._transition(db, payment, FAILED, reason=reason, event_id=event_id)
            db.commit()
        logger.info("payment_failed payment_id=%s reason=%s", payment.payment_id, reason)
        payment_failure_total.labels(service=self.service_name, reason=reason.split(":", 1)[0]).inc()
        self._observe_terminal_e2e(payment, FAILED)
        return payment

    async def refund_payment(self, payment_id: str, amount: Decimal | None = None, reason: str | None = None) -> Payment:
        """Refund a completed payment, in full unless `amount` is given."""

        payment = self._load(payment_id)
        if payment.status != COMPLETED:
            raise InvalidState("only completed payments can be refunded")
        refund_paise = payment.amount_paise if amount is None else to_paise(amount)
        if refund_paise <= 0:
            raise ValidationFailed("refund amount must be positive")
        if refund_paise > payment.amount_paise:
            raise RefundAmountExceeded(
                f"refund of {refund_paise} paise exceeds payment amount of {payment.amount_paise} paise"
            )
        if payment.refund_status == "pending":
            raise InvalidState(f"a refund is already in progress for payment {payment_id}")

        # Claim the refund so a concurrent request cannot reach the provider too.
        with self.session_factory() as db:
            self._cas(db, payment, refund_status="pending")
            db.commit()

        provider = payment.payment_provider
        try:
            refund = await self._call_gateway(
                provider,
                "refund",
                self._gateway(provider).refund(payment.gateway_payment_id, refund_paise, reason),
                RefundFailed,
            )
        except BaseException:
            # Release the claim on provider errors and on task cancellation alike.
            with self.session_factory() as db:
                self._cas(db, payment, refund_status="failed")
                db.commit()
            refunds_total.labels(service=self.service_name, outcome="failed").inc()
            raise

        with self.session_factory() as db:
            self._transition(
                db,
                payment,
                REFUNDED,
                reason="refund_processed",
                refund_id=refund.refund_id,
                refund_amount_paise=refund_paise,
                refund_reason=reason,
                refunded_at=_now(),
                refund_status="processed",
            )
            db.commit()
        refunds_total.labels(service=self.service_name, outcome="processed").inc()
        logger.info(
            "payment_refunded payment_id=%s refund_id=%s refund_paise=%s",
            payment.payment_id,
            refund.refund_id,
            refund_paise,
        )
        self._sync_order_after(payment)
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        return self._load(payment_id)

    def get_payment_by_order(self, order_id: str) -> Payment:
        with self.session_factory() as db:
            payment = db.execute(select(Payment).where(Payment.order_id == order_id)).scalar_one_or_none()
        if payment is None:
            raise NotFound(f"no payment recorded for order {order_id}")
        return payment

    def find_by_gateway_order(self, gateway_order_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.gateway_order_id == gateway_order_id)
            ).scalar_one_or_none()

    def list_supported_methods(self) -> list[dict]:
        return [
            {
                "method": method,
                "label": METHOD_LABELS[method],
                "provider": provider_for_method(method, self.config.primary_gateway),
            }
            for method in PAYMENT_METHODS
        ]

    def create_order(self, req: OrderCreateRequest) -> Order:
        """Record an order; if its payment already settled, mirror that immediately."""

        rate = check_rate(req.gst_rate if req.gst_rate is not None else self.config.default_gst_rate)
        inter_state = is_inter_state(req.billing_address.state, req.shipping_address.state)
        with self.session_factory() as db:
            if db.get(Order, req.order_id) is not None:
                raise DuplicateOrder(f"order {req.order_id} already exists")
            payment = db.execute(select(Payment).where(Payment.order_id == req.order_id)).scalar_one_or_none()
            if payment is not None and payment.inter_state != inter_state:
                raise ValidationFailed("billing/shipping jurisdiction differs from the recorded payment")
            order = self._build_order(
                req.order_id,
                req.user_id,
                req.items,
                req.billing_address,
                req.shipping_address,
                rate,
                req.payment_method,
                req.gst_number,
            )
            db.add(order)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateOrder(f"order {req.order_id} already exists") from exc

        logger.info("order_created order_id=%s total_paise=%s", order.order_id, order.total_amount_paise)
        if payment is not None and payment.status in SETTLED:
            return self._sync_order_after(payment) or order
        return order

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order

    def _apply_order_sync(self, payment: Payment) -> Order | None:
        """Bring the paired order's payment status in line with the payment.

        Returns the order, or None when there is nothing to sync or the order
        has not been recorded yet. Safe to call repeatedly.
        """

        expected = ORDER_PAYMENT_STATUS_FOR.get(payment.status)
        if expected is None:
            return None
        with self.session_factory() as db:
            order = db.get(Order, payment.order_id)
            if order is None:
                logger.info("order_sync_deferred order_id=%s payment_status=%s", payment.order_id, payment.status)
                return None
            if order.payment_status == expected:
                return order
            validate_order_payment_transition(order.payment_status, expected)
            values = {"payment_status": expected, "updated_at": _now()}
            if expected == "paid" and order.status == "pending":
                values["status"] = "confirmed"
            result = db.execute(
                update(Order)
                .where(Order.order_id == order.order_id, Order.payment_status == order.payment_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                db.refresh(order)
                if order.payment_status == expected:
                    return order
                raise ConcurrentUpdate(f"order {order.order_id} changed while syncing payment status")
            db.commit()
            for key, value in values.items():
                setattr(order, key, value)
        logger.info("order_synced order_id=%s payment_status=%s", order.order_id, expected)
        return order

    def _sync_order_after(self, payment: Payment) -> Order | None:
        """Second saga step; failures are left for `repair_order_sync`."""

        try:
            return self._apply_order_sync(payment)
        except Exception:
            order_sync_failures_total.labels(service=self.service_name, payment_status=payment.status).inc()
            logger.exception(
                "order_sync_failed order_id=%s payment_id=%s payment_status=%s",
                payment.order_id,
                payment.payment_id,
                payment.status,
            )
            return None

    def find_unsynced_orders(self, limit: int = 100) -> list[dict]:
        """Settled payments whose order is missing or does not mirror them yet."""

        mismatch = or_(
            Order.order_id.is_(None),
            *[
                and_(Payment.status == payment_status, Order.payment_status != order_status)
                for payment_status, order_status in ORDER_PAYMENT_STATUS_FOR.items()
            ],
        )
        with self.session_factory() as db:
            rows = db.execute(
                select(Payment.payment_id, Payment.order_id, Payment.status, Order.payment_status)
                .outerjoin(Order, Order.order_id == Payment.order_id)
                .where(Payment.status.in_(sorted(SETTLED)), mismatch)
                .order_by(Payment.updated_at)
                .limit(limit)
            ).all()
        return [
            {
                "payment_id": row.payment_id,
                "order_id": row.order_id,
                "payment_status": row.status,
                "expected_order_payment_status": ORDER_PAYMENT_STATUS_FOR[row.status],
                "order_payment_status": row.payment_status,
            }
            for row in rows
        ]

    def repair_order_sync(self, order_id: str) -> Order:
        """Re-apply the order update for one order. Idempotent."""

        payment = self.get_payment_by_order(order_id)
        self.get_order(order_id)
        self._apply_order_sync(payment)
        return self.get_order(order_id)

    def repair_all(self, limit: int = 100) -> dict:
        repaired: list[str] = []
        skipped: list[dict] = []
        unsynced = self.find_unsynced_orders(limit)
        for row in unsynced:
            if row["order_payment_status"] is None:
                skipped.append({"order_id": row["order_id"], "reason": "order_not_recorded"})
                continue
            try:
                self.repair_order_sync(row["order_id"])
                repaired.append(row["order_id"])
            except PaymentError as exc:
                logger.warning("order_repair_failed order_id=%s error=%s", row["order_id"], exc)
                skipped.append({"order_id": row["order_id"], "reason": exc.code})
        return {"checked": len(unsynced), "repaired": repaired, "skipped": skipped}
