"""Gateway webhook reconciliation.

Notifications are authenticated over the raw request bytes, deduplicated by
event id through the `webhook_events` inbox, and applied only when the state
machine allows the move. Re-deliveries and out-of-order stale events are
acknowledged without touching the record.
"""

import hashlib

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from gstpay.common.config import CommonSettings
from gstpay.common.errors import ConcurrentUpdate, InvalidSignature, ValidationFailed
from gstpay.common.logging import event_id_ctx, logger
from gstpay.common.metrics import duplicate_webhooks_skipped_total, webhook_events_total
from gstpay.common.signing import signature_matches
from gstpay.common.state_machine import CANCELLED, COMPLETED, FAILED, REFUNDED, can_transition
from gstpay.services.payments.models import Payment, WebhookEvent
from gstpay.services.payments.schemas import WebhookEnvelope
from gstpay.services.payments.service import PaymentService


def instrument_details(entity: dict) -> dict | None:
    """Card/UPI details reported on a captured payment entity."""

    method = entity.get("method")
    if method == "card":
        card = entity.get("card") or {}
        return {"card_last4": card.get("last4"), "card_network": card.get("network"), "card_type": card.get("type")}
    if method == "upi":
        return {"upi_transaction_id": entity.get("id"), "upi_vpa": entity.get("vpa"), "upi_app": entity.get("wallet")}
    return None


class WebhookReconciler:
    """Drives payment transitions from Razorpay notifications."""

    provider = "razorpay"

    def __init__(self, payments: PaymentService, config: CommonSettings, service_name: str | None = None) -> None:
        self.payments = payments
        self.session_factory = payments.session_factory
        self.config = config
        self.service_name = service_name or config.service_name

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        """Check the HMAC-SHA256 of the raw body against the header signature."""

        secret = self.config.webhook_secret
        if not secret:
            if self.config.webhook_insecure_mode:
                logger.warning("webhook_signature_skipped reason=insecure_mode provider=%s", self.provider)
                return
            raise InvalidSignature("webhook secret is not configured")
        if not signature_matches(secret, raw_body, signature):
            raise InvalidSignature("invalid webhook signature")

    def _inbox_seen(self, db, event_id: str) -> bool:
        existing = db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id)).scalar_one_or_none()
        return existing is not None

    def _mark_inbox(self, event_id: str, event_type: str, outcome: str) -> None:
        with self.session_factory() as db:
            db.add(WebhookEvent(event_id=event_id, provider=self.provider, event_type=event_type, outcome=outcome))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event recorded it first.
                db.rollback()
                logger.info("webhook inbox row already present event_id=%s", event_id)

    async def handle(self, raw_body: bytes, signature: str | None, event_id: str | None = None) -> dict:
        """Authenticate, deduplicate and apply one notification."""

        self.verify_signature(raw_body, signature)
        try:
            envelope = WebhookEnvelope.model_validate_json(raw_body)
        except ValidationError as exc:
            raise ValidationFailed(f"malformed webhook payload: {exc.errors()[0]['msg']}") from exc

        event_id = event_id or hashlib.sha256(raw_body).hexdigest()
        token = event_id_ctx.set(event_id)
        try:
            with self.session_factory() as db:
                if self._inbox_seen(db, event_id):
                    logger.info("duplicate webhook skipped event=%s event_id=%s", envelope.event, event_id)
                    duplicate_webhooks_skipped_total.labels(service=self.service_name, provider=self.provider).inc()
                    return {"received": True, "duplicate": True}

            outcome = self._dispatch(envelope, event_id)
            self._mark_inbox(event_id, envelope.event, outcome)
            webhook_events_total.labels(service=self.service_name, event_type=envelope.event, outcome=outcome).inc()
            return {"received": True, "outcome": outcome}
        finally:
            event_id_ctx.reset(token)

    def _dispatch(self, envelope: WebhookEnvelope, event_id: str) -> str:
        handlers = {
            "payment.captured": self._on_payment_captured,
            "payment.failed": self._on_payment_failed,
            "order.paid": self._on_order_paid,
        }
        handler = handlers.get(envelope.event)
        if handler is None:
            logger.info("unhandled webhook event=%s", envelope.event)
            return "ignored"
        return handler(envelope.payload, event_id)

    @staticmethod
    def _entity(payload: dict, key: str, required: bool = True) -> dict | None:
        container = payload.get(key)
        entity = container.get("entity") if isinstance(container, dict) else None
        if not isinstance(entity, dict):
            if required:
                raise ValidationFailed(f"webhook payload is missing {key}.entity")
            return None
        return entity

    def _find(self, gateway_order_id: str | None) -> Payment | None:
        if not gateway_order_id:
            return None
        payment = self.payments.find_by_gateway_order(gateway_order_id)
        if payment is None:
            logger.warning("webhook for unknown gateway order gateway_order_id=%s", gateway_order_id)
        return payment

    def _drive(self, payment: Payment, target: str, reason: str, event_id: str, **fields) -> str:
        """Apply a forward transition, or report why it was skipped."""

        if payment.status == target:
            return "already_applied"
        if not can_transition(payment.status, target):
            logger.info(
                "stale webhook ignored payment_id=%s status=%s target=%s",
                payment.payment_id,
                payment.status,
                target,
            )
            return "stale"
        try:
            if target == COMPLETED:
                self.payments.complete_payment(payment, reason=reason, event_id=event_id, **fields)
            else:
                self.payments.fail_payment(payment, reason=reason, event_id=event_id)
        except ConcurrentUpdate:
            current = self.payments.get_payment(payment.payment_id)
            if current.status == target:
                return "already_applied"
            if not can_transition(current.status, target):
                return "stale"
            raise
        return "applied"

    def _on_payment_captured(self, payload: dict, event_id: str) -> str:
        entity = self._entity(payload, "payment")
        payment = self._find(entity.get("order_id"))
        if payment is None:
            return "unmatched"
        return self._drive(
            payment,
            COMPLETED,
            reason="webhook_payment_captured",
            event_id=event_id,
            gateway_payment_id=entity.get("id"),
            instrument_details=instrument_details(entity),
        )

    def _on_payment_failed(self, payload: dict, event_id: str) -> str:
        entity = self._entity(payload, "payment")
        payment = self._find(entity.get("order_id"))
        if payment is None:
            return "unmatched"
        error_code = entity.get("error_code") or "UNKNOWN"
        return self._drive(payment, FAILED, reason=f"webhook_payment_failed:{error_code}", event_id=event_id)

    def _on_order_paid(self, payload: dict, event_id: str) -> str:
        order_entity = self._entity(payload, "order")
        payment_entity = self._entity(payload, "payment", required=False) or {}
        payment = self._find(order_entity.get("id"))
        if payment is None:
            return "unmatched"
        # order.paid never reopens a terminal record; only payment.captured supersedes a failure.
        if payment.status in (FAILED, CANCELLED, REFUNDED):
            logger.info(
                "stale webhook ignored payment_id=%s status=%s target=%s",
                payment.payment_id,
                payment.status,
                COMPLETED,
            )
            return "stale"
        return self._drive(
            payment,
            COMPLETED,
            reason="webhook_order_paid",
            event_id=event_id,
            gateway_payment_id=payment_entity.get("id"),
            instrument_details=instrument_details(payment_entity) if payment_entity else None,
        )
