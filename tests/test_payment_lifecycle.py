"""Create/confirm/refund behaviour of the payment service against a fake gateway."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import BigInteger, select

from conftest import create, make_items, make_order_request, make_payment_request
from gstpay.common.errors import (
    DuplicatePayment,
    GatewayError,
    GatewayInitiationFailed,
    GatewayTimeout,
    InvalidState,
    NotFound,
    RefundAmountExceeded,
    RefundFailed,
    ValidationFailed,
    VerificationFailed,
)
from gstpay.gateways.base import Verification
from gstpay.services.payments.models import Order, Payment, PaymentTimeline
from gstpay.services.payments.schemas import PaymentConfirmRequest

PROOF = PaymentConfirmRequest(gateway_payment_id="pay_1", gateway_signature="sig")


def _count_payments(session_factory) -> int:
    with session_factory() as db:
        return len(db.execute(select(Payment)).scalars().all())


def test_create_intra_state_payment_splits_cgst_sgst(service):
    payment = create(service)

    assert payment.status == "pending"
    assert payment.taxable_amount_paise == 100000
    assert payment.total_gst_paise == 18000
    assert (payment.cgst_paise, payment.sgst_paise, payment.igst_paise) == (9000, 9000, 0)
    assert payment.payment_provider == "razorpay"
    assert payment.gateway_order_id == "order_fake_1"


def test_create_inter_state_payment_is_all_igst(service):
    payment = create(service, shipping_state="Karnataka")

    assert payment.inter_state is True
    assert (payment.cgst_paise, payment.sgst_paise, payment.igst_paise) == (0, 0, 18000)


def test_large_amount_is_stored_in_wide_columns(service):
    payment = create(service, amount=Decimal("25000000.00"), billing_state="Karnataka")

    assert payment.amount_paise == 2_500_000_000
    assert payment.taxable_amount_paise + payment.total_gst_paise == 2_500_000_000
    assert service.get_payment(payment.payment_id).igst_paise == payment.total_gst_paise
    for table in (Payment.__table__, Order.__table__):
        for column in table.columns:
            if column.name.endswith("_paise"):
                assert isinstance(column.type, BigInteger), column.name


def test_create_with_items_records_order_in_add_on_mode(service):
    create(service, items=make_items())

    order = service.get_order("ORD-1001")
    assert order.subtotal_paise == 100000
    assert order.gst_amount_paise == 18000
    assert order.total_amount_paise == 118000
    assert order.payment_status == "pending"


def test_create_rejects_second_payment_for_order(service, gateway):
    create(service)

    with pytest.raises(DuplicatePayment):
        create(service)
    assert len([c for c in gateway.calls if c[0] == "initiate"]) == 1


def test_concurrent_create_yields_one_payment(service, session_factory, gateway):
    gateway.delay = 0.05

    async def both():
        return await asyncio.gather(
            service.create_payment(make_payment_request()),
            service.create_payment(make_payment_request()),
            return_exceptions=True,
        )

    results = asyncio.run(both())

    assert sum(isinstance(r, DuplicatePayment) for r in results) == 1
    assert _count_payments(session_factory) == 1


def test_create_rejects_foreign_currency(service, gateway):
    with pytest.raises(ValidationFailed):
        create(service, currency="USD")
    assert gateway.calls == []


def test_create_rejects_jurisdiction_mismatch_with_order(service, gateway):
    service.create_order(make_order_request(order_id="ORD-2002"))

    with pytest.raises(ValidationFailed):
        create(service, order_id="ORD-2002", shipping_state="Karnataka")
    assert gateway.calls == []


def test_initiation_failure_persists_nothing(service, session_factory, gateway):
    gateway.initiate_error = GatewayError("provider down")

    with pytest.raises(GatewayInitiationFailed):
        create(service)
    assert _count_payments(session_factory) == 0


def test_initiation_timeout_persists_nothing(service, session_factory, gateway):
    gateway.delay = 2.0

    with pytest.raises(GatewayTimeout):
        create(service)
    assert _count_payments(session_factory) == 0


def test_cash_on_delivery_skips_remote_gateway(service, gateway):
    payment = create(service, payment_method="cash_on_delivery")

    assert payment.payment_provider == "cod"
    assert payment.gateway_order_id is None
    assert payment.delivery_address["state"] == "Maharashtra"
    assert gateway.calls == []

    confirmed = asyncio.run(service.confirm_payment(payment.payment_id, PaymentConfirmRequest()))
    assert confirmed.status == "completed"


def test_confirm_completes_and_marks_order_paid(service):
    payment = create(service, items=make_items())

    confirmed = asyncio.run(service.confirm_payment(payment.payment_id, PROOF))

    assert confirmed.status == "completed"
    assert confirmed.gateway_payment_id == "pay_1"
    assert confirmed.instrument_details == {"upi_transaction_id": "pay_1"}
    order = service.get_order("ORD-1001")
    assert order.payment_status == "paid"
    assert order.status == "confirmed"


def test_confirm_with_invalid_signature_fails_payment_only(service, gateway):
    payment = create(service, items=make_items())
    gateway.verification = Verification(verified=False, reason="signature mismatch")

    with pytest.raises(VerificationFailed):
        asyncio.run(service.confirm_payment(payment.payment_id, PROOF))

    assert service.get_payment(payment.payment_id).status == "failed"
    order = service.get_order("ORD-1001")
    assert order.payment_status == "pending"
    assert order.status == "pending"


def test_confirm_failed_payment_is_invalid_state(service, gateway):
    payment = create(service)
    gateway.verification = Verification(verified=False)
    with pytest.raises(VerificationFailed):
        asyncio.run(service.confirm_payment(payment.payment_id, PROOF))

    with pytest.raises(InvalidState):
        asyncio.run(service.confirm_payment(payment.payment_id, PROOF))


def test_confirm_unknown_payment_not_found(service):
    with pytest.raises(NotFound):
        asyncio.run(service.confirm_payment("missing", PROOF))


def test_verify_timeout_leaves_payment_pending(service, gateway):
    payment = create(service)
    gateway.delay = 2.0

    with pytest.raises(GatewayTimeout):
        asyncio.run(service.confirm_payment(payment.payment_id, PROOF))
    assert service.get_payment(payment.payment_id).status == "pending"


def test_concurrent_confirm_applies_once(service, session_factory, gateway):
    payment = create(service)
    gateway.delay = 0.05

    async def both():
        return await asyncio.gather(
            service.confirm_payment(payment.payment_id, PROOF),
            service.confirm_payment(payment.payment_id, PROOF),
            return_exceptions=True,
        )

    results = asyncio.run(both())

    assert sum(isinstance(r, Payment) for r in results) == 1
    assert sum(isinstance(r, InvalidState) for r in results) == 1
    with session_factory() as db:
        completions = db.execute(
            select(PaymentTimeline).where(
                PaymentTimeline.payment_id == payment.payment_id, PaymentTimeline.to_state == "completed"
            )
        ).scalars().all()
    assert len(completions) == 1


def _completed(service):
    payment = create(service, items=make_items())
    return asyncio.run(service.confirm_payment(payment.payment_id, PROOF))


def test_refund_pending_payment_is_invalid_state(service):
    payment = create(service)

    with pytest.raises(InvalidState, match="only completed payments can be refunded"):
        asyncio.run(service.refund_payment(payment.payment_id))

    stored = service.get_payment(payment.payment_id)
    assert stored.refund_id is None
    assert stored.refund_status is None


def test_full_refund_moves_payment_and_order(service):
    payment = _completed(service)

    refunded = asyncio.run(service.refund_payment(payment.payment_id, reason="damaged"))

    assert refunded.status == "refunded"
    assert refunded.refund_amount_paise == 118000
    assert refunded.refund_status == "processed"
    assert refunded.refund_reason == "damaged"
    assert service.get_order("ORD-1001").payment_status == "refunded"


def test_partial_refund_records_requested_amount(service):
    payment = _completed(service)

    refunded = asyncio.run(service.refund_payment(payment.payment_id, amount=Decimal("100.50")))

    assert refunded.refund_amount_paise == 10050


def test_refund_cannot_exceed_payment_amount(service, gateway):
    payment = _completed(service)

    with pytest.raises(RefundAmountExceeded):
        asyncio.run(service.refund_payment(payment.payment_id, amount=Decimal("1180.01")))
    assert not [c for c in gateway.calls if c[0] == "refund"]
    assert service.get_payment(payment.payment_id).status == "completed"


def test_refund_failure_keeps_payment_completed_and_allows_retry(service, gateway):
    payment = _completed(service)
    gateway.refund_error = GatewayError("insufficient balance")

    with pytest.raises(RefundFailed):
        asyncio.run(service.refund_payment(payment.payment_id))

    stored = service.get_payment(payment.payment_id)
    assert stored.status == "completed"
    assert stored.refund_status == "failed"
    assert service.get_order("ORD-1001").payment_status == "paid"

    gateway.refund_error = None
    assert asyncio.run(service.refund_payment(payment.payment_id)).status == "refunded"


def test_cancelled_refund_releases_claim(service, gateway):
    payment = _completed(service)
    gateway.delay = 0.3

    async def cancel_midway():
        task = asyncio.create_task(service.refund_payment(payment.payment_id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancel_midway())

    stored = service.get_payment(payment.payment_id)
    assert stored.status == "completed"
    assert stored.refund_status == "failed"

    gateway.delay = 0.0
    assert asyncio.run(service.refund_payment(payment.payment_id)).status == "refunded"


def test_concurrent_refunds_reach_gateway_once(service, gateway):
    payment = _completed(service)
    gateway.delay = 0.05

    async def both():
        return await asyncio.gather(
            service.refund_payment(payment.payment_id),
            service.refund_payment(payment.payment_id),
            return_exceptions=True,
        )

    results = asyncio.run(both())

    assert sum(isinstance(r, Payment) for r in results) == 1
    assert sum(isinstance(r, InvalidState) for r in results) == 1
    assert len([c for c in gateway.calls if c[0] == "refund"]) == 1


def test_supported_methods_route_cod_locally(service):
    methods = {m["method"]: m["provider"] for m in service.list_supported_methods()}

    assert methods["cash_on_delivery"] == "cod"
    assert methods["upi"] == "razorpay"


def test_order_lookup_helpers(service):
    payment = create(service)

    assert service.get_payment_by_order("ORD-1001").payment_id == payment.payment_id
    with pytest.raises(NotFound):
        service.get_payment_by_order("ORD-404")
    with pytest.raises(NotFound):
        service.get_order("ORD-1001")


def test_retention_is_seven_years(service, session_factory):
    payment = create(service)

    with session_factory() as db:
        stored = db.get(Payment, payment.payment_id)
        assert (stored.data_retention_until - stored.created_at).days == 7 * 365
        assert db.get(Order, "ORD-1001") is None
