"""
付款对账测试
"""
import asyncio
import pytest
from decimal import Decimal

from app.core.config import settings
from app.core.middleware import (
    AmountMismatchException, DuplicateResourceException, InvalidStateTransitionException,
    PaymentVerificationFailedException, ValidationException, AccessDeniedException
)
from app.models.quotation import Quotation
from app.schemas.common import Actor, UserRole
from app.schemas.notification import NotificationTemplate
from app.schemas.order import OrderStatus
from app.schemas.payment import PaymentStatus, PaymentMethod
from app.schemas.quotation import QuotationStatus
from app.services.payment_service import PaymentService, VerificationResult


class FakeVerifier:
    """支付网关替身"""

    def __init__(self, result=None, delay: float = 0, error: Exception = None):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls = []

    async def verify(self, payload):
        self.calls.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class TestConfirmPayment:
    """确认付款"""

    @pytest.mark.asyncio
    async def test_confirm_advances_order(self, db_session, payment_service, pending_order, sent_quotation, notifier):
        notifier.clear()
        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))

        assert order.status == OrderStatus.CONFIRMED
        assert order.confirmed_at is not None
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_transaction_id == "TXN-1"
        assert order.payment_amount == Decimal("90")
        assert order.payment_paid_at is not None
        assert order.payment_method == PaymentMethod.BANK_TRANSFER

        quotation = await db_session.get(Quotation, sent_quotation.quotation_id)
        await db_session.refresh(quotation)
        assert quotation.status == QuotationStatus.ORDER_CREATED

        templates = notifier.templates()
        assert NotificationTemplate.PAYMENT_RECEIVED in templates
        assert NotificationTemplate.ORDER_CONFIRMED in templates

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, db_session, payment_service, pending_order, notifier):
        first = await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        paid_at = first.payment_paid_at
        notifier.clear()

        again = await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        assert again.status == OrderStatus.CONFIRMED
        assert again.payment_paid_at == paid_at
        assert again.payment_transaction_id == "TXN-1"
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_other_transaction_rejected(self, db_session, payment_service, pending_order):
        await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        with pytest.raises(DuplicateResourceException):
            await payment_service.confirm(db_session, pending_order.order_id, "TXN-2", Decimal("90"))

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, db_session, payment_service, pending_order):
        with pytest.raises(AmountMismatchException):
            await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("89"))

        await db_session.refresh(pending_order)
        assert pending_order.status == OrderStatus.PENDING
        assert pending_order.payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_amount_within_tolerance(self, db_session, payment_service, pending_order):
        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90.005"))
        assert order.payment_status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_confirm_does_not_regress_order(self, db_session, order_service, payment_service, pending_order):
        await order_service.update_status(
            db_session, pending_order.order_id, OrderStatus.IN_PRODUCTION, manual_override=True
        )
        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-9", Decimal("90"))
        assert order.status == OrderStatus.IN_PRODUCTION
        assert order.payment_transaction_id == "TXN-9"

    @pytest.mark.asyncio
    async def test_admin_completed_payment_can_be_reconciled(self, db_session, order_service, payment_service, pending_order):
        """后台已推进（付款完成但无交易号）时仍可补录交易号"""
        await order_service.update_status(db_session, pending_order.order_id, OrderStatus.CONFIRMED)
        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-LATE", Decimal("90"))
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_transaction_id == "TXN-LATE"

    @pytest.mark.asyncio
    async def test_cancelled_order_rejected(self, db_session, order_service, payment_service, pending_order):
        await order_service.update_status(db_session, pending_order.order_id, OrderStatus.CANCELLED)
        with pytest.raises(InvalidStateTransitionException):
            await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_block(self, db_session, payment_service, pending_order, notifier):
        notifier.fail = True
        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        assert order.status == OrderStatus.CONFIRMED


class TestInitializeAndFail:
    """发起付款与付款失败"""

    @pytest.mark.asyncio
    async def test_initialize(self, db_session, payment_service, pending_order):
        order = await payment_service.initialize(
            db_session, pending_order.order_id, PaymentMethod.RAZORPAY, Decimal("90")
        )
        assert order.payment_status == PaymentStatus.PROCESSING
        assert order.payment_method == PaymentMethod.RAZORPAY
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_initialize_rejects_bad_input(self, db_session, payment_service, pending_order):
        with pytest.raises(ValidationException):
            await payment_service.initialize(db_session, pending_order.order_id, "cash", Decimal("90"))
        with pytest.raises(AmountMismatchException):
            await payment_service.initialize(
                db_session, pending_order.order_id, PaymentMethod.PAYPAL, Decimal("80")
            )

    @pytest.mark.asyncio
    async def test_initialize_requires_pending(self, db_session, payment_service, pending_order):
        await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        with pytest.raises(InvalidStateTransitionException):
            await payment_service.initialize(
                db_session, pending_order.order_id, PaymentMethod.PAYPAL, Decimal("90")
            )

    @pytest.mark.asyncio
    async def test_fail_then_retry(self, db_session, payment_service, pending_order):
        order = await payment_service.fail(db_session, pending_order.order_id, "card declined")
        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING

        order = await payment_service.confirm(db_session, pending_order.order_id, "TXN-2", Decimal("90"))
        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_fail_after_completion(self, db_session, payment_service, pending_order):
        await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        with pytest.raises(InvalidStateTransitionException):
            await payment_service.fail(db_session, pending_order.order_id)


class TestRefund:
    """退款"""

    @pytest.mark.asyncio
    async def test_full_refund(self, db_session, payment_service, pending_order):
        await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        order = await payment_service.refund(db_session, pending_order.order_id, "customer request")

        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refund_amount == Decimal("90")
        assert order.refund_reason == "customer request"
        assert order.status == OrderStatus.CONFIRMED

        history = await payment_service.get_payment_history(db_session, pending_order.order_id)
        assert [entry.action for entry in history.history] == ["initiated", "completed", "refunded"]

        with pytest.raises(InvalidStateTransitionException):
            await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))

    @pytest.mark.asyncio
    async def test_refund_over_paid(self, db_session, payment_service, pending_order):
        await payment_service.confirm(db_session, pending_order.order_id, "TXN-1", Decimal("90"))
        with pytest.raises(ValidationException):
            await payment_service.refund(db_session, pending_order.order_id, "oops", Decimal("100"))

    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, db_session, payment_service, pending_order):
        with pytest.raises(InvalidStateTransitionException):
            await payment_service.refund(db_session, pending_order.order_id, "nothing paid")


class TestGatewayVerification:
    """网关校验"""

    @pytest.mark.asyncio
    async def test_valid_payment(self, db_session, payment_service, pending_order):
        verifier = FakeVerifier(VerificationResult(valid=True, gateway_payment_id="pay_123", amount=Decimal("90.00")))
        order = await payment_service.verify_gateway_payment(
            db_session, pending_order.order_id, verifier, {"razorpay_payment_id": "pay_123"}
        )
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_transaction_id == "pay_123"
        assert order.payment_gateway == "razorpay"
        assert order.payment_method == PaymentMethod.RAZORPAY
        assert verifier.calls == [{"razorpay_payment_id": "pay_123"}]

    @pytest.mark.asyncio
    async def test_invalid_payment(self, db_session, payment_service, pending_order):
        verifier = FakeVerifier(VerificationResult(valid=False))
        with pytest.raises(PaymentVerificationFailedException):
            await payment_service.verify_gateway_payment(db_session, pending_order.order_id, verifier, {})

        await db_session.refresh(pending_order)
        assert pending_order.payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_timeout(self, db_session, payment_service, pending_order, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_VERIFY_TIMEOUT_SECONDS", 0.05)
        verifier = FakeVerifier(VerificationResult(valid=True, gateway_payment_id="pay_1"), delay=1)
        with pytest.raises(PaymentVerificationFailedException):
            await payment_service.verify_gateway_payment(db_session, pending_order.order_id, verifier, {})

        await db_session.refresh(pending_order)
        assert pending_order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_gateway_error(self, db_session, payment_service, pending_order):
        verifier = FakeVerifier(error=ConnectionError("gateway unreachable"))
        with pytest.raises(PaymentVerificationFailedException):
            await payment_service.verify_gateway_payment(db_session, pending_order.order_id, verifier, {})


class TestPaymentQueries:
    """付款状态与权限"""

    @pytest.mark.asyncio
    async def test_status(self, db_session, payment_service, pending_order):
        status = await payment_service.get_payment_status(db_session, pending_order.order_id)
        assert status.status == PaymentStatus.PENDING
        assert status.method == PaymentMethod.PENDING
        assert status.transaction_id is None

    @pytest.mark.asyncio
    async def test_access(self, pending_order, customer_actor, admin_actor):
        PaymentService.ensure_access(pending_order, customer_actor)
        PaymentService.ensure_access(pending_order, admin_actor)

        stranger = Actor(user_id=admin_actor.user_id, role=UserRole.CUSTOMER)
        with pytest.raises(AccessDeniedException):
            PaymentService.ensure_access(pending_order, stranger)

    def test_methods(self):
        methods = PaymentService.list_methods()
        assert [m.id for m in methods] == list(PaymentMethod.ALL)
        assert methods[0].name == "Credit Card"
        assert methods[-1].description == "Indian payment gateway"
        assert all(m.enabled for m in methods)
