"""
报价单生命周期测试
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, func

from app.core.middleware import (
    AccessDeniedException, DuplicateResourceException, InvalidLineItemException,
    InvalidStateTransitionException, NotFoundException, QuotationExpiredException,
    ValidationException
)
from app.models.inquiry import Inquiry
from app.models.order import Order
from app.models.quotation import QuotationItem
from app.schemas.common import Actor, UserRole
from app.schemas.inquiry import InquiryStatus
from app.schemas.notification import NotificationTemplate, NotificationChannel
from app.schemas.order import OrderStatus, DispatchRequest, DispatchUpdateRequest, DeliveredRequest
from app.schemas.payment import PaymentStatus
from app.schemas.quotation import QuotationCreateRequest, QuotationDecision, QuotationStatus
from app.services.numbering import NumberGenerator, NumberGenerationError
from app.services.quotation_service import QuotationService

from tests.conftest import LINE_ITEMS


class FakeRedis:
    """只实现 incr / expire 的内存 Redis"""

    def __init__(self, start: int = 0):
        self.start = start
        self.counters = {}
        self.expiry = {}

    async def incr(self, key):
        self.counters[key] = self.counters.get(key, self.start) + 1
        return self.counters[key]

    async def expire(self, key, seconds):
        self.expiry[key] = seconds


class SequenceRng:
    """按顺序返回预设值的随机数源"""

    def __init__(self, values):
        self.values = list(values)

    def randint(self, a, b):
        return self.values.pop(0)


FIXED_DAY = datetime(2024, 12, 15, 9, 0, 0)


async def count_orders(db, quotation_id):
    result = await db.execute(select(func.count()).select_from(Order).where(Order.quotation_id == quotation_id))
    return result.scalar()


class TestCreateQuotation:
    """创建报价单"""

    @pytest.mark.asyncio
    async def test_total_is_sum_of_line_items(self, db_session, draft_quotation, inquiry):
        """两项明细：10×5 + 20×2 = 90"""
        assert draft_quotation.total_amount == Decimal("90.00")
        assert draft_quotation.status == QuotationStatus.DRAFT
        assert draft_quotation.quotation_no.startswith("QT")
        assert len(draft_quotation.quotation_no) == 11

        result = await db_session.execute(
            select(QuotationItem)
            .where(QuotationItem.quotation_id == draft_quotation.quotation_id)
            .order_by(QuotationItem.sort_order)
        )
        items = result.scalars().all()
        assert [item.total_price for item in items] == [Decimal("50.00"), Decimal("40.00")]

        await db_session.refresh(inquiry)
        assert inquiry.status == InquiryStatus.QUOTED
        assert inquiry.quotation_id == draft_quotation.quotation_id

    @pytest.mark.asyncio
    async def test_default_validity_and_terms(self, draft_quotation):
        delta = draft_quotation.valid_until - datetime.now()
        assert timedelta(days=29) < delta <= timedelta(days=30)
        assert draft_quotation.terms
        assert draft_quotation.currency == "USD"

    @pytest.mark.asyncio
    async def test_inquiry_not_found(self, db_session, quotation_service):
        data = QuotationCreateRequest(inquiry_id=uuid4(), parts=LINE_ITEMS)
        with pytest.raises(NotFoundException):
            await quotation_service.create_quotation(db_session, data)

    @pytest.mark.asyncio
    async def test_draft_is_updated_not_duplicated(self, db_session, quotation_service, draft_quotation, inquiry):
        data = QuotationCreateRequest(
            inquiry_id=inquiry.inquiry_id,
            parts=[{"material": "Stainless 304", "thickness": "1.5", "quantity": 3, "unit_price": "12.50"}],
            terms="Net 15",
        )
        updated = await quotation_service.create_quotation(db_session, data)

        assert updated.quotation_id == draft_quotation.quotation_id
        assert updated.total_amount == Decimal("37.50")
        assert updated.terms == "Net 15"

        result = await db_session.execute(
            select(func.count()).select_from(QuotationItem)
            .where(QuotationItem.quotation_id == updated.quotation_id)
        )
        assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_duplicate_after_send(self, db_session, quotation_service, sent_quotation, inquiry):
        data = QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS)
        with pytest.raises(DuplicateResourceException) as exc_info:
            await quotation_service.create_quotation(db_session, data)
        assert exc_info.value.existing_id == sent_quotation.quotation_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("broken, index", [
        ({"material": "", "thickness": "2mm", "quantity": 1, "unit_price": "5"}, 1),
        ({"material": "Steel", "thickness": None, "quantity": 1, "unit_price": "5"}, 1),
        ({"material": "Steel", "thickness": "2mm", "quantity": None, "unit_price": "5"}, 1),
        ({"material": "Steel", "thickness": "2mm", "quantity": 1, "unit_price": "0"}, 1),
    ])
    async def test_invalid_line_item(self, db_session, quotation_service, inquiry, broken, index):
        data = QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=[LINE_ITEMS[0], broken])
        with pytest.raises(InvalidLineItemException) as exc_info:
            await quotation_service.create_quotation(db_session, data)
        assert exc_info.value.details["index"] == index

    @pytest.mark.asyncio
    async def test_supplied_total_must_match(self, db_session, quotation_service, inquiry):
        data = QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS, total_amount=Decimal("95"))
        with pytest.raises(ValidationException):
            await quotation_service.create_quotation(db_session, data)

    @pytest.mark.asyncio
    async def test_upload_mode_uses_total_verbatim(self, db_session, quotation_service, inquiry):
        data = QuotationCreateRequest(
            inquiry_id=inquiry.inquiry_id,
            is_upload_quotation=True,
            total_amount=Decimal("1234.5"),
        )
        quotation = await quotation_service.create_quotation(db_session, data)
        assert quotation.is_upload_quotation is True
        assert quotation.total_amount == Decimal("1234.50")

        detail = await quotation_service.get_quotation_detail(db_session, quotation.quotation_id)
        assert detail.items == []

    @pytest.mark.asyncio
    async def test_upload_mode_rejects_line_items(self, db_session, quotation_service, inquiry):
        data = QuotationCreateRequest(
            inquiry_id=inquiry.inquiry_id,
            is_upload_quotation=True,
            total_amount=Decimal("90"),
            parts=LINE_ITEMS,
        )
        with pytest.raises(ValidationException):
            await quotation_service.create_quotation(db_session, data)

    def test_upload_mode_requires_total(self):
        with pytest.raises(ValueError):
            QuotationCreateRequest(inquiry_id=uuid4(), is_upload_quotation=True)

    def test_parts_may_be_json_string(self):
        data = QuotationCreateRequest(
            inquiry_id=uuid4(),
            parts='[{"material": "Steel", "thickness": 2, "quantity": 1, "unit_price": "3"}]'
        )
        assert data.parts[0].thickness == "2"

    def test_aware_valid_until_is_stored_naive(self):
        data = QuotationCreateRequest(inquiry_id=uuid4(), parts=LINE_ITEMS, valid_until="2099-01-01T00:00:00Z")
        expected = datetime(2099, 1, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        assert data.valid_until.tzinfo is None
        assert data.valid_until == expected

    def test_delivery_dates_are_stored_naive(self):
        dispatch = DispatchRequest(courier="DHL", tracking_number="D1", estimated_delivery="2099-01-10T12:00:00+05:30")
        delivered = DeliveredRequest(actual_delivery="2099-01-11T08:00:00Z")
        naive = DispatchUpdateRequest(estimated_delivery="2099-01-10T12:00:00")
        assert dispatch.estimated_delivery.tzinfo is None
        assert delivered.actual_delivery.tzinfo is None
        assert naive.estimated_delivery == datetime(2099, 1, 10, 12, 0)


class TestSendQuotation:
    """发送报价单"""

    @pytest.mark.asyncio
    async def test_send_notifies_customer(self, db_session, sent_quotation, notifier):
        assert sent_quotation.status == QuotationStatus.SENT
        assert sent_quotation.sent_at is not None

        ready = [(c, r) for c, t, r, _ in notifier.sent if t == NotificationTemplate.QUOTATION_READY]
        assert {c for c, _ in ready} == {
            NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.WEBSOCKET
        }
        assert all(r.email == "buyer@example.com" for _, r in ready)

    @pytest.mark.asyncio
    async def test_send_twice_rejected(self, db_session, quotation_service, sent_quotation):
        with pytest.raises(InvalidStateTransitionException) as exc_info:
            await quotation_service.send_quotation(db_session, sent_quotation.quotation_id)
        assert exc_info.value.current_status == QuotationStatus.SENT


class TestRespond:
    """客户答复报价单"""

    @pytest.mark.asyncio
    async def test_accept_creates_single_order(self, db_session, sent_quotation, pending_order, inquiry):
        """接受报价单生成唯一订单"""
        assert pending_order.status == OrderStatus.PENDING
        assert pending_order.payment_status == PaymentStatus.PENDING
        assert pending_order.total_amount == Decimal("90.00")
        assert pending_order.order_no.startswith("ORD")
        assert await count_orders(db_session, sent_quotation.quotation_id) == 1

        await db_session.refresh(sent_quotation)
        await db_session.refresh(inquiry)
        assert sent_quotation.status == QuotationStatus.ACCEPTED
        assert sent_quotation.accepted_at is not None
        assert inquiry.status == InquiryStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_retry_returns_same_order(
        self, db_session, quotation_service, sent_quotation, pending_order, customer_actor
    ):
        _, again = await quotation_service.respond(
            db_session, sent_quotation.quotation_id, customer_actor, QuotationDecision.ACCEPTED
        )
        assert again.order_id == pending_order.order_id
        assert await count_orders(db_session, sent_quotation.quotation_id) == 1

    @pytest.mark.asyncio
    async def test_reject(self, db_session, quotation_service, order_service, sent_quotation, customer_actor, inquiry, notifier):
        """拒绝报价单，不生成订单"""
        quotation, order = await quotation_service.respond(
            db_session, sent_quotation.quotation_id, customer_actor,
            QuotationDecision.REJECTED, notes="too expensive"
        )
        assert order is None
        assert quotation.status == QuotationStatus.REJECTED
        assert quotation.rejection_reason == "too expensive"
        assert quotation.rejected_at is not None

        await db_session.refresh(inquiry)
        assert inquiry.status == InquiryStatus.REJECTED
        assert await order_service.get_order_for_quotation(db_session, quotation.quotation_id) is None

        decision = [p for _, t, _, p in notifier.sent if t == NotificationTemplate.QUOTATION_DECISION]
        assert decision and "too expensive" in decision[0]["reason"]

    @pytest.mark.asyncio
    async def test_expired_quotation(self, db_session, quotation_service, sent_quotation, customer_actor):
        """过期报价单不能接受"""
        sent_quotation.valid_until = datetime.now() - timedelta(days=1)
        await db_session.commit()

        with pytest.raises(QuotationExpiredException):
            await quotation_service.respond(
                db_session, sent_quotation.quotation_id, customer_actor, QuotationDecision.ACCEPTED
            )

        await db_session.refresh(sent_quotation)
        assert sent_quotation.status == QuotationStatus.EXPIRED
        assert sent_quotation.expired_at is not None
        assert await count_orders(db_session, sent_quotation.quotation_id) == 0

    @pytest.mark.asyncio
    async def test_respond_on_draft(self, db_session, quotation_service, draft_quotation, customer_actor):
        with pytest.raises(InvalidStateTransitionException) as exc_info:
            await quotation_service.respond(
                db_session, draft_quotation.quotation_id, customer_actor, QuotationDecision.ACCEPTED
            )
        assert exc_info.value.error_code == "QUOTATION_NOT_SENT"

    @pytest.mark.asyncio
    async def test_reject_after_accept(self, db_session, quotation_service, sent_quotation, pending_order, customer_actor):
        with pytest.raises(InvalidStateTransitionException) as exc_info:
            await quotation_service.respond(
                db_session, sent_quotation.quotation_id, customer_actor, QuotationDecision.REJECTED
            )
        assert exc_info.value.error_code == "QUOTATION_NOT_SENT"

    @pytest.mark.asyncio
    async def test_other_customer_denied(self, db_session, quotation_service, sent_quotation):
        stranger = Actor(user_id=uuid4(), role=UserRole.CUSTOMER)
        with pytest.raises(AccessDeniedException):
            await quotation_service.respond(
                db_session, sent_quotation.quotation_id, stranger, QuotationDecision.ACCEPTED
            )

    @pytest.mark.asyncio
    async def test_back_office_may_respond(self, db_session, quotation_service, sent_quotation, admin_actor):
        quotation, order = await quotation_service.respond(
            db_session, sent_quotation.quotation_id, admin_actor, QuotationDecision.ACCEPTED
        )
        assert quotation.status == QuotationStatus.ACCEPTED
        assert order is not None


class TestOrderCreatedAndExpiry:
    """生成订单标记与批量过期"""

    @pytest.mark.asyncio
    async def test_mark_order_created_is_idempotent(self, db_session, quotation_service, sent_quotation, pending_order):
        assert await quotation_service.mark_order_created(db_session, sent_quotation.quotation_id) is True
        assert await quotation_service.mark_order_created(db_session, sent_quotation.quotation_id) is False

        await db_session.refresh(sent_quotation)
        assert sent_quotation.status == QuotationStatus.ORDER_CREATED
        assert sent_quotation.order_created_at is not None

    @pytest.mark.asyncio
    async def test_mark_order_created_requires_acceptance(self, db_session, quotation_service, sent_quotation):
        with pytest.raises(InvalidStateTransitionException):
            await quotation_service.mark_order_created(db_session, sent_quotation.quotation_id)

    @pytest.mark.asyncio
    async def test_expire_overdue(self, db_session, quotation_service, sent_quotation):
        assert await quotation_service.expire_overdue(db_session) == 0
        later = sent_quotation.valid_until + timedelta(seconds=1)
        assert await quotation_service.expire_overdue(db_session, now=later) == 1

        await db_session.refresh(sent_quotation)
        assert sent_quotation.status == QuotationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_customer_list_hides_drafts(self, db_session, quotation_service, draft_quotation, customer):
        assert await quotation_service.list_customer_quotations(db_session, customer.user_id) == []
        await quotation_service.send_quotation(db_session, draft_quotation.quotation_id)
        listed = await quotation_service.list_customer_quotations(db_session, customer.user_id)
        assert [q.quotation_id for q in listed] == [draft_quotation.quotation_id]


class TestNumbering:
    """报价单/订单编号"""

    @pytest.mark.asyncio
    async def test_redis_daily_sequence(self, db_session):
        redis = FakeRedis()
        numbers = NumberGenerator(redis=redis, clock=lambda: FIXED_DAY)

        assert await numbers.quotation_no(db_session) == "QT241215001"
        assert await numbers.quotation_no(db_session) == "QT241215002"
        assert redis.expiry["quotation_no:241215"] == NumberGenerator.SEQUENCE_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_sequence_overflow_falls_back_to_random(self, db_session):
        numbers = NumberGenerator(redis=FakeRedis(start=999), clock=lambda: FIXED_DAY, rng=SequenceRng([42]))
        assert await numbers.quotation_no(db_session) == "QT241215042"

    @pytest.mark.asyncio
    async def test_collision_is_retried(self, db_session, notifier, inquiry):
        numbers = NumberGenerator(clock=lambda: FIXED_DAY, rng=SequenceRng([7, 7, 8]))
        service = QuotationService(notifier, numbers=numbers)

        quotation = await service.create_quotation(
            db_session, QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS)
        )
        assert quotation.quotation_no == "QT241215007"
        assert await numbers.quotation_no(db_session) == "QT241215008"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, db_session, notifier, inquiry):
        numbers = NumberGenerator(clock=lambda: FIXED_DAY, rng=SequenceRng([7] * 6))
        service = QuotationService(notifier, numbers=numbers)
        await service.create_quotation(
            db_session, QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS)
        )
        with pytest.raises(NumberGenerationError):
            await numbers.quotation_no(db_session)

    @pytest.mark.asyncio
    async def test_order_number_is_millisecond_timestamp(self, db_session):
        numbers = NumberGenerator(clock=lambda: FIXED_DAY)
        assert await numbers.order_no(db_session) == f"ORD{int(FIXED_DAY.timestamp() * 1000)}"

    @pytest.mark.asyncio
    async def test_inquiry_number_format(self, db_session, inquiry):
        assert inquiry.inquiry_no.startswith("INQ")
        assert len(inquiry.inquiry_no) == 13
        result = await db_session.execute(select(Inquiry.inquiry_no))
        assert result.scalars().all() == [inquiry.inquiry_no]
