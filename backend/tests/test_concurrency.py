"""
并发冲突测试

第二个会话模拟同时到达的另一个请求：预先加载的对象停留在旧状态，
条件更新或唯一约束失败后，服务应以数据库中的最新记录为准。
"""
import pytest
from decimal import Decimal

from sqlalchemy import select, func

from app.core.middleware import DuplicateResourceException, InvalidStateTransitionException
from app.models.order import Order
from app.models.quotation import Quotation
from app.schemas.notification import NotificationTemplate
from app.schemas.order import OrderStatus
from app.schemas.payment import PaymentStatus
from app.schemas.quotation import QuotationCreateRequest, QuotationDecision, QuotationStatus

from tests.conftest import LINE_ITEMS


def miss_first(lookup, misses: int = 1):
    """包装查询函数：前 misses 次返回 None，模拟对方尚未提交时的检查"""
    calls = []

    async def wrapper(db, key):
        calls.append(key)
        if len(calls) <= misses:
            return None
        return await lookup(db, key)

    return wrapper


async def order_count(db, quotation_id):
    return (await db.execute(
        select(func.count()).select_from(Order).where(Order.quotation_id == quotation_id)
    )).scalar()


class TestQuotationRaces:
    """报价单并发创建与答复"""

    @pytest.mark.asyncio
    async def test_concurrent_create_reports_existing(
        self, session_maker, quotation_service, draft_quotation, inquiry, admin, monkeypatch
    ):
        monkeypatch.setattr(
            quotation_service, "get_quotation_for_inquiry", miss_first(quotation_service.get_quotation_for_inquiry)
        )
        data = QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS)

        async with session_maker() as other:
            with pytest.raises(DuplicateResourceException) as exc_info:
                await quotation_service.create_quotation(other, data, prepared_by=admin.user_id)

        assert exc_info.value.existing_id == draft_quotation.quotation_id

    @pytest.mark.asyncio
    async def test_stale_accept_returns_winner_order(
        self, db_session, session_maker, quotation_service, sent_quotation, customer_actor, notifier
    ):
        quotation_id = sent_quotation.quotation_id
        async with session_maker() as other:
            stale = await other.get(Quotation, quotation_id)
            assert stale.status == QuotationStatus.SENT

            _, first = await quotation_service.respond(
                db_session, quotation_id, customer_actor, QuotationDecision.ACCEPTED
            )
            notifier.clear()

            quotation, second = await quotation_service.respond(
                other, quotation_id, customer_actor, QuotationDecision.ACCEPTED
            )
            assert quotation.status == QuotationStatus.ACCEPTED
            assert quotation.quotation_no == sent_quotation.quotation_no

        assert second.order_id == first.order_id
        assert await order_count(db_session, quotation_id) == 1
        # 落败的请求不再发送答复通知
        assert NotificationTemplate.QUOTATION_DECISION not in notifier.templates()

    @pytest.mark.asyncio
    async def test_accept_retry_during_order_insert(
        self, db_session, session_maker, quotation_service, order_service,
        sent_quotation, pending_order, customer_actor, monkeypatch
    ):
        # 两次查询都没看到订单，插入时撞上唯一约束
        monkeypatch.setattr(
            order_service, "get_order_for_quotation", miss_first(order_service.get_order_for_quotation, misses=2)
        )

        async with session_maker() as other:
            quotation, order = await quotation_service.respond(
                other, sent_quotation.quotation_id, customer_actor, QuotationDecision.ACCEPTED
            )
            assert quotation.quotation_no == sent_quotation.quotation_no

        assert order.order_id == pending_order.order_id
        assert await order_count(db_session, sent_quotation.quotation_id) == 1


class TestOrderRaces:
    """订单并发建单与状态推进"""

    @pytest.mark.asyncio
    async def test_create_conflict_keeps_quotation_loaded(
        self, db_session, session_maker, order_service, sent_quotation, pending_order, monkeypatch
    ):
        monkeypatch.setattr(
            order_service, "get_order_for_quotation", miss_first(order_service.get_order_for_quotation)
        )

        async with session_maker() as other:
            quotation = await other.get(Quotation, sent_quotation.quotation_id)
            order = await order_service.create_from_accepted_quotation(other, quotation)

            assert order.order_id == pending_order.order_id
            # 回滚后报价单已重新加载，不会触发隐式 IO
            assert quotation.quotation_no == sent_quotation.quotation_no
            assert quotation.status == QuotationStatus.ACCEPTED

        assert await order_count(db_session, sent_quotation.quotation_id) == 1

    @pytest.mark.asyncio
    async def test_stale_status_update_rejected(self, db_session, session_maker, order_service, pending_order):
        async with session_maker() as other:
            stale = await other.get(Order, pending_order.order_id)
            assert stale.status == OrderStatus.PENDING

            await order_service.update_status(db_session, pending_order.order_id, OrderStatus.CONFIRMED)

            with pytest.raises(InvalidStateTransitionException) as exc_info:
                await order_service.update_status(other, pending_order.order_id, OrderStatus.CONFIRMED)
            assert exc_info.value.current_status == OrderStatus.CONFIRMED
            assert stale.status == OrderStatus.CONFIRMED


class TestPaymentRaces:
    """并发确认付款"""

    @pytest.mark.asyncio
    async def test_stale_confirm(self, db_session, session_maker, payment_service, pending_order, notifier):
        order_id = pending_order.order_id
        async with session_maker() as same_txn, session_maker() as other_txn:
            for session in (same_txn, other_txn):
                stale = await session.get(Order, order_id)
                assert stale.payment_status == PaymentStatus.PENDING

            await payment_service.confirm(db_session, order_id, "TXN-1", Decimal("90"))
            notifier.clear()

            # 同一交易号：返回已确认的订单，不重复通知
            order = await payment_service.confirm(same_txn, order_id, "TXN-1", Decimal("90"))
            assert order.status == OrderStatus.CONFIRMED
            assert order.payment_transaction_id == "TXN-1"
            assert notifier.sent == []

            # 其他交易号：冲突
            with pytest.raises(DuplicateResourceException) as exc_info:
                await payment_service.confirm(other_txn, order_id, "TXN-2", Decimal("90"))
            assert exc_info.value.details["transaction_id"] == "TXN-1"
