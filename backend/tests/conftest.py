"""
测试配置和公共夹具

每个测试使用独立的内存 SQLite 数据库，通知使用记录型替身，不访问网络。
"""
import os

# 必须在导入 app 之前设置
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_TO_FILE"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["SMTP_HOST"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
import app.models.inquiry  # noqa: F401
import app.models.notification  # noqa: F401
import app.models.order  # noqa: F401
import app.models.quotation  # noqa: F401
from app.models.user import User
from app.schemas.common import Actor, UserRole
from app.schemas.inquiry import InquiryCreateRequest
from app.schemas.quotation import QuotationCreateRequest, QuotationDecision
from app.services.inquiry_service import InquiryService
from app.services.notification_service import Notifier, WebSocketChannel
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService
from app.services.quotation_service import QuotationService


# 10×5 + 20×2 = 90
LINE_ITEMS = [
    {"part_ref": "P-001", "material": "Mild Steel", "thickness": "2mm", "quantity": 5, "unit_price": "10"},
    {"part_ref": "P-002", "material": "Aluminium", "thickness": "3mm", "quantity": 2, "unit_price": "20"},
]

PARTS = [
    {"part_ref": "P-001", "material": "Mild Steel", "thickness": "2mm", "quantity": 5},
    {"part_ref": "P-002", "material": "Aluminium", "thickness": "3mm", "quantity": 2},
]

ADDRESS = {"street": "12 Industrial Rd", "city": "Pune", "country": "India"}


class RecordingNotifier(Notifier):
    """记录所有通知，不真正发送；fail=True 时每次发送都抛出异常"""

    def __init__(self, fail: bool = False):
        super().__init__(channels=[WebSocketChannel()], timeout=1.0)
        self.fail = fail
        self.sent = []

    async def notify(self, channel, template, recipient, payload):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append((channel, template, recipient, payload))
        return True

    def templates(self):
        return [template for _, template, _, _ in self.sent]

    def clear(self):
        self.sent.clear()


@pytest.fixture
async def engine():
    """内存数据库引擎（每个测试一份）"""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def order_service(notifier):
    return OrderService(notifier)


@pytest.fixture
def quotation_service(notifier, order_service):
    return QuotationService(notifier, orders=order_service)


@pytest.fixture
def payment_service(notifier, order_service, quotation_service):
    return PaymentService(notifier, orders=order_service, quotations=quotation_service)


@pytest.fixture
def inquiry_service(notifier):
    return InquiryService(notifier)


@pytest.fixture
async def customer(db_session):
    user = User(
        email="buyer@example.com",
        first_name="Wei",
        last_name="Li",
        phone_number="8613800000000",
        role=UserRole.CUSTOMER,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def admin(db_session):
    user = User(email="ops@komacut.com", first_name="Ops", last_name="Team", role=UserRole.ADMIN)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def customer_actor(customer):
    return Actor(user_id=customer.user_id, role=UserRole.CUSTOMER)


@pytest.fixture
def admin_actor(admin):
    return Actor(user_id=admin.user_id, role=UserRole.ADMIN)


@pytest.fixture
async def inquiry(db_session, inquiry_service, customer, admin):
    data = InquiryCreateRequest(parts=PARTS, delivery_address=ADDRESS)
    return await inquiry_service.create_inquiry(db_session, customer.user_id, data)


@pytest.fixture
async def draft_quotation(db_session, quotation_service, inquiry, admin):
    data = QuotationCreateRequest(inquiry_id=inquiry.inquiry_id, parts=LINE_ITEMS)
    return await quotation_service.create_quotation(db_session, data, prepared_by=admin.user_id)


@pytest.fixture
async def sent_quotation(db_session, quotation_service, draft_quotation):
    return await quotation_service.send_quotation(db_session, draft_quotation.quotation_id)


@pytest.fixture
async def pending_order(db_session, quotation_service, sent_quotation, customer_actor):
    _, created = await quotation_service.respond(
        db_session, sent_quotation.quotation_id, customer_actor, QuotationDecision.ACCEPTED
    )
    return created


@pytest.fixture
async def client(session_maker, notifier):
    """HTTP 测试客户端：每个请求使用独立会话"""
    from httpx import AsyncClient, ASGITransport
    from main import app

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.notifier = notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
