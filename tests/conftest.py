"""
Shared fixtures for the escrow engine test suite.

Key Components:
1. In-memory SQLite database with the full schema, one per test
2. A data factory for users, services, orders at any lifecycle stage and funded wallets
3. A fake payment gateway and a recording notifier
"""

import itertools
import logging
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base, User, UserRole, Service, Order, LedgerEntryType
from services.escrow_service import EscrowService
from services.notification_service import Notifier, Notification, set_notifier
from services.order_service import OrderService
from services.payment_gateway import PaymentGateway, PaymentSession, MidtransGateway
from services.wallet_service import WalletService
from utils.exception_handler import UpstreamFailureError

logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

TEST_SERVER_KEY = "SB-Mid-server-test-key"


class FakeGateway(PaymentGateway):
    """Payment gateway double: hands out sequential tokens or fails on demand"""

    provider = "fake"

    def __init__(self):
        self.fail_next = False
        self.calls = []
        self._counter = itertools.count(1)
        self._midtrans = MidtransGateway(server_key=TEST_SERVER_KEY)

    def create_session(self, order_id, amount, buyer, items):
        self.calls.append((order_id, amount))
        if self.fail_next:
            self.fail_next = False
            raise UpstreamFailureError("Failed to create payment session")
        n = next(self._counter)
        return PaymentSession(token=f"tok-{n}", redirect_url=f"https://pay.example/{n}")

    def verify_signature(self, external_order_id, status_code, gross_amount, signature):
        return signature == "valid"

    def normalize_status(self, raw_status, fraud_status=None):
        return self._midtrans.normalize_status(raw_status, fraud_status)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[Notification] = []

    def notify(self, user_id, content, link, notification_type):
        self.sent.append(Notification(user_id=user_id, content=content, link=link, type=notification_type))

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.sent if n.user_id == user_id]


class TestDataFactory:
    """Builds realistic records through the services themselves"""

    __test__ = False

    def __init__(self, session, gateway: FakeGateway):
        self.session = session
        self.gateway = gateway
        self._emails = itertools.count(1)

    def create_user(self, full_name: str = "Test User", role: UserRole = UserRole.BUYER) -> User:
        user = User(full_name=full_name, email=f"user{next(self._emails)}@example.com", role=role.value)
        self.session.add(user)
        self.session.commit()
        return user

    def create_service(
        self,
        seller: User,
        price: int = 100_000,
        revisions: int = 2,
        delivery_time: int = 3,
        title: str = "Logo design",
    ) -> Service:
        service = Service(
            seller_id=seller.id,
            title=title,
            price=price,
            delivery_time=delivery_time,
            revisions=revisions,
        )
        self.session.add(service)
        self.session.commit()
        return service

    def orders(self) -> OrderService:
        return OrderService(self.session, gateway=self.gateway)

    def create_order(self, buyer: User, service: Service, requirements: Optional[str] = None) -> Order:
        return self.orders().create(buyer.id, service.id, requirements=requirements)

    def create_waiting_order(self, buyer: User, service: Service) -> Order:
        order = self.create_order(buyer, service)
        self.orders().confirm(buyer.id, order.id)
        return order

    def create_paid_order(self, buyer: User, service: Service) -> Order:
        order = self.create_waiting_order(buyer, service)
        EscrowService(self.session).on_payment_verified(order.id, order.price, {"transaction_id": "txn-test"})
        return order

    def create_in_progress_order(self, buyer: User, service: Service) -> Order:
        order = self.create_paid_order(buyer, service)
        self.orders().start_work(service.seller_id, order.id)
        return order

    def create_delivered_order(self, buyer: User, service: Service) -> Order:
        order = self.create_in_progress_order(buyer, service)
        self.orders().deliver(service.seller_id, order.id, ["https://files.example/final.zip"])
        return order

    def fund_wallet(self, user: User, amount: int):
        return WalletService(self.session).adjust_balance(
            "system", user.id, LedgerEntryType.ADJUSTMENT, amount, "Opening balance for the test scenario"
        )


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_engine):
    factory = sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    """Pin the configuration values the scenarios are written against"""
    monkeypatch.setattr(Config, "MIDTRANS_SERVER_KEY", TEST_SERVER_KEY)
    monkeypatch.setattr(Config, "PLATFORM_FEE_PERCENTAGE", Decimal("10"))
    monkeypatch.setattr(Config, "WITHDRAWAL_FEE_FIXED", 5000)
    monkeypatch.setattr(Config, "WITHDRAWAL_FEE_PERCENTAGE", Decimal("0"))
    monkeypatch.setattr(Config, "MIN_WITHDRAWAL_AMOUNT", 50_000)
    monkeypatch.setattr(Config, "MAX_WITHDRAWAL_AMOUNT", 10_000_000)
    monkeypatch.setattr(Config, "MAX_PENDING_WITHDRAWALS", 3)
    monkeypatch.setattr(Config, "WALLET_MIN_BALANCE", 0)
    return Config


@pytest.fixture(autouse=True)
def notifier():
    recording = RecordingNotifier()
    set_notifier(recording)
    yield recording
    set_notifier(None)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def midtrans_gateway():
    return MidtransGateway(server_key=TEST_SERVER_KEY)


@pytest.fixture
def test_data_factory(test_db_session, fake_gateway):
    return TestDataFactory(test_db_session, fake_gateway)


@pytest.fixture
def buyer(test_data_factory):
    return test_data_factory.create_user("Budi Buyer", UserRole.BUYER)


@pytest.fixture
def seller(test_data_factory):
    return test_data_factory.create_user("Sari Seller", UserRole.SELLER)


@pytest.fixture
def admin(test_data_factory):
    return test_data_factory.create_user("Ayu Admin", UserRole.ADMIN)


@pytest.fixture
def service(test_data_factory, seller):
    return test_data_factory.create_service(seller)
