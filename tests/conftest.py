"""
Pytest configuration and fixtures.
"""

import sys
import os
import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional, List, Dict, Any

# Test configuration must be in place before paycore.config is imported
os.environ["DATABASE_URL"] = ""
os.environ["APP_ENV"] = "development"
os.environ["PAYPLUS_API_URL"] = "https://payplus.test/api/v1.0/"
os.environ["PAYPLUS_API_KEY"] = "test-api-key"
os.environ["PAYPLUS_SECRET_KEY"] = "test-secret"
os.environ["PAYPLUS_PAYMENT_PAGE_UID"] = "test-page-uid"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ALERT_WEBHOOK_URL"] = ""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Add paycore to path
sys.path.append(os.getcwd())

from paycore.clock import utcnow
from paycore.config import settings
from paycore.database import Base
from paycore.fsm.states import SessionStatus, TransactionStatus
import paycore.models  # noqa: F401  (registers tables)
from paycore.models.catalog import Product, Coupon
from paycore.models.payment_session import PaymentSession
from paycore.models.transaction import Transaction
from paycore.services.alert_service import AlertService
from paycore.services.payplus_service import PayPlusService


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """
    Async engine on a file database per test.
    A file (not :memory:) so concurrent sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paycore.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


class RecordingAlerts(AlertService):
    """AlertService that keeps alerts in memory instead of logging/posting."""

    def __init__(self):
        super().__init__()
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, kind, transaction_id, message, details=None):
        self.sent.append({
            "kind": kind,
            "transaction_id": transaction_id,
            "message": message,
            "details": details or {},
        })
        return True

    @property
    def kinds(self) -> List[str]:
        return [a["kind"] for a in self.sent]


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


# ----------------------------------------------------------------------------
# PayPlus API double
# ----------------------------------------------------------------------------

def payment_data(
    status_code: Optional[str] = "000",
    uid: str = "pp-tx-1",
    status: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Transactions/PaymentData body carrying a transaction."""
    transaction = {"uid": uid, "status_code": status_code, "status_description": "Approved"}
    if status is not None:
        transaction["status"] = status
    if status_code not in (None, "000"):
        transaction["status_description"] = "Declined"
    transaction.update(extra)
    return {"results": {"status": "success", "code": 0}, "data": {"transaction": transaction}}


def no_payment_data() -> Dict[str, Any]:
    """Transactions/PaymentData body for a page nobody paid on yet."""
    return {"results": {"status": "success", "code": 0}, "data": {}}


class PayPlusStub:
    """Scripted PayPlus REST API served through httpx.MockTransport."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        # Queue of (http_status, body) for Transactions/PaymentData
        self.status_responses: List[tuple] = []
        self.link_status = 200
        self.page_counter = 0

    def queue_status(self, body: Dict[str, Any], http_status: int = 200) -> None:
        self.status_responses.append((http_status, body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        path = request.url.path
        self.requests.append({"path": path, "body": body, "headers": dict(request.headers)})

        if path.endswith("PaymentPages/generateLink"):
            if self.link_status != 200:
                return httpx.Response(self.link_status, text="Service Unavailable")
            self.page_counter += 1
            page_uid = f"page-{self.page_counter}-{uuid.uuid4().hex[:8]}"
            return httpx.Response(200, json={
                "results": {"status": "success", "code": 0, "description": "operation has been success"},
                "data": {
                    "page_request_uid": page_uid,
                    "payment_page_link": f"https://payments.payplus.test/{page_uid}",
                },
            })

        if path.endswith("Transactions/PaymentData"):
            if self.status_responses:
                http_status, payload = self.status_responses.pop(0)
            else:
                http_status, payload = 200, no_payment_data()
            return httpx.Response(http_status, json=payload)

        return httpx.Response(404, json={"results": {"status": "error"}})

    def calls(self, suffix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["path"].endswith(suffix)]


@pytest.fixture
def payplus_api() -> PayPlusStub:
    return PayPlusStub()


@pytest.fixture
def payplus(payplus_api) -> PayPlusService:
    return PayPlusService(transport=httpx.MockTransport(payplus_api.handler))


def webhook_body(
    page_request_uid: str,
    status_code: Optional[str] = "000",
    uid: str = "pp-tx-1",
    status: Optional[str] = None,
    **transaction_extra: Any,
) -> bytes:
    """Raw PayPlus callback body."""
    transaction = {
        "payment_page_request_uid": page_request_uid,
        "uid": uid,
        "status_code": status_code,
        "status_description": "Approved" if status_code == "000" else "Declined",
    }
    if status is not None:
        transaction["status"] = status
    transaction.update(transaction_extra)
    payload = {"transaction_type": "Charge", "transaction": transaction}
    return json.dumps(payload).encode()


def signed_headers(service: PayPlusService, body: bytes) -> Dict[str, str]:
    return {
        "content-type": "application/json",
        "user-agent": "PayPlus",
        "hash": service.sign(body),
    }


# ----------------------------------------------------------------------------
# Catalog and checkout factories
# ----------------------------------------------------------------------------

@pytest.fixture
def make_product(session_factory):
    async def _make(
        product_type: str = "course",
        price: str = "100.00",
        title: str = "Intro Course",
        is_published: bool = True,
        access_days: Optional[int] = None,
    ) -> Product:
        async with session_factory() as session:
            product = Product(
                id=uuid.uuid4(),
                product_type=product_type,
                title=title,
                price=Decimal(price),
                is_published=is_published,
                access_days=access_days,
            )
            session.add(product)
            await session.commit()
            return product

    return _make


@pytest.fixture
def make_coupon(session_factory):
    async def _make(code: str, discount_value: str, discount_type: str = "percentage", **fields) -> Coupon:
        async with session_factory() as session:
            coupon = Coupon(
                id=uuid.uuid4(),
                code=code,
                discount_type=discount_type,
                discount_value=Decimal(discount_value),
                **fields,
            )
            session.add(coupon)
            await session.commit()
            return coupon

    return _make


@pytest.fixture
def make_checkout(session_factory, make_product):
    """
    Persist a session with a pending transaction, as checkout leaves them.
    Returns the Transaction.
    """

    async def _make(
        user_id: Optional[uuid.UUID] = None,
        products: Optional[List[Product]] = None,
        page_request_uid: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        session_status: str = SessionStatus.CREATED.value,
        subscription_id: Optional[uuid.UUID] = None,
        applied_coupons: Optional[List[Dict[str, Any]]] = None,
    ) -> Transaction:
        user_id = user_id or uuid.uuid4()
        if products is None:
            products = [await make_product()]
        total = sum((p.price for p in products), Decimal("0"))

        async with session_factory() as session:
            payment_session = PaymentSession(
                id=uuid.uuid4(),
                user_id=user_id,
                purchase_intents=[
                    {
                        "entity_type": p.product_type,
                        "entity_id": str(p.id),
                        "amount": str(p.price),
                        "title": p.title,
                    }
                    for p in products
                ],
                subscription_id=subscription_id,
                total_amount=total,
                original_amount=total,
                discount_amount=Decimal("0"),
                applied_coupons=applied_coupons or [],
                session_status=session_status,
                page_request_uid=page_request_uid or f"page-{uuid.uuid4().hex}",
                payment_page_url="https://payments.payplus.test/page",
                expires_at=expires_at or utcnow() + timedelta(minutes=settings.session_ttl_minutes),
            )
            transaction = Transaction(
                id=uuid.uuid4(),
                session_id=payment_session.id,
                user_id=user_id,
                amount=total,
                status=TransactionStatus.PENDING.value,
                page_request_uid=payment_session.page_request_uid,
            )
            session.add_all([payment_session, transaction])
            await session.commit()
            return transaction

    return _make
