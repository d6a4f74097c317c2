"""
Shared fixtures for the Donation Service tests.

Settings are read once at import time, so the environment is pinned here
before any donation_service module is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOYYIBPAY_URL"] = "https://dev.toyyibpay.com"
os.environ["TOYYIBPAY_SECRET_KEY"] = "test-secret-key"
os.environ["TOYYIBPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["RESEND_API_KEY"] = "re_test_key"
os.environ["KAFKA_ENABLED"] = "false"
os.environ["TRACING_ENABLED"] = "false"

import uuid
from datetime import datetime, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from donation_service.core.errors import EmailDeliveryError, GatewayError
from donation_service.database.database import SessionLocal, engine, get_db
from donation_service.models import Base, Donation, DonationLog, DonationStatus, Project
from donation_service.services.payment_gateway import (
    BillRequest,
    BillResult,
    GatewayPaymentStatus,
    GatewayStatusReport,
    PaymentGateway,
)


# ============================================================================
# FAKES
# ============================================================================

class FakeGateway(PaymentGateway):
    """In-memory gateway: records bills and answers status queries from ``report``"""

    def __init__(self, environment: str = "sandbox"):
        self._environment = environment
        self.bills: List[BillRequest] = []
        self.report = GatewayStatusReport(status=GatewayPaymentStatus.PENDING)
        self.create_error: Optional[GatewayError] = None
        self.query_error: Optional[GatewayError] = None
        self.query_calls = 0
        self.general_fund_category = "CAT-GENERAL"

    @property
    def environment(self) -> str:
        return self._environment

    def set_status(self, status: GatewayPaymentStatus, transaction_id: Optional[str] = None, reason: Optional[str] = None):
        gateway_status = {"completed": "1", "pending": "2", "failed": "3"}[status.value]
        self.report = GatewayStatusReport(
            status=status,
            transaction_id=transaction_id,
            reason=reason,
            gateway_status=gateway_status,
        )

    async def create_bill(self, request: BillRequest) -> BillResult:
        self.bills.append(request)
        if self.create_error:
            raise self.create_error
        bill_code = f"BILL{len(self.bills):03d}"
        return BillResult(
            bill_code=bill_code,
            payment_url=f"https://dev.toyyibpay.com/{bill_code}",
            category_code=request.category_code or self.general_fund_category,
        )

    async def query_status(self, payment_reference: str, bill_code: str) -> GatewayStatusReport:
        self.query_calls += 1
        if self.query_error:
            raise self.query_error
        return self.report


class FakeEmailClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, message) -> str:
        if self.fail:
            raise EmailDeliveryError("Email provider rejected the message")
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


class FakeProducer:
    def __init__(self):
        self.published = []

    async def publish_donation_completed(self, donation) -> bool:
        self.published.append(donation.payment_reference)
        return True


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def db():
    """Fresh in-memory schema per test"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_client():
    return FakeEmailClient()


@pytest.fixture
def failing_email_client():
    return FakeEmailClient(fail=True)


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def project(db):
    project = Project(
        slug="clean-water",
        title={"en": "Clean Water", "ms": "Air Bersih"},
        description={"en": "Wells for rural schools", "ms": ""},
        is_published=True,
        donation_enabled=True,
        donation_goal=5000000,
        donation_raised=0,
        gateway_category_code="CAT-WATER",
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


@pytest.fixture
def make_donation(db):
    """Insert a donation row directly, bypassing intake"""
    def _make(
        status: DonationStatus = DonationStatus.PENDING,
        bill_code: Optional[str] = "BILL001",
        created_at: Optional[datetime] = None,
        **overrides
    ) -> Donation:
        values = dict(
            payment_reference=f"YIP-1735689600000-{uuid.uuid4().hex[:6].upper()}",
            donor_name="Siti Aminah",
            donor_email="siti@example.com",
            donor_phone="012-3456789",
            is_anonymous=False,
            amount=5000,
            currency="MYR",
            payment_status=status,
            payment_attempts=1,
            gateway_bill_code=bill_code,
            environment="production",
            created_at=created_at or datetime.now(timezone.utc),
        )
        if status == DonationStatus.COMPLETED:
            values.setdefault("receipt_number", f"YIP-2026-{uuid.uuid4().int % 1000000:06d}")
            values.setdefault("completed_at", datetime.now(timezone.utc))
        values.update(overrides)
        donation = Donation(**values)
        db.add(donation)
        db.commit()
        db.refresh(donation)
        return donation
    return _make


@pytest.fixture
def event_types(db):
    """Audit event types recorded for a donation, oldest first"""
    def _events(donation_id: str) -> List[str]:
        rows = (
            db.query(DonationLog)
            .filter(DonationLog.donation_id == donation_id)
            .order_by(DonationLog.created_at.asc())
            .all()
        )
        return [row.event_type for row in rows]
    return _events


@pytest_asyncio.fixture
async def client(db, gateway, email_client, producer):
    """Test client with database, gateway, email and Kafka overridden"""
    from donation_service.main import app
    from donation_service.kafka.producer import get_kafka_producer
    from donation_service.services.email_client import get_email_client
    from donation_service.services.toyyibpay import get_payment_gateway

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_email_client] = lambda: email_client
    app.dependency_overrides[get_kafka_producer] = lambda: producer

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
