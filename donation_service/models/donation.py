from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, Enum, ForeignKey, func
from datetime import datetime, timezone
import enum
import uuid

from donation_service.models.base import Base


class DonationStatus(str, enum.Enum):
    """Donation payment status. Transitions are defined in services/state_machine.py"""
    PENDING = "pending"  # Created, waiting for the gateway
    COMPLETED = "completed"  # Gateway confirmed payment, receipt issued
    FAILED = "failed"  # Gateway reported failure, may be retried
    EXPIRED = "expired"  # Admin gave up on the payment
    REFUNDED = "refunded"  # Out of band, no transition leads here


class DonationEventType(str, enum.Enum):
    """Audit log event types"""
    CREATED = "created"
    BILL_CREATED = "bill_created"
    CALLBACK_RECEIVED = "callback_received"
    STATUS_UPDATED = "status_updated"
    RECEIPT_SENT = "receipt_sent"
    RECEIPT_EMAIL_FAILED = "receipt_email_failed"
    RETRY_INITIATED = "retry_initiated"
    MARKED_EXPIRED = "marked_expired"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Donation(Base):
    """One row per donation attempt. Rows are never deleted."""
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=_new_id)
    payment_reference = Column(String(64), unique=True, nullable=False, index=True)

    # Donor
    donor_name = Column(String(255), nullable=True)
    donor_email = Column(String(255), nullable=True)
    donor_phone = Column(String(32), nullable=True)
    is_anonymous = Column(Boolean, nullable=False, default=False)
    message = Column(Text, nullable=True)

    # Target: null project means General Fund
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=True, index=True)

    # Money, in sen
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="MYR")
    donation_type = Column(String(32), nullable=False, default="one-time")

    payment_status = Column(
        Enum(DonationStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
        nullable=False,
        default=DonationStatus.PENDING,
        index=True
    )

    # Gateway
    payment_method = Column(String(32), nullable=False, default="fpx")
    payment_attempts = Column(Integer, nullable=False, default=1)
    gateway_bill_code = Column(String(64), nullable=True, index=True)
    gateway_transaction_id = Column(String(128), nullable=True)
    environment = Column(String(16), nullable=False, default="production")

    # Receipt
    receipt_number = Column(String(32), unique=True, nullable=True)
    receipt_sent_at = Column(DateTime(timezone=True), nullable=True)

    failure_reason = Column(Text, nullable=True)

    # Request metadata
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Bumped by every guarded status transition
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Donation(reference={self.payment_reference}, amount={self.amount}, status='{self.payment_status.value}')>"


class DonationLog(Base):
    """Append-only audit trail, one row per lifecycle event"""
    __tablename__ = "donation_logs"

    id = Column(String(36), primary_key=True, default=_new_id)
    donation_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)


class ReceiptCounter(Base):
    """Per-year receipt sequence"""
    __tablename__ = "receipt_counters"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)
