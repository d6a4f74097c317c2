"""
Unit Tests for gateway status reconciliation
"""
import re
from types import SimpleNamespace

import httpx
import pytest

from donation_service.core.errors import ConcurrentUpdateError, GatewayError, NotFoundError, StateError
from donation_service.models import Donation, DonationStatus, Project
from donation_service.services.email_client import ResendEmailClient
from donation_service.services.payment_gateway import GatewayPaymentStatus
from donation_service.services.reconciliation import (
    ReconciliationSource,
    extract_reference,
    reconcile,
    record_callback,
)
from donation_service.services.repository import DonationRepository

ADMIN = ReconciliationSource.ADMIN
CALLBACK = ReconciliationSource.CALLBACK


def snapshot(db, donation_id):
    db.expire_all()
    d = db.get(Donation, donation_id)
    return (d.payment_status, d.version, d.receipt_number, d.completed_at, d.failure_reason, d.gateway_transaction_id)


# ============================================================================
# COMPLETION TESTS
# ============================================================================

class TestCompletion:

    @pytest.mark.asyncio
    async def test_pending_donation_completes(self, db, gateway, email_client, producer, make_donation, event_types):
        donation = make_donation()
        gateway.set_status(GatewayPaymentStatus.COMPLETED, transaction_id="TP123")

        result = await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client, producer)

        db.refresh(donation)
        assert result.changed is True
        assert result.previous_status == DonationStatus.PENDING
        assert result.status == DonationStatus.COMPLETED
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.completed_at is not None
        assert re.fullmatch(r"YIP-\d{4}-\d{6}", donation.receipt_number)
        assert result.receipt_number == donation.receipt_number
        assert donation.gateway_transaction_id == "TP123"
        assert donation.version == 2
        assert event_types(donation.id) == ["status_updated", "receipt_sent"]
        assert donation.receipt_sent_at is not None
        assert result.receipt_sent is True
        assert email_client.sent[0].to == "siti@example.com"
        assert donation.receipt_number in email_client.sent[0].subject
        assert producer.published == [donation.payment_reference]

    @pytest.mark.asyncio
    async def test_failed_donation_can_still_complete(self, db, gateway, email_client, make_donation):
        donation = make_donation(status=DonationStatus.FAILED, failure_reason="Payment was cancelled by user")
        gateway.set_status(GatewayPaymentStatus.COMPLETED, transaction_id="TP456")

        result = await reconcile(db, gateway, donation.payment_reference, ADMIN, email_client)

        db.refresh(donation)
        assert result.previous_status == DonationStatus.FAILED
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.failure_reason is None
        assert donation.receipt_number is not None

    @pytest.mark.asyncio
    async def test_second_call_is_a_no_op(self, db, gateway, email_client, make_donation, event_types):
        donation = make_donation()
        gateway.set_status(GatewayPaymentStatus.COMPLETED, transaction_id="TP123")
        await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client)
        before = snapshot(db, donation.id)
        logs_before = event_types(donation.id)

        result = await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client)

        assert result.changed is False
        assert result.status == DonationStatus.COMPLETED
        assert snapshot(db, donation.id) == before
        assert event_types(donation.id) == logs_before
        assert len(email_client.sent) == 1

    @pytest.mark.asyncio
    async def test_receipt_numbers_are_sequential(self, db, gateway, email_client, make_donation):
        first = make_donation()
        second = make_donation()
        gateway.set_status(GatewayPaymentStatus.COMPLETED)

        r1 = await reconcile(db, gateway, first.payment_reference, CALLBACK, email_client)
        r2 = await reconcile(db, gateway, second.payment_reference, CALLBACK, email_client)

        seq1 = int(r1.receipt_number.rsplit("-", 1)[1])
        seq2 = int(r2.receipt_number.rsplit("-", 1)[1])
        assert seq2 == seq1 + 1

    @pytest.mark.asyncio
    async def test_project_total_is_credited(self, db, gateway, email_client, make_donation, project):
        donation = make_donation(project_id=project.id, amount=12345)
        gateway.set_status(GatewayPaymentStatus.COMPLETED)

        await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client)

        db.expire_all()
        assert db.get(Project, project.id).donation_raised == 12345

    @pytest.mark.asyncio
    async def test_email_failure_does_not_undo_completion(self, db, gateway, failing_email_client, make_donation, event_types):
        donation = make_donation()
        gateway.set_status(GatewayPaymentStatus.COMPLETED)

        result = await reconcile(db, gateway, donation.payment_reference, CALLBACK, failing_email_client)

        db.refresh(donation)
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.receipt_number is not None
        assert donation.receipt_sent_at is None
        assert result.receipt_sent is False
        assert event_types(donation.id) == ["status_updated", "receipt_email_failed"]

    @pytest.mark.asyncio
    async def test_malformed_email_response_still_publishes(self, db, gateway, producer, make_donation, event_types):
        donation = make_donation()
        gateway.set_status(GatewayPaymentStatus.COMPLETED, transaction_id="TP777")
        email_client = ResendEmailClient(
            api_key="re_test_key",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="OK"))
        )

        result = await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client, producer)

        db.refresh(donation)
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.receipt_number is not None
        assert donation.receipt_sent_at is None
        assert result.changed is True
        assert result.receipt_sent is False
        assert event_types(donation.id) == ["status_updated", "receipt_email_failed"]
        assert producer.published == [donation.payment_reference]


# ============================================================================
# FAILURE AND NO-CHANGE TESTS
# ============================================================================

class TestFailureAndNoChange:

    @pytest.mark.asyncio
    async def test_pending_donation_fails(self, db, gateway, email_client, producer, make_donation, event_types):
        donation = make_donation()
        gateway.set_status(GatewayPaymentStatus.FAILED, reason="Cancelled")

        result = await reconcile(db, gateway, donation.payment_reference, CALLBACK, email_client, producer)

        db.refresh(donation)
        assert result.changed is True
        assert donation.payment_status == DonationStatus.FAILED
        assert donation.failure_reason == "Payment was cancelled by user"
        assert donation.receipt_number is None
        assert donation.completed_at is None
        assert event_types(donation.id) == ["status_updated"]
        assert email_client.sent == []
        assert producer.published == []

    @pytest.mark.asyncio
    async def test_gateway_pending_changes_nothing(self, db, gateway, make_donation, event_types):
        donation = make_donation()
        before = snapshot(db, donation.id)

        result = await reconcile(db, gateway, donation.payment_reference, ADMIN)

        assert result.changed is False
        assert result.gateway_status == GatewayPaymentStatus.PENDING
        assert snapshot(db, donation.id) == before
        assert event_types(donation.id) == []

    @pytest.mark.asyncio
    async def test_failed_stays_failed_without_log(self, db, gateway, make_donation, event_types):
        donation = make_donation(status=DonationStatus.FAILED)
        gateway.set_status(GatewayPaymentStatus.FAILED)

        result = await reconcile(db, gateway, donation.payment_reference, ADMIN)

        assert result.changed is False
        assert event_types(donation.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [DonationStatus.COMPLETED, DonationStatus.EXPIRED, DonationStatus.REFUNDED])
    async def test_terminal_donations_are_not_queried(self, db, gateway, make_donation, status):
        donation = make_donation(status=status)
        gateway.set_status(GatewayPaymentStatus.FAILED)

        result = await reconcile(db, gateway, donation.payment_reference, ADMIN)

        assert result.changed is False
        assert result.status == status
        assert gateway.query_calls == 0

    @pytest.mark.asyncio
    async def test_expired_donation_is_not_revived_by_late_success(self, db, gateway, make_donation):
        donation = make_donation(status=DonationStatus.EXPIRED)
        gateway.set_status(GatewayPaymentStatus.COMPLETED)

        await reconcile(db, gateway, donation.payment_reference, CALLBACK)

        db.refresh(donation)
        assert donation.payment_status == DonationStatus.EXPIRED
        assert donation.receipt_number is None

    @pytest.mark.asyncio
    async def test_donation_without_bill(self, db, gateway, make_donation):
        donation = make_donation(bill_code=None)
        with pytest.raises(StateError):
            await reconcile(db, gateway, donation.payment_reference, ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_reference(self, db, gateway):
        with pytest.raises(NotFoundError):
            await reconcile(db, gateway, "YIP-0-NOPE00", ADMIN)

    @pytest.mark.asyncio
    async def test_gateway_error_propagates_and_changes_nothing(self, db, gateway, make_donation):
        donation = make_donation()
        before = snapshot(db, donation.id)
        gateway.query_error = GatewayError("Failed to connect to ToyyibPay", code="CONNECTION_ERROR")

        with pytest.raises(GatewayError):
            await reconcile(db, gateway, donation.payment_reference, ADMIN)
        assert snapshot(db, donation.id) == before


# ============================================================================
# GUARDED UPDATE TESTS
# ============================================================================

class TestCompareAndSet:

    def test_stale_version_is_rejected(self, db, make_donation):
        donation = make_donation()
        stale = SimpleNamespace(id=donation.id, version=donation.version - 1, payment_reference=donation.payment_reference)

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            DonationRepository.compare_and_set(db, stale, DonationStatus.PENDING, {"payment_status": DonationStatus.FAILED})
        assert exc_info.value.status_code == 409

        db.expire_all()
        assert db.get(Donation, donation.id).payment_status == DonationStatus.PENDING

    def test_changed_status_is_rejected(self, db, make_donation):
        donation = make_donation(status=DonationStatus.FAILED)
        with pytest.raises(ConcurrentUpdateError):
            DonationRepository.compare_and_set(db, donation, DonationStatus.PENDING, {"payment_status": DonationStatus.EXPIRED})

    def test_successful_update_bumps_version(self, db, make_donation):
        donation = make_donation()
        DonationRepository.compare_and_set(db, donation, DonationStatus.PENDING, {"payment_status": DonationStatus.FAILED})
        db.commit()

        db.expire_all()
        updated = db.get(Donation, donation.id)
        assert updated.payment_status == DonationStatus.FAILED
        assert updated.version == 2


# ============================================================================
# CALLBACK TESTS
# ============================================================================

class TestCallback:

    @pytest.mark.parametrize("payload,expected", [
        ({"order_id": "YIP-1-AAAAAA", "refno": "TP999"}, "YIP-1-AAAAAA"),
        ({"payment_reference": " YIP-2-BBBBBB "}, "YIP-2-BBBBBB"),
        ({"reference": "YIP-3-CCCCCC"}, "YIP-3-CCCCCC"),
        ({"status": "1"}, None),
    ])
    def test_extract_reference(self, payload, expected):
        assert extract_reference(payload) == expected

    def test_callback_is_logged(self, db, make_donation, event_types):
        donation = make_donation()
        record_callback(db, donation.payment_reference, {"order_id": donation.payment_reference, "status": "1"})
        assert event_types(donation.id) == ["callback_received"]
