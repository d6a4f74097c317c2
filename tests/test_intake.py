"""
Unit Tests for donation intake
Covers validation rules, bill creation and gateway failure handling
"""
import re
from decimal import Decimal

import pytest

from donation_service.core.config import get_settings
from donation_service.core.errors import (
    DonationsClosedError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from donation_service.models import Donation, DonationStatus
from donation_service.models.site_setting import GENERAL_FUND_CATEGORY_KEY
from donation_service.schemas.donation import CreateDonationRequest
from donation_service.services.audit import RequestMeta
from donation_service.services.donation import DonationService, generate_payment_reference, to_sen
from donation_service.services.repository import SettingsRepository


def request(**overrides) -> CreateDonationRequest:
    values = dict(
        amount=Decimal("50"),
        currency="MYR",
        donor_name="Siti Aminah",
        donor_email="siti@example.com",
        donor_phone="+60 12-345 6789",
        is_anonymous=False,
    )
    values.update(overrides)
    return CreateDonationRequest(**values)


# ============================================================================
# HELPER TESTS
# ============================================================================

class TestHelpers:

    def test_payment_reference_format(self):
        reference = generate_payment_reference()
        assert re.fullmatch(r"YIP-\d{13}-[A-Z0-9]{6}", reference)

    def test_payment_references_are_unique(self):
        assert len({generate_payment_reference() for _ in range(200)}) == 200

    @pytest.mark.parametrize("amount,sen", [
        (Decimal("1"), 100),
        (Decimal("50.5"), 5050),
        (Decimal("10.005"), 1001),
        (Decimal("100000"), 10000000),
    ])
    def test_to_sen(self, amount, sen):
        assert to_sen(amount) == sen


# ============================================================================
# VALIDATION TESTS
# ============================================================================

class TestValidation:

    @pytest.mark.parametrize("overrides,message", [
        ({"amount": Decimal("0.50")}, "Minimum donation amount"),
        ({"amount": Decimal("100000.01")}, "Maximum donation amount"),
        ({"donor_name": ""}, "Donor name is required"),
        ({"donor_name": "   "}, "Donor name is required"),
        ({"donor_email": None}, "Email is required"),
        ({"is_anonymous": True, "donor_name": None, "donor_email": ""}, "Email is required"),
        ({"donor_email": "not-an-email"}, "Invalid email format"),
        ({"donor_phone": "12ab"}, "Invalid phone number format"),
        ({"currency": "RM"}, "3-letter"),
    ])
    def test_rejects_invalid_input(self, db, overrides, message):
        with pytest.raises(ValidationError) as exc_info:
            DonationService.validate_request(db, request(**overrides))
        assert message in exc_info.value.message
        assert exc_info.value.status_code == 400

    def test_currency_defaults_to_configured_currency(self, monkeypatch):
        assert CreateDonationRequest(amount=Decimal("10")).currency == "MYR"

        monkeypatch.setattr(get_settings(), "default_currency", "SGD")
        assert CreateDonationRequest(amount=Decimal("10")).currency == "SGD"

    def test_anonymous_does_not_need_a_name(self, db):
        amount, project = DonationService.validate_request(db, request(is_anonymous=True, donor_name=None))
        assert amount == 5000
        assert project is None

    def test_boundaries_are_inclusive(self, db):
        assert DonationService.validate_request(db, request(amount=Decimal("1")))[0] == 100
        assert DonationService.validate_request(db, request(amount=Decimal("100000")))[0] == 10000000

    def test_unknown_project(self, db):
        with pytest.raises(NotFoundError):
            DonationService.validate_request(db, request(project_id="missing"))

    def test_project_with_donations_disabled(self, db, project):
        project.donation_enabled = False
        db.commit()
        with pytest.raises(ValidationError) as exc_info:
            DonationService.validate_request(db, request(project_id=project.id))
        assert "not enabled" in exc_info.value.message


# ============================================================================
# CREATE DONATION TESTS
# ============================================================================

class TestCreateDonation:

    @pytest.mark.asyncio
    async def test_creates_pending_donation_with_bill(self, db, gateway, event_types):
        meta = RequestMeta(ip_address="203.0.113.5", user_agent="pytest")
        response = await DonationService.create_donation(db, gateway, request(), meta)

        donation = db.query(Donation).filter(Donation.id == response.donation_id).one()
        assert donation.payment_status == DonationStatus.PENDING
        assert donation.payment_attempts == 1
        assert donation.amount == 5000
        assert donation.environment == "sandbox"
        assert donation.gateway_bill_code == "BILL001"
        assert donation.receipt_number is None
        assert donation.completed_at is None
        assert donation.ip_address == "203.0.113.5"
        assert response.payment_reference == donation.payment_reference
        assert response.redirect_url == "https://dev.toyyibpay.com/BILL001"
        assert event_types(donation.id) == ["created", "bill_created"]

    @pytest.mark.asyncio
    async def test_bill_request_details(self, db, gateway):
        response = await DonationService.create_donation(db, gateway, request(amount=Decimal("25")))

        bill = gateway.bills[0]
        assert bill.payment_reference == response.payment_reference
        assert bill.amount == 2500
        assert bill.bill_name == "Donation to YIP"
        assert bill.return_url.endswith(f"/donate/success?ref={response.payment_reference}")
        assert bill.callback_url.endswith("/donations/webhook?token=test-webhook-secret")
        assert "RM 25.00" in bill.receipt_note

    @pytest.mark.asyncio
    async def test_anonymous_donor_keeps_email(self, db, gateway):
        response = await DonationService.create_donation(
            db, gateway, request(is_anonymous=True, donor_name=None)
        )
        donation = db.query(Donation).filter(Donation.id == response.donation_id).one()
        assert donation.donor_name == "Anonymous"
        assert donation.donor_email == "siti@example.com"
        assert gateway.bills[0].is_anonymous is True

    @pytest.mark.asyncio
    async def test_program_prefixes_message(self, db, gateway):
        response = await DonationService.create_donation(
            db, gateway, request(program="Ramadan", message="Semoga bermanfaat")
        )
        donation = db.query(Donation).filter(Donation.id == response.donation_id).one()
        assert donation.message == "[Ramadan] Semoga bermanfaat"

    @pytest.mark.asyncio
    async def test_project_donation_uses_project_category(self, db, gateway, project):
        await DonationService.create_donation(db, gateway, request(project_id=project.id))
        bill = gateway.bills[0]
        assert bill.category_code == "CAT-WATER"
        assert bill.bill_name == "Donation: Clean Water"
        assert SettingsRepository.get(db, GENERAL_FUND_CATEGORY_KEY) is None

    @pytest.mark.asyncio
    async def test_general_fund_category_is_cached(self, db, gateway):
        await DonationService.create_donation(db, gateway, request())
        assert gateway.bills[0].category_code is None
        assert SettingsRepository.get(db, GENERAL_FUND_CATEGORY_KEY) == "CAT-GENERAL"

        await DonationService.create_donation(db, gateway, request())
        assert gateway.bills[1].category_code == "CAT-GENERAL"

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_pending_donation(self, db, gateway, event_types):
        gateway.create_error = GatewayError("Failed to create bill", code="BILL_CREATE_FAILED")

        with pytest.raises(GatewayError) as exc_info:
            await DonationService.create_donation(db, gateway, request())
        assert exc_info.value.status_code == 502

        donation = db.query(Donation).one()
        assert donation.payment_status == DonationStatus.PENDING
        assert donation.gateway_bill_code is None
        assert event_types(donation.id) == ["created", "error"]

    @pytest.mark.asyncio
    async def test_rejected_when_donations_closed(self, db, gateway):
        DonationService.set_donations_closed(db, True)

        with pytest.raises(DonationsClosedError) as exc_info:
            await DonationService.create_donation(db, gateway, request())
        assert exc_info.value.status_code == 403
        assert db.query(Donation).count() == 0
        assert gateway.bills == []

    @pytest.mark.asyncio
    async def test_validation_failure_creates_nothing(self, db, gateway):
        with pytest.raises(ValidationError):
            await DonationService.create_donation(db, gateway, request(amount=Decimal("0")))
        assert db.query(Donation).count() == 0
