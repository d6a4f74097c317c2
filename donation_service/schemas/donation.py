from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from datetime import datetime
from decimal import Decimal

from donation_service.core.config import get_settings
from donation_service.models.donation import DonationStatus


class CreateDonationRequest(BaseModel):
    """Schema for creating a new donation. Business rules are checked by DonationService."""
    amount: Decimal = Field(..., description="Donation amount in ringgit (major units)")
    currency: str = Field(
        default_factory=lambda: get_settings().default_currency,
        description="ISO 4217 currency code"
    )
    project_id: Optional[str] = Field(None, description="Project to support (null for General Fund)")
    program: Optional[str] = Field(None, max_length=100, description="Program label shown on the bill")
    donor_name: Optional[str] = Field(None, max_length=255)
    donor_email: Optional[str] = Field(None, max_length=255)
    donor_phone: Optional[str] = Field(None, max_length=32)
    message: Optional[str] = Field(None, max_length=1000, description="Optional message from donor")
    is_anonymous: bool = Field(default=False, description="Hide donor name on public listings and bills")
    donation_type: str = Field(default="one-time", max_length=32)

    class Config:
        json_schema_extra = {
            "example": {
                "amount": 50,
                "currency": "MYR",
                "project_id": None,
                "donor_name": "Siti Aminah",
                "donor_email": "siti@example.com",
                "donor_phone": "+60 12-345 6789",
                "message": "Semoga bermanfaat",
                "is_anonymous": False,
                "donation_type": "one-time"
            }
        }


class CreateDonationResponse(BaseModel):
    success: bool = True
    message: str = "Donation initiated successfully"
    donation_id: str
    payment_reference: str
    redirect_url: str
    payment_method: str = "toyyibpay"


class ReferenceRequest(BaseModel):
    """Body for operations addressed by payment reference"""
    reference: str = Field(..., min_length=1, description="Payment reference")


class MarkExpiredRequest(ReferenceRequest):
    reason: Optional[str] = Field(None, max_length=500)


class RetryPaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment retry initiated"
    reference: str
    redirect_url: str
    attempt_number: int


class StatusChangeResponse(BaseModel):
    """Result of reconciliation or an admin status action"""
    success: bool = True
    message: str
    status: DonationStatus
    previous_status: Optional[DonationStatus] = None
    no_change: bool = False
    receipt_number: Optional[str] = None
    transaction_id: Optional[str] = None


class ProjectSummary(BaseModel):
    id: str
    slug: str
    title: Optional[str] = None


class PublicDonationResponse(BaseModel):
    """Donation as shown to the donor; anonymous donors are masked"""
    id: str
    donor_name: Optional[str]
    donor_email: Optional[str]
    amount: Decimal
    currency: str
    status: DonationStatus
    reference: str
    receipt_number: Optional[str]
    message: Optional[str]
    project: Optional[ProjectSummary] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime]


class VerifyDonationResponse(BaseModel):
    success: bool = True
    status: DonationStatus
    verified: bool
    donation: PublicDonationResponse


class DonationResponse(BaseModel):
    """Full donation record for the admin dashboard"""
    id: str
    payment_reference: str
    donor_name: Optional[str]
    donor_email: Optional[str]
    donor_phone: Optional[str]
    is_anonymous: bool
    message: Optional[str]
    project_id: Optional[str]
    amount: int = Field(..., description="Amount in sen")
    currency: str
    donation_type: str
    payment_status: DonationStatus
    payment_method: str
    payment_attempts: int
    gateway_bill_code: Optional[str]
    gateway_transaction_id: Optional[str]
    environment: str
    receipt_number: Optional[str]
    receipt_sent_at: Optional[datetime]
    failure_reason: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]
    is_stale: bool = False

    class Config:
        from_attributes = True


class DonationListResponse(BaseModel):
    """Schema for paginated donation list response"""
    donations: List[DonationResponse]
    total: int


class DonationStatsResponse(BaseModel):
    total_raised: Decimal = Field(..., description="Completed donations, in ringgit")
    total_donations: int
    completed_donations: int
    pending_donations: int
    failed_donations: int
    expired_donations: int
    stale_donations: int
    average_amount: Decimal
    success_rate: float


class DonationLogResponse(BaseModel):
    id: str
    event_type: str
    event_data: Dict[str, Any]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ReceiptData(BaseModel):
    receipt_number: str
    donor_name: str
    donor_email: str
    donor_phone: Optional[str] = None
    amount: Decimal = Field(..., description="Amount in ringgit")
    currency: str
    project_title: Optional[str] = None
    payment_reference: str
    payment_method: str
    transaction_id: Optional[str] = None
    completed_at: datetime
    created_at: datetime
    message: Optional[str] = None


class ResendReceiptResponse(BaseModel):
    success: bool = True
    message: str = "Receipt email sent successfully"
    email: str


class DonationSettings(BaseModel):
    donations_closed: bool


class WebhookAck(BaseModel):
    success: bool = True
    message: str
    status: DonationStatus
