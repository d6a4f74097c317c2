from pydantic import BaseModel
from typing import Optional


class DonationCompletedEvent(BaseModel):
    """Schema for donation_completed Kafka event"""
    event_type: str = "donation_completed"
    donation_id: str
    payment_reference: str
    receipt_number: str
    amount: float  # ringgit
    currency: str
    project_id: Optional[str] = None
    donor_name: Optional[str] = None  # None for anonymous donors
    environment: str
    timestamp: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "event_type": "donation_completed",
                "donation_id": "3f1c2a4e-1f8e-4c55-9a53-8d0f3c1e2b7a",
                "payment_reference": "YIP-1735689600000-K3J9QZ",
                "receipt_number": "YIP-2026-000042",
                "amount": 50.0,
                "currency": "MYR",
                "project_id": None,
                "donor_name": "Siti Aminah",
                "environment": "production",
                "timestamp": "2026-01-01T12:00:00Z"
            }
        }
