"""
Payment gateway capability boundary.

Donation services only depend on this two-operation contract (create a bill,
query its status), so ToyyibPay can be swapped for another provider or a fake.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class GatewayPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BillRequest:
    payment_reference: str
    amount: int  # sen
    bill_name: str
    bill_description: str
    donor_name: str
    donor_email: str
    donor_phone: Optional[str]
    is_anonymous: bool
    return_url: str
    callback_url: str
    category_code: Optional[str] = None
    receipt_note: str = ""


@dataclass
class BillResult:
    bill_code: str
    payment_url: str
    category_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayStatusReport:
    status: GatewayPaymentStatus
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    gateway_status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract payment provider"""

    @property
    @abstractmethod
    def environment(self) -> str:
        """``sandbox`` or ``production``"""

    @abstractmethod
    async def create_bill(self, request: BillRequest) -> BillResult:
        """Create a payable bill and return its redirect URL"""

    @abstractmethod
    async def query_status(self, payment_reference: str, bill_code: str) -> GatewayStatusReport:
        """Return the provider's current view of the payment"""
