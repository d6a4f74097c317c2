from .base import Base
from .donation import Donation, DonationLog, DonationStatus, DonationEventType, ReceiptCounter
from .project import Project
from .site_setting import SiteSetting

__all__ = [
    "Base",
    "Donation",
    "DonationLog",
    "DonationStatus",
    "DonationEventType",
    "ReceiptCounter",
    "Project",
    "SiteSetting",
]
