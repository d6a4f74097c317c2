from sqlalchemy import Column, String, DateTime, JSON, func

from donation_service.models.base import Base

DONATIONS_CLOSED_KEY = "donations_closed"
GENERAL_FUND_CATEGORY_KEY = "toyyibpay_general_fund_category"


class SiteSetting(Base):
    __tablename__ = "site_settings"

    key = Column(String(128), primary_key=True)
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
