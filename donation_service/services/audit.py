from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
import structlog

from donation_service.models.donation import DonationLog, DonationEventType

logger = structlog.get_logger(__name__)


@dataclass
class RequestMeta:
    """Caller details stored alongside audit events"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class DonationAuditLog:
    """Append-only donation event log"""

    @staticmethod
    def record(
        db: Session,
        donation_id: str,
        event_type: DonationEventType,
        event_data: Optional[Dict[str, Any]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Optional[DonationLog]:
        """Write one event in its own commit.

        Callers commit their state change first. A failed write is logged and
        swallowed so the audit trail never blocks a transition.
        """
        meta = meta or RequestMeta()
        entry = DonationLog(
            donation_id=donation_id,
            event_type=event_type.value,
            event_data=event_data or {},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        try:
            db.add(entry)
            db.commit()
            return entry
        except Exception as e:
            db.rollback()
            logger.error(
                "Failed to write donation log",
                donation_id=donation_id,
                event_type=event_type.value,
                error=str(e)
            )
            return None

    @staticmethod
    def list_for_donation(db: Session, donation_id: str) -> List[DonationLog]:
        return (
            db.query(DonationLog)
            .filter(DonationLog.donation_id == donation_id)
            .order_by(DonationLog.created_at.asc())
            .all()
        )
