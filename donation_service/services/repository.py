"""
Database access for donations, projects and site settings.

Status changes go through ``compare_and_set`` so two requests racing on the
same donation cannot both apply a transition.
"""
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
import structlog

from donation_service.core.errors import ConcurrentUpdateError, NotFoundError
from donation_service.models.donation import Donation, DonationStatus
from donation_service.models.project import Project
from donation_service.models.site_setting import SiteSetting

logger = structlog.get_logger(__name__)


class DonationRepository:

    @staticmethod
    def get_by_reference(db: Session, reference: str) -> Donation:
        donation = db.query(Donation).filter(Donation.payment_reference == reference).first()
        if not donation:
            logger.warning("Donation not found", payment_reference=reference)
            raise NotFoundError("Donation not found", details={"reference": reference})
        return donation

    @staticmethod
    def get_project(db: Session, project_id: str) -> Optional[Project]:
        return db.query(Project).filter(Project.id == project_id).first()

    @staticmethod
    def compare_and_set(
        db: Session,
        donation: Donation,
        expected_status: DonationStatus,
        values: Dict[str, Any],
    ) -> None:
        """Apply ``values`` only if the row still has ``expected_status`` and the loaded version.

        Bumps ``version``. Does not commit: callers add related writes to the
        same transaction and commit once. On a lost race the session is rolled
        back and ConcurrentUpdateError is raised.
        """
        loaded_version = donation.version
        stmt = (
            update(Donation)
            .where(
                Donation.id == donation.id,
                Donation.payment_status == expected_status,
                Donation.version == loaded_version,
            )
            .values(version=Donation.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount != 1:
            db.rollback()
            logger.warning(
                "Guarded donation update lost a race",
                payment_reference=donation.payment_reference,
                expected_status=expected_status.value,
                version=loaded_version
            )
            raise ConcurrentUpdateError(
                "Donation was modified by another request, please retry",
                details={"reference": donation.payment_reference}
            )

    @staticmethod
    def add_to_project_raised(db: Session, project_id: str, amount: int) -> None:
        db.execute(
            update(Project)
            .where(Project.id == project_id)
            .values(donation_raised=Project.donation_raised + amount)
            .execution_options(synchronize_session=False)
        )


class SettingsRepository:

    @staticmethod
    def get(db: Session, key: str, default: Any = None) -> Any:
        setting = db.get(SiteSetting, key)
        if setting is None:
            return default
        return setting.value

    @staticmethod
    def set(db: Session, key: str, value: Any) -> None:
        try:
            setting = db.get(SiteSetting, key)
            if setting is None:
                db.add(SiteSetting(key=key, value=value))
            else:
                setting.value = value
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to save site setting", key=key, error=str(e))
            raise
