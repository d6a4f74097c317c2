import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple
from urllib.parse import quote

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from donation_service.core.config import get_settings
from donation_service.core.errors import (
    DonationsClosedError,
    GatewayError,
    NotFoundError,
    StateError,
    ValidationError,
)
from donation_service.middleware.metrics import donation_transitions_total
from donation_service.models.donation import Donation, DonationEventType, DonationStatus
from donation_service.models.project import Project
from donation_service.models.site_setting import DONATIONS_CLOSED_KEY, GENERAL_FUND_CATEGORY_KEY
from donation_service.schemas.donation import (
    CreateDonationRequest,
    CreateDonationResponse,
    DonationListResponse,
    DonationResponse,
    DonationStatsResponse,
    ProjectSummary,
    PublicDonationResponse,
    RetryPaymentResponse,
    StatusChangeResponse,
)
from donation_service.schemas.localized import LocalizedText
from donation_service.services import state_machine
from donation_service.services.audit import DonationAuditLog, RequestMeta
from donation_service.services.payment_gateway import BillRequest, PaymentGateway
from donation_service.services.repository import DonationRepository, SettingsRepository

logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r"^[\d\s\-+()]{8,20}$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_EXPIRY_REASON = "Marked as expired by admin - payment not received"


def generate_payment_reference() -> str:
    """``YIP-<epoch ms>-<6 upper-case alphanumerics>``"""
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(6))
    return f"YIP-{int(time.time() * 1000)}-{suffix}"


def to_sen(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class DonationFilters:
    """Admin listing and export filters. ``all`` disables a filter."""
    status: Optional[str] = None
    environment: Optional[str] = "production"
    project: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


def apply_filters(query, filters: DonationFilters):
    if filters.environment and filters.environment != "all":
        query = query.filter(Donation.environment == filters.environment)
    if filters.status and filters.status != "all":
        try:
            status = DonationStatus(filters.status)
        except ValueError:
            raise ValidationError(f"Unknown status filter: {filters.status}")
        query = query.filter(Donation.payment_status == status)
    if filters.project and filters.project != "all":
        query = query.filter(Donation.project_id == filters.project)
    if filters.date_from:
        start = datetime.combine(filters.date_from, dt_time.min, tzinfo=timezone.utc)
        query = query.filter(Donation.created_at >= start)
    if filters.date_to:
        # Inclusive of the whole end day
        end = datetime.combine(filters.date_to + timedelta(days=1), dt_time.min, tzinfo=timezone.utc)
        query = query.filter(Donation.created_at < end)
    return query


class DonationService:
    """Business logic for the donation lifecycle"""

    # ==================== Intake ====================

    @staticmethod
    def validate_request(db: Session, request: CreateDonationRequest) -> Tuple[int, Optional[Project]]:
        """Check business rules, returning the amount in sen and the target project"""
        settings = get_settings()

        if request.amount < settings.min_donation_amount:
            raise ValidationError(f"Minimum donation amount is RM {settings.min_donation_amount}")
        if request.amount > settings.max_donation_amount:
            raise ValidationError(f"Maximum donation amount is RM {settings.max_donation_amount:,}")

        if not CURRENCY_PATTERN.match((request.currency or "").upper()):
            raise ValidationError("Currency must be a 3-letter ISO code")

        if not request.is_anonymous and not (request.donor_name or "").strip():
            raise ValidationError("Donor name is required")
        if not (request.donor_email or "").strip():
            raise ValidationError("Email is required for the donation receipt")

        try:
            validate_email(request.donor_email.strip(), check_deliverability=False)
        except EmailNotValidError:
            raise ValidationError("Invalid email format")

        if request.donor_phone and not PHONE_PATTERN.match(request.donor_phone):
            raise ValidationError("Invalid phone number format")

        project = None
        if request.project_id:
            project = DonationRepository.get_project(db, request.project_id)
            if not project:
                raise NotFoundError("Project not found", details={"project_id": request.project_id})
            if not project.donation_enabled:
                raise ValidationError("Donations are not enabled for this project")

        return to_sen(request.amount), project

    @staticmethod
    def _message(request: CreateDonationRequest) -> Optional[str]:
        if request.message:
            return f"[{request.program or 'General'}] {request.message}"
        if request.program:
            return f"[{request.program}]"
        return None

    @staticmethod
    def _resolve_category(db: Session, project: Optional[Project]) -> Optional[str]:
        if project and project.gateway_category_code:
            return project.gateway_category_code
        return SettingsRepository.get(db, GENERAL_FUND_CATEGORY_KEY)

    @staticmethod
    def _cache_category(db: Session, project: Optional[Project], used: Optional[str], returned: Optional[str]) -> None:
        """Remember a category the gateway created lazily"""
        if not returned or returned == used:
            return
        if project and project.gateway_category_code:
            return
        SettingsRepository.set(db, GENERAL_FUND_CATEGORY_KEY, returned)
        logger.info("Cached General Fund category", category_code=returned)

    @staticmethod
    def _bill_request(
        donation: Donation,
        project: Optional[Project],
        category_code: Optional[str],
        retry: bool = False,
    ) -> BillRequest:
        settings = get_settings()
        title = LocalizedText.coerce(project.title) if project else None
        title_text = title.get("en") if title else None
        suffix = " (Retry)" if retry else ""

        if title_text:
            bill_name = f"Donation: {title_text}"
            description = f"Donation for {title_text}{suffix}"
        else:
            bill_name = "Donation to YIP"
            description = f"Donation to Yayasan Insan Prihatin - General Fund{suffix}"

        amount_rm = Decimal(donation.amount) / 100
        note = f"Thank you for your donation of RM {amount_rm:.2f} to Yayasan Insan Prihatin."
        if title_text:
            note += f" This donation supports: {title_text}"

        callback_url = f"{settings.api_base_url.rstrip('/')}/donations/webhook"
        if settings.toyyibpay_webhook_secret:
            callback_url += f"?token={quote(settings.toyyibpay_webhook_secret, safe='')}"

        return BillRequest(
            payment_reference=donation.payment_reference,
            amount=donation.amount,
            bill_name=bill_name,
            bill_description=description,
            donor_name=donation.donor_name or "Penderma",
            donor_email=donation.donor_email,
            donor_phone=donation.donor_phone,
            is_anonymous=donation.is_anonymous,
            return_url=f"{settings.site_url.rstrip('/')}/donate/success?ref={donation.payment_reference}",
            callback_url=callback_url,
            category_code=category_code,
            receipt_note=note,
        )

    @staticmethod
    def donations_closed(db: Session) -> bool:
        return bool(SettingsRepository.get(db, DONATIONS_CLOSED_KEY, False))

    @staticmethod
    def set_donations_closed(db: Session, closed: bool) -> bool:
        SettingsRepository.set(db, DONATIONS_CLOSED_KEY, closed)
        logger.info("Donation intake toggled", donations_closed=closed)
        return closed

    @staticmethod
    async def create_donation(
        db: Session,
        gateway: PaymentGateway,
        request: CreateDonationRequest,
        meta: Optional[RequestMeta] = None,
    ) -> CreateDonationResponse:
        """Create a pending donation and a gateway bill for it"""
        meta = meta or RequestMeta()
        if DonationService.donations_closed(db):
            raise DonationsClosedError("Donations are currently closed")

        amount_sen, project = DonationService.validate_request(db, request)

        donation = Donation(
            payment_reference=generate_payment_reference(),
            donor_name="Anonymous" if request.is_anonymous else request.donor_name.strip(),
            donor_email=request.donor_email.strip(),
            donor_phone=request.donor_phone or None,
            is_anonymous=request.is_anonymous,
            message=DonationService._message(request),
            project_id=project.id if project else None,
            amount=amount_sen,
            currency=request.currency.upper(),
            donation_type=request.donation_type,
            payment_status=DonationStatus.PENDING,
            payment_attempts=1,
            environment=gateway.environment,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        try:
            db.add(donation)
            db.commit()
            db.refresh(donation)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create donation", error=str(e))
            raise

        logger.info(
            "Donation created",
            donation_id=donation.id,
            payment_reference=donation.payment_reference,
            amount=donation.amount,
            project_id=donation.project_id
        )
        DonationAuditLog.record(db, donation.id, DonationEventType.CREATED, {
            "amount": str(request.amount),
            "currency": donation.currency,
            "project_id": donation.project_id,
            "is_anonymous": donation.is_anonymous,
            "donation_type": donation.donation_type,
        }, meta)

        category_code = DonationService._resolve_category(db, project)
        try:
            bill = await gateway.create_bill(DonationService._bill_request(donation, project, category_code))
        except GatewayError as e:
            logger.error(
                "Bill creation failed",
                payment_reference=donation.payment_reference,
                code=e.code,
                error=e.message
            )
            DonationAuditLog.record(db, donation.id, DonationEventType.ERROR, {
                "error": e.message,
                "code": e.code,
                "details": str(e.details) if e.details is not None else None,
            }, meta)
            raise

        try:
            db.execute(
                update(Donation)
                .where(Donation.id == donation.id)
                .values(gateway_bill_code=bill.bill_code)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to store bill code", payment_reference=donation.payment_reference, error=str(e))
            raise
        db.refresh(donation)

        DonationService._cache_category(db, project, category_code, bill.category_code)
        DonationAuditLog.record(db, donation.id, DonationEventType.BILL_CREATED, {
            "bill_code": bill.bill_code,
            "category_code": bill.category_code,
        }, meta)

        return CreateDonationResponse(
            donation_id=donation.id,
            payment_reference=donation.payment_reference,
            redirect_url=bill.payment_url,
        )

    # ==================== Retry ====================

    @staticmethod
    async def retry_payment(
        db: Session,
        gateway: PaymentGateway,
        reference: str,
        meta: Optional[RequestMeta] = None,
    ) -> RetryPaymentResponse:
        """Issue a new bill for a pending or failed donation under the same reference"""
        meta = meta or RequestMeta()
        settings = get_settings()
        donation = DonationRepository.get_by_reference(db, reference)
        previous = donation.payment_status

        if previous == DonationStatus.COMPLETED:
            raise StateError("This payment has already been completed", details={"status": previous.value})
        target = state_machine.next_status(previous, state_machine.DonationEvent.RETRY)

        if donation.payment_attempts >= settings.max_payment_attempts:
            raise StateError(
                f"Maximum retry attempts ({settings.max_payment_attempts}) reached. Please start a new donation.",
                code="MAX_ATTEMPTS_REACHED"
            )

        project = DonationRepository.get_project(db, donation.project_id) if donation.project_id else None
        category_code = DonationService._resolve_category(db, project)
        try:
            bill = await gateway.create_bill(
                DonationService._bill_request(donation, project, category_code, retry=True)
            )
        except GatewayError as e:
            logger.error("Retry bill creation failed", payment_reference=reference, code=e.code, error=e.message)
            DonationAuditLog.record(db, donation.id, DonationEventType.ERROR, {
                "error": e.message,
                "code": e.code,
                "during": "retry",
            }, meta)
            raise

        previous_bill_code = donation.gateway_bill_code
        values = {
            "payment_status": target,
            "gateway_bill_code": bill.bill_code,
            "payment_attempts": Donation.payment_attempts + 1,
            "failure_reason": None,
        }
        if meta.ip_address:
            values["ip_address"] = meta.ip_address
        if meta.user_agent:
            values["user_agent"] = meta.user_agent

        try:
            DonationRepository.compare_and_set(db, donation, previous, values)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record retry", payment_reference=reference, error=str(e))
            raise
        db.refresh(donation)

        if previous != target:
            donation_transitions_total.labels(from_status=previous.value, to_status=target.value).inc()
        DonationService._cache_category(db, project, category_code, bill.category_code)
        DonationAuditLog.record(db, donation.id, DonationEventType.RETRY_INITIATED, {
            "attempt_number": donation.payment_attempts,
            "previous_status": previous.value,
            "previous_bill_code": previous_bill_code,
            "new_bill_code": bill.bill_code,
        }, meta)
        logger.info("Payment retry initiated", payment_reference=reference, attempt_number=donation.payment_attempts)

        return RetryPaymentResponse(
            reference=donation.payment_reference,
            redirect_url=bill.payment_url,
            attempt_number=donation.payment_attempts,
        )

    # ==================== Expiry ====================

    @staticmethod
    def mark_expired(
        db: Session,
        reference: str,
        reason: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> StatusChangeResponse:
        """Admin override for payments that will never arrive"""
        donation = DonationRepository.get_by_reference(db, reference)
        previous = donation.payment_status

        if previous == DonationStatus.EXPIRED:
            return StatusChangeResponse(
                message="Donation is already marked as expired",
                status=previous,
                previous_status=previous,
                no_change=True,
            )
        if previous == DonationStatus.COMPLETED:
            raise StateError("Cannot mark completed donations as expired", details={"status": previous.value})
        target = state_machine.next_status(previous, state_machine.DonationEvent.ADMIN_EXPIRE)

        try:
            DonationRepository.compare_and_set(db, donation, previous, {
                "payment_status": target,
                "failure_reason": reason or DEFAULT_EXPIRY_REASON,
            })
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to mark donation expired", payment_reference=reference, error=str(e))
            raise
        db.refresh(donation)

        donation_transitions_total.labels(from_status=previous.value, to_status=target.value).inc()
        DonationAuditLog.record(db, donation.id, DonationEventType.MARKED_EXPIRED, {
            "previous_status": previous.value,
            "reason": reason or "Payment not received",
            "marked_by": "admin",
        }, meta)
        logger.info("Donation marked as expired", payment_reference=reference, previous_status=previous.value)

        return StatusChangeResponse(
            message="Donation marked as expired",
            status=target,
            previous_status=previous,
        )

    # ==================== Queries ====================

    @staticmethod
    def to_public(db: Session, donation: Donation) -> PublicDonationResponse:
        project = None
        if donation.project_id:
            row = DonationRepository.get_project(db, donation.project_id)
            if row:
                title = LocalizedText.coerce(row.title)
                project = ProjectSummary(id=row.id, slug=row.slug, title=title.get("en") if title else None)

        return PublicDonationResponse(
            id=donation.id,
            donor_name="Anonymous" if donation.is_anonymous else donation.donor_name,
            donor_email=None if donation.is_anonymous else donation.donor_email,
            amount=Decimal(donation.amount) / 100,
            currency=donation.currency,
            status=donation.payment_status,
            reference=donation.payment_reference,
            receipt_number=donation.receipt_number,
            message=donation.message,
            project=project,
            failure_reason=donation.failure_reason,
            created_at=donation.created_at,
            completed_at=donation.completed_at,
        )

    @staticmethod
    def get_public(db: Session, reference: str) -> PublicDonationResponse:
        return DonationService.to_public(db, DonationRepository.get_by_reference(db, reference))

    @staticmethod
    def to_response(donation: Donation, now: Optional[datetime] = None) -> DonationResponse:
        response = DonationResponse.model_validate(donation)
        response.is_stale = state_machine.is_stale(
            donation,
            now=now,
            stale_after=timedelta(hours=get_settings().stale_after_hours)
        )
        return response

    @staticmethod
    def list_donations(
        db: Session,
        filters: DonationFilters,
        skip: int = 0,
        limit: int = 50,
    ) -> DonationListResponse:
        """Newest first, with the read-only stale flag computed per row"""
        query = apply_filters(db.query(Donation), filters)
        total = query.count()
        rows = query.order_by(Donation.created_at.desc()).offset(skip).limit(limit).all()
        now = datetime.now(timezone.utc)
        return DonationListResponse(
            donations=[DonationService.to_response(d, now) for d in rows],
            total=total,
        )

    @staticmethod
    def get_stats(db: Session, filters: Optional[DonationFilters] = None) -> DonationStatsResponse:
        filters = filters or DonationFilters()
        query = apply_filters(db.query(Donation), filters)
        counts = dict(
            apply_filters(
                db.query(Donation.payment_status, func.count(Donation.id)),
                filters
            ).group_by(Donation.payment_status).all()
        )
        total_count = sum(counts.values())
        completed_count = counts.get(DonationStatus.COMPLETED, 0)
        raised = (
            query.filter(Donation.payment_status == DonationStatus.COMPLETED)
            .with_entities(func.coalesce(func.sum(Donation.amount), 0))
            .scalar()
        )

        now = datetime.now(timezone.utc)
        stale_after = timedelta(hours=get_settings().stale_after_hours)
        pending = query.filter(Donation.payment_status == DonationStatus.PENDING).all()
        stale_count = sum(1 for d in pending if state_machine.is_stale(d, now=now, stale_after=stale_after))

        total_raised = Decimal(raised) / 100
        average = (total_raised / completed_count).quantize(Decimal("0.01")) if completed_count else Decimal("0.00")
        return DonationStatsResponse(
            total_raised=total_raised,
            total_donations=total_count,
            completed_donations=completed_count,
            pending_donations=counts.get(DonationStatus.PENDING, 0),
            failed_donations=counts.get(DonationStatus.FAILED, 0),
            expired_donations=counts.get(DonationStatus.EXPIRED, 0),
            stale_donations=stale_count,
            average_amount=average,
            success_rate=round(completed_count / total_count * 100, 1) if total_count else 0.0,
        )
