"""
Receipt numbering and receipt email delivery
"""
from datetime import datetime, timezone
from decimal import Decimal
from html import escape
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import structlog

from donation_service.core.config import get_settings
from donation_service.core.errors import ConcurrentUpdateError, EmailDeliveryError, StateError
from donation_service.middleware.metrics import receipt_emails_total
from donation_service.models.donation import Donation, DonationEventType, DonationStatus, ReceiptCounter
from donation_service.schemas.donation import ReceiptData
from donation_service.schemas.localized import LocalizedText
from donation_service.services.audit import DonationAuditLog, RequestMeta
from donation_service.services.email_client import EmailMessage, ResendEmailClient
from donation_service.services.repository import DonationRepository

logger = structlog.get_logger(__name__)


def format_receipt_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:06d}"


def next_receipt_number(db: Session, prefix: Optional[str] = None, year: Optional[int] = None) -> str:
    """Reserve the next receipt number for ``year`` inside the caller's transaction.

    The counter row is incremented with a single UPDATE so concurrent
    completions never share a number. Rolling back the caller's transaction
    releases the number.
    """
    prefix = prefix or get_settings().receipt_prefix
    year = year or datetime.now(timezone.utc).year

    result = db.execute(
        update(ReceiptCounter)
        .where(ReceiptCounter.year == year)
        .values(last_value=ReceiptCounter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        sequence = db.execute(
            select(ReceiptCounter.last_value).where(ReceiptCounter.year == year)
        ).scalar_one()
    else:
        try:
            db.add(ReceiptCounter(year=year, last_value=1))
            db.flush()
        except IntegrityError:
            # Another completion created this year's counter first
            db.rollback()
            raise ConcurrentUpdateError("Receipt counter was created concurrently, please retry")
        sequence = 1

    return format_receipt_number(prefix, year, sequence)


def project_title(db: Session, project_id: Optional[str], locale: str = "en") -> Optional[str]:
    if not project_id:
        return None
    project = DonationRepository.get_project(db, project_id)
    if not project:
        return None
    title = LocalizedText.coerce(project.title)
    return title.get(locale) if title else project.slug


def get_receipt_data(db: Session, donation: Donation) -> ReceiptData:
    """Receipt details for a completed donation"""
    if donation.payment_status != DonationStatus.COMPLETED or not donation.receipt_number:
        raise StateError(
            "Receipt is only available for completed donations",
            details={"status": donation.payment_status.value}
        )
    return ReceiptData(
        receipt_number=donation.receipt_number,
        donor_name="Anonymous" if donation.is_anonymous else (donation.donor_name or "Anonymous"),
        donor_email=donation.donor_email or "",
        donor_phone=donation.donor_phone,
        amount=Decimal(donation.amount) / 100,
        currency=donation.currency,
        project_title=project_title(db, donation.project_id),
        payment_reference=donation.payment_reference,
        payment_method=donation.payment_method,
        transaction_id=donation.gateway_transaction_id,
        completed_at=donation.completed_at,
        created_at=donation.created_at,
        message=donation.message,
    )


def format_amount(currency: str, amount: Decimal) -> str:
    label = "RM" if currency == "MYR" else currency
    return f"{label} {amount:,.2f}"


def render_receipt_email(data: ReceiptData) -> EmailMessage:
    amount = format_amount(data.currency, data.amount)
    designation = data.project_title or "General Fund"
    rows = [
        ("Receipt Number", data.receipt_number),
        ("Date", data.completed_at.strftime("%d %B %Y")),
        ("Donor", data.donor_name),
        ("Amount", amount),
        ("Designation", designation),
        ("Payment Reference", data.payment_reference),
        ("Payment Method", data.payment_method.upper()),
    ]
    if data.transaction_id:
        rows.append(("Transaction ID", data.transaction_id))

    html_rows = "".join(
        f'<tr><td style="padding:12px 0;color:#6b7280;">{escape(label)}</td>'
        f'<td style="padding:12px 0;text-align:right;font-weight:600;">{escape(str(value))}</td></tr>'
        for label, value in rows
    )
    html = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        "<title>Donation Receipt - Yayasan Insan Prihatin</title></head>"
        "<body style=\"font-family:Arial,sans-serif;background:#f9fafb;\">"
        "<div style=\"max-width:600px;margin:0 auto;background:#ffffff;padding:32px;\">"
        f"<h1 style=\"color:#0f766e;\">Thank you, {escape(data.donor_name)}</h1>"
        f"<p>We have received your donation of <strong>{escape(amount)}</strong> "
        f"to {escape(designation)}.</p>"
        f"<table style=\"width:100%;border-collapse:collapse;\">{html_rows}</table>"
        "<p style=\"color:#6b7280;font-size:12px;\">Please keep this email as your donation receipt.</p>"
        "</div></body></html>"
    )
    text = "\n".join(f"{label}: {value}" for label, value in rows)
    return EmailMessage(
        to=data.donor_email,
        subject=f"Thank You for Your Donation - Receipt {data.receipt_number}",
        html=html,
        text=f"Thank you for your donation to Yayasan Insan Prihatin.\n\n{text}",
    )


class ReceiptService:
    """Receipt delivery for completed donations"""

    @staticmethod
    def _mark_sent(db: Session, donation: Donation, message_id: str, meta: Optional[RequestMeta], resend: bool) -> None:
        sent_at = datetime.now(timezone.utc)
        try:
            db.execute(
                update(Donation)
                .where(Donation.id == donation.id)
                .values(receipt_sent_at=sent_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to record receipt delivery", payment_reference=donation.payment_reference, error=str(e))
            raise
        db.refresh(donation)
        DonationAuditLog.record(
            db,
            donation.id,
            DonationEventType.RECEIPT_SENT,
            {
                "receipt_number": donation.receipt_number,
                "email": donation.donor_email,
                "message_id": message_id,
                "resend": resend,
            },
            meta,
        )

    @staticmethod
    async def send_receipt(
        db: Session,
        donation: Donation,
        email_client: ResendEmailClient,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        """Send the receipt right after completion. Failures are logged, never raised."""
        if not donation.donor_email:
            logger.info("No donor email, receipt not sent", payment_reference=donation.payment_reference)
            return False

        try:
            message = render_receipt_email(get_receipt_data(db, donation))
            message_id = await email_client.send(message)
        except EmailDeliveryError as e:
            receipt_emails_total.labels(status="failed").inc()
            logger.warning(
                "Receipt email failed",
                payment_reference=donation.payment_reference,
                receipt_number=donation.receipt_number,
                error=e.message
            )
            DonationAuditLog.record(
                db,
                donation.id,
                DonationEventType.RECEIPT_EMAIL_FAILED,
                {"receipt_number": donation.receipt_number, "error": e.message, "code": e.code},
                meta,
            )
            return False

        receipt_emails_total.labels(status="sent").inc()
        ReceiptService._mark_sent(db, donation, message_id, meta, resend=False)
        logger.info(
            "Receipt email sent",
            payment_reference=donation.payment_reference,
            receipt_number=donation.receipt_number
        )
        return True

    @staticmethod
    async def resend_receipt(
        db: Session,
        reference: str,
        email_client: ResendEmailClient,
        meta: Optional[RequestMeta] = None,
    ) -> Donation:
        """Send the existing receipt again. The receipt number never changes."""
        donation = DonationRepository.get_by_reference(db, reference)
        if donation.payment_status != DonationStatus.COMPLETED:
            raise StateError(
                "Receipt can only be sent for completed donations",
                details={"status": donation.payment_status.value}
            )
        if not donation.receipt_number:
            raise StateError("Donation has no receipt number")
        if not donation.donor_email:
            raise StateError("No email address on file for this donation", code="NO_EMAIL")

        message = render_receipt_email(get_receipt_data(db, donation))
        try:
            message_id = await email_client.send(message)
        except EmailDeliveryError:
            receipt_emails_total.labels(status="failed").inc()
            logger.error("Receipt resend failed", payment_reference=reference)
            raise

        receipt_emails_total.labels(status="sent").inc()
        ReceiptService._mark_sent(db, donation, message_id, meta, resend=True)
        logger.info("Receipt resent", payment_reference=reference, receipt_number=donation.receipt_number)
        return donation
