import csv
import io
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from donation_service.models.donation import Donation
from donation_service.models.project import Project
from donation_service.schemas.localized import LocalizedText
from donation_service.services.donation import DonationFilters, apply_filters

CSV_HEADERS = [
    "Receipt Number",
    "Payment Reference",
    "Date",
    "Donor Name",
    "Donor Email",
    "Donor Phone",
    "Amount (RM)",
    "Project",
    "Status",
    "Environment",
    "Payment Method",
    "Transaction ID",
    "Anonymous",
    "Message",
    "Completed At",
]


FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _cell(value: Optional[str]) -> str:
    """Donor-supplied text, quoted so spreadsheets do not evaluate it as a formula"""
    if not value:
        return ""
    return f"'{value}" if value.startswith(FORMULA_PREFIXES) else value


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _project_titles(db: Session) -> Dict[str, str]:
    titles = {}
    for project_id, slug, title in db.query(Project.id, Project.slug, Project.title).all():
        text = LocalizedText.coerce(title)
        titles[project_id] = text.get("en") if text else slug
    return titles


def export_donations_csv(db: Session, filters: DonationFilters) -> str:
    """Donations matching ``filters`` as CSV, newest first"""
    titles = _project_titles(db)
    rows = apply_filters(db.query(Donation), filters).order_by(Donation.created_at.desc()).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for d in rows:
        writer.writerow([
            d.receipt_number or "",
            d.payment_reference,
            _iso(d.created_at),
            "Anonymous" if d.is_anonymous else _cell(d.donor_name),
            _cell(d.donor_email),
            _cell(d.donor_phone),
            f"{d.amount / 100:.2f}",
            _cell(titles.get(d.project_id, "Unknown Project")) if d.project_id else "General Fund",
            d.payment_status.value,
            d.environment or "unknown",
            d.payment_method or "",
            d.gateway_transaction_id or "",
            "Yes" if d.is_anonymous else "No",
            _cell(d.message),
            _iso(d.completed_at),
        ])
    return buffer.getvalue()


def export_filename(today: Optional[datetime] = None) -> str:
    today = today or datetime.now()
    return f"donations-export-{today:%Y-%m-%d}.csv"
